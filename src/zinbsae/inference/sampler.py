"""
Sampling adapter: lower a ModelSpec into PyMC, sample, and summarise.

The refinement loop only sees PosteriorSummary, a typed mapping from
monitor name to a statistics table. Positions inside the flat,
concatenated table come from a MonitorLayout built once from the ordered
monitor list, never from hand-computed offsets.

Retention window (per chain), matching a thinned run of ``iter_mcmc``
iterations with the first ``burn_in`` discarded:
    recorded iterations: thin, 2·thin, …, ≤ iter_mcmc
    kept: recorded iterations > burn_in

Statistics per monitored element: mean, sample SD (ddof=1) and the
2.5/25/50/75/97.5% quantiles.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt
from pymc.exceptions import SamplingError as PyMCSamplingError
from numpy.typing import NDArray

from zinbsae.exceptions import SamplingError
from zinbsae.inference.model_builder import ModelSpec, NodeSpec

logger = logging.getLogger(__name__)

QUANTILES = (0.025, 0.25, 0.5, 0.75, 0.975)
QUANTILE_COLUMNS = ["2.5%", "25%", "50%", "75%", "97.5%"]
STAT_COLUMNS = ["MEAN", "SD"] + QUANTILE_COLUMNS

STEP_METHODS = ("slice", "metropolis", "nuts")

# Slice stepping-out and shrinking steps allowed per update before PyMC
# raises RuntimeError.
SLICE_ITER_LIMIT = 5000


class MonitorLayout:
    """
    Name -> slice mapping into the flat statistics table.

    Attributes
    ----------
    names : Tuple[str, ...]
        Monitor names in output order.
    sizes : Dict[str, int]
        Number of elements per monitor.
    """

    def __init__(self, monitors: Sequence[Tuple[str, int]]) -> None:
        self.names: Tuple[str, ...] = tuple(name for name, _ in monitors)
        self.sizes: Dict[str, int] = {}
        self._slices: Dict[str, slice] = {}
        start = 0
        for name, size in monitors:
            if name in self.sizes:
                raise ValueError(f"Duplicate monitor {name!r}")
            if size < 1:
                raise ValueError(f"Monitor {name!r} must have at least one element")
            self.sizes[name] = int(size)
            self._slices[name] = slice(start, start + size)
            start += size
        self.total = start

    @classmethod
    def from_spec(cls, spec: ModelSpec) -> "MonitorLayout":
        return cls(spec.monitor_sizes())

    def slice(self, name: str) -> slice:
        return self._slices[name]

    def labels(self) -> List[str]:
        """Row labels of the flat table, e.g. ["a_var_u", "b[0]", "b[1]", …]."""
        out: List[str] = []
        for name in self.names:
            out.extend(element_labels(name, self.sizes[name]))
        return out

    def __contains__(self, name: object) -> bool:
        return name in self._slices

    def __repr__(self) -> str:
        return f"MonitorLayout({[(n, self.sizes[n]) for n in self.names]}, total={self.total})"


def element_labels(name: str, size: int) -> List[str]:
    """Row labels for one monitor; scalars keep the bare name."""
    if size == 1:
        return [name]
    return [f"{name}[{k}]" for k in range(size)]


def summarise_draws(samples: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Statistics of retained draws.

    Parameters
    ----------
    samples : NDArray[np.float64]
        Draws, shape (n_draws, n_elements).

    Returns
    -------
    stats : NDArray[np.float64]
        Shape (n_elements, 7): mean, sd, then the five quantiles.
    """
    samples = np.asarray(samples, dtype=np.float64)
    if samples.ndim == 1:
        samples = samples.reshape(-1, 1)
    if samples.shape[0] < 2:
        raise ValueError(f"Need at least 2 draws to summarise. Got {samples.shape[0]}")

    mean = samples.mean(axis=0)
    sd = samples.std(axis=0, ddof=1)
    q = np.quantile(samples, QUANTILES, axis=0)  # (5, n_elements)
    return np.column_stack([mean, sd, q.T])


class PosteriorSummary:
    """
    Posterior statistics of one sampler call, addressed by monitor name.

    Attributes
    ----------
    layout : MonitorLayout
        Monitor order and sizes.
    posterior : xarray.Dataset or None
        Retained draws (after burn-in and thinning), when the engine kept them.
    n_draws : int
        Retained draws per chain.
    """

    def __init__(
        self,
        layout: MonitorLayout,
        stats: NDArray[np.float64],
        posterior=None,
        n_draws: int = 0,
    ) -> None:
        stats = np.asarray(stats, dtype=np.float64)
        if stats.shape != (layout.total, len(STAT_COLUMNS)):
            raise ValueError(
                f"stats must have shape ({layout.total}, {len(STAT_COLUMNS)}). "
                f"Got {stats.shape}"
            )
        self.layout = layout
        self._stats = stats
        self.posterior = posterior
        self.n_draws = n_draws

    @classmethod
    def from_flat(
        cls,
        layout: MonitorLayout,
        statistics: NDArray[np.float64],
        quantiles: NDArray[np.float64],
        **kwargs,
    ) -> "PosteriorSummary":
        """
        Build from flat engine output: (mean, sd) rows and 5-quantile rows.
        """
        statistics = np.asarray(statistics, dtype=np.float64)
        quantiles = np.asarray(quantiles, dtype=np.float64)
        return cls(layout, np.column_stack([statistics[:, :2], quantiles]), **kwargs)

    @classmethod
    def from_draws(
        cls,
        draws: Dict[str, NDArray[np.float64]],
        monitors: Sequence[str],
        **kwargs,
    ) -> "PosteriorSummary":
        """
        Build from raw draws keyed by monitor name, each shape (n_draws, ...).
        """
        blocks = []
        sizes = []
        for name in monitors:
            values = np.asarray(draws[name], dtype=np.float64)
            values = values.reshape(values.shape[0], -1)
            blocks.append(summarise_draws(values))
            sizes.append((name, values.shape[1]))
        n_draws = kwargs.pop("n_draws", None)
        if n_draws is None:
            n_draws = np.asarray(draws[monitors[0]]).shape[0]
        return cls(MonitorLayout(sizes), np.vstack(blocks), n_draws=n_draws, **kwargs)

    @property
    def monitors(self) -> Tuple[str, ...]:
        return self.layout.names

    def __contains__(self, name: object) -> bool:
        return name in self.layout

    def __iter__(self) -> Iterator[str]:
        return iter(self.layout.names)

    def _rows(self, name: str) -> NDArray[np.float64]:
        if name not in self.layout:
            raise KeyError(f"Monitor {name!r} not in posterior summary")
        return self._stats[self.layout.slice(name)]

    def mean(self, name: str) -> NDArray[np.float64]:
        return self._rows(name)[:, 0].copy()

    def sd(self, name: str) -> NDArray[np.float64]:
        return self._rows(name)[:, 1].copy()

    def values(self, name: str) -> NDArray[np.float64]:
        """All seven statistics of one monitor, shape (size, 7)."""
        return self._rows(name).copy()

    def stats(self, name: str, labels: Optional[Sequence[str]] = None) -> pd.DataFrame:
        rows = self._rows(name)
        if labels is None:
            labels = element_labels(name, rows.shape[0])
        return pd.DataFrame(rows.copy(), index=list(labels), columns=STAT_COLUMNS)

    def table(self) -> pd.DataFrame:
        """Flat statistics table in monitor order."""
        return pd.DataFrame(self._stats.copy(), index=self.layout.labels(), columns=STAT_COLUMNS)

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self._stats)))

    def __repr__(self) -> str:
        return f"PosteriorSummary(monitors={list(self.monitors)}, n_draws={self.n_draws})"


def retained_positions(iter_mcmc: int, burn_in: int, thin: int) -> NDArray[np.int64]:
    """
    0-based draw positions kept after thinning and burn-in.

    Iterations thin, 2·thin, … ≤ iter_mcmc are recorded and those past
    burn_in are kept. Position k corresponds to iteration k + 1.
    """
    if thin < 1:
        raise ValueError(f"thin must be a positive integer. Got {thin}")
    iterations = np.arange(thin, iter_mcmc + 1, thin)
    return (iterations[iterations > burn_in] - 1).astype(np.int64)


# ---------------------------------------------------------------------------
# Lowering ModelSpec -> PyMC
# ---------------------------------------------------------------------------

def _linear_predictor(args: Dict[str, Any]):
    coef = args["coef"]
    return coef[0] + pt.dot(args["x"], coef[1:]) + args["effect"]


def _lower_normal(node: NodeSpec, args: Dict[str, Any], shape):
    return pm.Normal(node.name, mu=args["mu"], tau=args["tau"], shape=shape)


def _lower_gamma(node: NodeSpec, args: Dict[str, Any], shape):
    return pm.Gamma(node.name, alpha=args["alpha"], beta=args["beta"], shape=shape)


def _lower_inverse(node: NodeSpec, args: Dict[str, Any], shape):
    return 1.0 / args["x"]


def _lower_log_link(node: NodeSpec, args: Dict[str, Any], shape):
    return pt.exp(_linear_predictor(args))


def _lower_logit_link(node: NodeSpec, args: Dict[str, Any], shape):
    return pm.math.invlogit(_linear_predictor(args))


def _lower_zero_inflated_mean(node: NodeSpec, args: Dict[str, Any], shape):
    return (1.0 - args["pi"]) * args["mu"]


def _lower_negative_binomial(node: NodeSpec, args: Dict[str, Any], shape):
    mu, phi = args["mu"], args["phi"]
    p = mu * phi / (1.0 + mu * phi)
    n = mu**2 * phi
    return pm.NegativeBinomial(node.name, p=p, n=n, observed=args["observed"])


_LOWERINGS: Dict[str, Callable] = {
    "normal": _lower_normal,
    "gamma": _lower_gamma,
    "inverse": _lower_inverse,
    "log_link": _lower_log_link,
    "logit_link": _lower_logit_link,
    "zero_inflated_mean": _lower_zero_inflated_mean,
    "negative_binomial": _lower_negative_binomial,
}

_RANDOM_KINDS = ("normal", "gamma", "negative_binomial")


def lower_to_pymc(spec: ModelSpec) -> pm.Model:
    """
    Translate a ModelSpec into a PyMC model.

    String parameters are looked up among earlier nodes, then data, then
    prior bindings; numbers are used as literals. Monitored deterministic
    nodes become ``pm.Deterministic`` so they are recorded in the trace.

    Raises
    ------
    ValueError
        If a node has an unknown kind or references an undefined name.
    """
    scope: Dict[str, Any] = {}
    scope.update(spec.priors)
    scope.update(spec.data)

    with pm.Model() as model:
        for node in spec.nodes:
            if node.kind not in _LOWERINGS:
                raise ValueError(f"Unknown node kind {node.kind!r} for {node.name!r}")

            args: Dict[str, Any] = {}
            for key, ref in node.params.items():
                if isinstance(ref, str):
                    if ref not in scope:
                        raise ValueError(f"Node {node.name!r} references undefined {ref!r}")
                    args[key] = scope[ref]
                else:
                    args[key] = ref
            if node.observed is not None:
                args["observed"] = spec.data[node.observed]

            shape = spec.dims[node.size] if node.size is not None else None
            value = _LOWERINGS[node.kind](node, args, shape)
            if node.kind not in _RANDOM_KINDS and node.name in spec.monitors:
                value = pm.Deterministic(node.name, value)
            scope[node.name] = value

    return model


class GibbsSampler:
    """
    Sampling adapter around PyMC.

    Each ``sample`` call lowers the description, runs one MCMC job, keeps
    the thinned post-burn-in window and summarises the monitored
    quantities. Nothing is cached between calls.

    Attributes
    ----------
    step : str
        "slice" (component-wise slice sampling, default), "metropolis" or "nuts".
    n_adapt : int
        Adaptation (tuning) steps before recorded draws.
    chains : int
        Number of chains; statistics pool all chains.
    random_seed : int or None
        Seed forwarded to PyMC.
    progressbar : bool
        Show PyMC's progress bar.
    slice_iter_limit : int
        Maximum slice stepping-out and shrinking steps per update. Exceeding
        it raises SamplingError instead of blocking.
    """

    def __init__(
        self,
        step: str = "slice",
        n_adapt: int = 500,
        chains: int = 1,
        random_seed: Optional[int] = None,
        progressbar: bool = False,
        slice_iter_limit: int = SLICE_ITER_LIMIT,
    ) -> None:
        if step not in STEP_METHODS:
            raise ValueError(f"step must be one of {STEP_METHODS}. Got {step!r}")
        if n_adapt < 0:
            raise ValueError(f"n_adapt must be >= 0. Got {n_adapt}")
        if chains < 1:
            raise ValueError(f"chains must be >= 1. Got {chains}")
        if slice_iter_limit < 1:
            raise ValueError(f"slice_iter_limit must be >= 1. Got {slice_iter_limit}")

        self.step = step
        self.n_adapt = n_adapt
        self.chains = chains
        self.random_seed = random_seed
        self.progressbar = progressbar
        self.slice_iter_limit = slice_iter_limit

    def _step_method(self):
        if self.step == "slice":
            return pm.Slice(iter_limit=self.slice_iter_limit)
        if self.step == "metropolis":
            return pm.Metropolis()
        return None

    def sample(
        self,
        spec: ModelSpec,
        initial_values: Dict[str, Any],
        iter_mcmc: int,
        burn_in: int,
        thin: int = 1,
    ) -> PosteriorSummary:
        """
        Run the engine on one model description.

        Parameters
        ----------
        spec : ModelSpec
            Model description from ModelBuilder.build().
        initial_values : Dict[str, Any]
            Starting values of free variables.
        iter_mcmc : int
            Iterations per chain after adaptation.
        burn_in : int
            Leading iterations discarded.
        thin : int
            Keep every ``thin``-th iteration.

        Returns
        -------
        summary : PosteriorSummary

        Raises
        ------
        SamplingError
            If the model cannot be built or sampled, too few draws are
            retained, or the statistics are not finite.
        """
        positions = retained_positions(iter_mcmc, burn_in, thin)
        if positions.shape[0] < 2:
            raise SamplingError(
                f"Retention window keeps {positions.shape[0]} draws "
                f"(iter_mcmc={iter_mcmc}, burn_in={burn_in}, thin={thin}); need at least 2"
            )

        start_time = time.time()
        try:
            model = lower_to_pymc(spec)
            with model:
                idata = pm.sample(
                    draws=iter_mcmc,
                    tune=self.n_adapt,
                    step=self._step_method(),
                    chains=self.chains,
                    cores=1,
                    initvals=initial_values,
                    random_seed=self.random_seed,
                    progressbar=self.progressbar,
                    discard_tuned_samples=True,
                    compute_convergence_checks=False,
                    return_inferencedata=True,
                )
        except (
            PyMCSamplingError,
            ValueError,
            FloatingPointError,
            RuntimeError,
            TypeError,
            KeyError,
            np.linalg.LinAlgError,
        ) as err:
            raise SamplingError(
                f"MCMC engine failed for {spec.variant} model "
                f"(dims={spec.dims}): {type(err).__name__}: {err}"
            ) from err

        retained = idata.isel(draw=positions)
        posterior = retained.posterior
        n_chains = posterior.sizes["chain"]
        draws = {
            name: posterior[name].values.reshape(n_chains * positions.shape[0], -1)
            for name in spec.monitors
        }
        summary = PosteriorSummary.from_draws(
            draws,
            spec.monitors,
            posterior=posterior,
            n_draws=int(positions.shape[0]),
        )

        logger.debug(
            "Sampled %s model in %.1fs: %d retained draws x %d chain(s)",
            spec.variant, time.time() - start_time, positions.shape[0], n_chains,
        )
        if logger.isEnabledFor(logging.DEBUG):
            ess = az.ess(retained, var_names=["b", "g"])
            logger.debug(
                "Bulk ESS b=%s g=%s",
                np.round(ess["b"].values, 1), np.round(ess["g"].values, 1),
            )

        if not summary.is_finite():
            raise SamplingError(
                f"MCMC engine returned non-finite posterior statistics for {spec.variant} model"
            )
        return summary

    def __repr__(self) -> str:
        return (
            f"GibbsSampler(step={self.step!r}, n_adapt={self.n_adapt}, "
            f"chains={self.chains}, random_seed={self.random_seed}, "
            f"slice_iter_limit={self.slice_iter_limit})"
        )

"""
Empirical-Bayes refinement of prior hyperparameters.

Each pass builds the model from the current priors, samples it, and
moment-matches the posterior back into priors for the next pass:

    mu_b ← E[b],   tau_b ← 1 / SD[b]²          (same for g)
    (shape, rate) ← (m²/s², m/s²)              for τ_pa, τ_pb, τ_u, τ_v

where m and s are the posterior mean and SD of each precision. The
Gamma(shape, rate) prior then has mean m and SD s.

The loop always runs exactly ``iter_update`` passes; there is no
convergence test. Only the last posterior summary is returned.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from zinbsae.exceptions import ConfigError, SamplingError
from zinbsae.inference.model_builder import HyperparameterState, ModelBuilder
from zinbsae.inference.sampler import PosteriorSummary

logger = logging.getLogger(__name__)

MIN_ITER_UPDATE = 3

# Posterior precision monitor -> (shape field, rate field) of its Gamma prior.
GAMMA_TARGETS = (
    ("tau_pa", "tau_aa", "tau_ab"),
    ("tau_pb", "tau_ba", "tau_bb"),
    ("tau_u", "tau_ua", "tau_ub"),
    ("tau_v", "tau_va", "tau_vb"),
)


def moment_match_gamma(mean: float, sd: float) -> Tuple[float, float]:
    """
    Gamma (shape, rate) with the given mean and standard deviation.

    A zero SD gives infinite shape and rate.
    """
    variance = np.float64(sd) ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.float64(mean) ** 2 / variance), float(np.float64(mean) / variance)


def precision_from_sd(sd: NDArray[np.float64]) -> NDArray[np.float64]:
    """1 / sd², with sd = 0 mapped to +inf."""
    sd = np.asarray(sd, dtype=np.float64)
    with np.errstate(divide="ignore"):
        return 1.0 / sd**2


def refine_hyperparameters(
    state: HyperparameterState,
    summary: PosteriorSummary,
) -> HyperparameterState:
    """
    Moment-match one posterior summary into the next hyperparameter state.

    Parameters
    ----------
    state : HyperparameterState
        Priors used for the run that produced ``summary``.
    summary : PosteriorSummary
        Posterior statistics with monitors b, g, tau_pa, tau_pb, tau_u, tau_v.

    Returns
    -------
    refined : HyperparameterState
        New state; ``state`` is left unchanged.

    Raises
    ------
    SamplingError
        If a monitor is missing, has the wrong length, or the matched
        values are not valid priors (e.g. NaN from a zero mean and SD).
    """
    nvar = state.nvar
    for name in ("b", "g") + tuple(t[0] for t in GAMMA_TARGETS):
        if name not in summary:
            raise SamplingError(f"Posterior summary lacks monitor {name!r}")

    mu_b, sd_b = summary.mean("b"), summary.sd("b")
    mu_g, sd_g = summary.mean("g"), summary.sd("g")
    if mu_b.shape != (nvar,) or mu_g.shape != (nvar,):
        raise SamplingError(
            f"Coefficient monitors must have {nvar} elements. "
            f"Got b={mu_b.shape[0]}, g={mu_g.shape[0]}"
        )

    if np.any(sd_b == 0) or np.any(sd_g == 0):
        logger.warning("Posterior SD of a coefficient is zero; its prior precision becomes infinite")

    gamma = {}
    for monitor, shape_field, rate_field in GAMMA_TARGETS:
        shape, rate = moment_match_gamma(summary.mean(monitor)[0], summary.sd(monitor)[0])
        gamma[shape_field] = shape
        gamma[rate_field] = rate

    try:
        return HyperparameterState(
            mu_b=mu_b,
            mu_g=mu_g,
            tau_b=precision_from_sd(sd_b),
            tau_g=precision_from_sd(sd_g),
            **gamma,
        )
    except ValueError as err:
        raise SamplingError(f"Posterior cannot be moment-matched into priors: {err}") from err


class RefinementOutcome:
    """
    Result of the refinement loop.

    Attributes
    ----------
    summary : PosteriorSummary
        Posterior of the last pass.
    state : HyperparameterState
        State moment-matched from the last pass.
    iterations : int
        Number of passes run.
    history : List[HyperparameterState]
        State used by each pass, first to last.
    """

    def __init__(
        self,
        summary: PosteriorSummary,
        state: HyperparameterState,
        iterations: int,
        history: List[HyperparameterState],
    ) -> None:
        self.summary = summary
        self.state = state
        self.iterations = iterations
        self.history = history

    def __repr__(self) -> str:
        return f"RefinementOutcome(iterations={self.iterations}, state={self.state!r})"


class EmpiricalBayesRefiner:
    """
    Drives the build → sample → moment-match loop.

    Attributes
    ----------
    builder : ModelBuilder
        Model description builder for the partition.
    sampler : object
        Anything with ``sample(spec, initial_values, iter_mcmc, burn_in, thin)``
        returning a PosteriorSummary (GibbsSampler in production).
    iter_update, iter_mcmc, burn_in, thin : int
        Loop and retention settings.
    tau_u, tau_v : float
        Initial values of the random-effect precisions.
    freeze_prediction_coefficients : bool
        Predict non-sampled areas with the first pass's prior means
        instead of the current ones.
    """

    def __init__(
        self,
        builder: ModelBuilder,
        sampler,
        iter_update: int = 3,
        iter_mcmc: int = 1100,
        burn_in: int = 600,
        thin: int = 1,
        tau_u: float = 1.0,
        tau_v: float = 1.0,
        freeze_prediction_coefficients: bool = False,
    ) -> None:
        is_int = isinstance(iter_update, (int, np.integer)) and not isinstance(iter_update, bool)
        if not is_int or iter_update < MIN_ITER_UPDATE:
            raise ConfigError(
                f"the number of iteration updates must be at least {MIN_ITER_UPDATE}. "
                f"Got {iter_update}"
            )
        self.builder = builder
        self.sampler = sampler
        self.iter_update = iter_update
        self.iter_mcmc = iter_mcmc
        self.burn_in = burn_in
        self.thin = thin
        self.tau_u = tau_u
        self.tau_v = tau_v
        self.freeze_prediction_coefficients = freeze_prediction_coefficients

    def run(self, state: HyperparameterState) -> RefinementOutcome:
        """
        Run exactly ``iter_update`` refinement passes.

        Parameters
        ----------
        state : HyperparameterState
            Initial priors.

        Returns
        -------
        outcome : RefinementOutcome

        Raises
        ------
        SamplingError
            Propagated from the sampler or from moment matching; not retried.
        """
        frozen: Optional[Tuple[NDArray[np.float64], NDArray[np.float64]]] = None
        if self.freeze_prediction_coefficients:
            frozen = (state.mu_b.copy(), state.mu_g.copy())

        history: List[HyperparameterState] = []
        summary: Optional[PosteriorSummary] = None

        for iteration in range(1, self.iter_update + 1):
            history.append(state)
            spec = self.builder.build(state, prediction_coefficients=frozen)
            inits = self.builder.initial_values(state, tau_u=self.tau_u, tau_v=self.tau_v)
            logger.info(
                "Refinement pass %d/%d (%s model, %d monitors)",
                iteration, self.iter_update, spec.variant, len(spec.monitors),
            )

            summary = self.sampler.sample(
                spec,
                inits,
                iter_mcmc=self.iter_mcmc,
                burn_in=self.burn_in,
                thin=self.thin,
            )
            state = refine_hyperparameters(state, summary)
            logger.debug("Pass %d refined state: %r", iteration, state)

        return RefinementOutcome(
            summary=summary,
            state=state,
            iterations=self.iter_update,
            history=history,
        )

    def __repr__(self) -> str:
        return (
            f"EmpiricalBayesRefiner(iter_update={self.iter_update}, "
            f"iter_mcmc={self.iter_mcmc}, burn_in={self.burn_in}, thin={self.thin})"
        )

"""
Model builder: hierarchical ZINB model description for small-area estimation.

The builder emits a declarative intermediate representation (ModelSpec)
rather than engine syntax. The sampling adapter lowers it into a PyMC
model, so the refinement loop never touches backend code.

Mathematical model (sampled areas i = 1..n1):
    y_i ~ NegBin(p_i, r_i)
    p_i = mu_eff_i φ_i / (1 + mu_eff_i φ_i),   r_i = mu_eff_i² φ_i
    mu_eff_i = (1 - π_i) μ_i
    log μ_i = b_0 + x_i·b_{1:} + u_i            u_i ~ N(0, τ_u)
    logit π_i = g_0 + x_i·g_{1:} + v_i          v_i ~ N(0, τ_v)
    φ_i ~ Gamma(τ_pa, τ_pb)

Non-sampled areas j = 1..n2 (mixed variant only), plug-in coefficients:
    log μT_j = β̂_0 + xT_j·β̂_{1:} + uT_j        uT_j ~ N(0, τ_u)
    logit πT_j = γ̂_0 + xT_j·γ̂_{1:} + vT_j      vT_j ~ N(0, τ_v)
    mu_eff_nonsampled_j = (1 - πT_j) μT_j

Priors (normal distributions use precision):
    b_k ~ N(mu_b_k, tau_b_k),  g_k ~ N(mu_g_k, tau_g_k)
    τ_u ~ Gamma(tau_ua, tau_ub),  τ_v ~ Gamma(tau_va, tau_vb)
    a_var_u = 1/τ_u,  a_var_v = 1/τ_v
    τ_pa ~ Gamma(tau_aa, tau_ab),  τ_pb ~ Gamma(tau_ba, tau_bb)
"""

from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from zinbsae.areas.partition import AreaPartition

# Gamma hyperparameter fields of HyperparameterState, in prior-binding order.
GAMMA_FIELDS = (
    "tau_ua", "tau_ub",
    "tau_va", "tau_vb",
    "tau_aa", "tau_ab",
    "tau_ba", "tau_bb",
)

# Initial value of the dispersion hyper-shape and hyper-rate.
DISPERSION_INIT = 0.001

Param = Union[str, float]


class HyperparameterState:
    """
    Prior hyperparameters carried across refinement iterations.

    Attributes
    ----------
    mu_b, mu_g : NDArray[np.float64]
        Prior means of the log-model (b) and logit-model (g) coefficients,
        shape (nvar,).
    tau_b, tau_g : NDArray[np.float64]
        Prior precisions of the coefficients, shape (nvar,).
    tau_ua, tau_ub : float
        Gamma shape/rate of the intensity random-effect precision.
    tau_va, tau_vb : float
        Gamma shape/rate of the zero-inflation random-effect precision.
    tau_aa, tau_ab : float
        Gamma shape/rate of the dispersion hyper-shape tau_pa.
    tau_ba, tau_bb : float
        Gamma shape/rate of the dispersion hyper-rate tau_pb.
    """

    def __init__(
        self,
        mu_b: NDArray[np.float64],
        mu_g: NDArray[np.float64],
        tau_b: NDArray[np.float64],
        tau_g: NDArray[np.float64],
        tau_ua: float = 1.0,
        tau_ub: float = 1.0,
        tau_va: float = 1.0,
        tau_vb: float = 1.0,
        tau_aa: float = DISPERSION_INIT,
        tau_ab: float = DISPERSION_INIT,
        tau_ba: float = DISPERSION_INIT,
        tau_bb: float = DISPERSION_INIT,
    ) -> None:
        self.mu_b = np.asarray(mu_b, dtype=np.float64).copy()
        self.mu_g = np.asarray(mu_g, dtype=np.float64).copy()
        self.tau_b = np.asarray(tau_b, dtype=np.float64).copy()
        self.tau_g = np.asarray(tau_g, dtype=np.float64).copy()
        self.tau_ua = float(tau_ua)
        self.tau_ub = float(tau_ub)
        self.tau_va = float(tau_va)
        self.tau_vb = float(tau_vb)
        self.tau_aa = float(tau_aa)
        self.tau_ab = float(tau_ab)
        self.tau_ba = float(tau_ba)
        self.tau_bb = float(tau_bb)
        self._validate()

    @classmethod
    def initial(
        cls,
        nvar: int,
        coef_nonzero: Optional[NDArray[np.float64]] = None,
        coef_zero: Optional[NDArray[np.float64]] = None,
        var_coef_nonzero: Optional[NDArray[np.float64]] = None,
        var_coef_zero: Optional[NDArray[np.float64]] = None,
    ) -> "HyperparameterState":
        """
        Starting state from user priors; variances are inverted to precisions.

        Missing means default to zeros and missing variances to ones.
        """
        ones = np.ones(nvar)
        return cls(
            mu_b=np.zeros(nvar) if coef_nonzero is None else coef_nonzero,
            mu_g=np.zeros(nvar) if coef_zero is None else coef_zero,
            tau_b=ones / (ones if var_coef_nonzero is None else np.asarray(var_coef_nonzero)),
            tau_g=ones / (ones if var_coef_zero is None else np.asarray(var_coef_zero)),
        )

    @property
    def nvar(self) -> int:
        return int(self.mu_b.shape[0])

    def _validate(self) -> None:
        nvar = self.mu_b.shape[0]
        for name in ("mu_g", "tau_b", "tau_g"):
            if getattr(self, name).shape != (nvar,):
                raise ValueError(
                    f"{name} must have shape ({nvar},). Got {getattr(self, name).shape}"
                )
        if not (np.all(self.tau_b > 0) and np.all(self.tau_g > 0)):
            raise ValueError("Coefficient precisions must be strictly positive")
        for name in GAMMA_FIELDS:
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be strictly positive. Got {getattr(self, name)}")

    def copy(self) -> "HyperparameterState":
        return HyperparameterState(
            self.mu_b, self.mu_g, self.tau_b, self.tau_g,
            **{name: getattr(self, name) for name in GAMMA_FIELDS},
        )

    def as_bindings(self) -> Dict[str, Any]:
        """Prior bindings handed to the model description."""
        bindings: Dict[str, Any] = {
            "mu_b": self.mu_b.copy(),
            "mu_g": self.mu_g.copy(),
            "tau_b": self.tau_b.copy(),
            "tau_g": self.tau_g.copy(),
        }
        bindings.update({name: getattr(self, name) for name in GAMMA_FIELDS})
        return bindings

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HyperparameterState):
            return NotImplemented
        return (
            all(
                np.array_equal(getattr(self, n), getattr(other, n))
                for n in ("mu_b", "mu_g", "tau_b", "tau_g")
            )
            and all(getattr(self, n) == getattr(other, n) for n in GAMMA_FIELDS)
        )

    def __repr__(self) -> str:
        return (
            f"HyperparameterState(nvar={self.nvar}, mu_b={self.mu_b}, mu_g={self.mu_g}, "
            f"tau_u=({self.tau_ua:.4g}, {self.tau_ub:.4g}), "
            f"tau_v=({self.tau_va:.4g}, {self.tau_vb:.4g}))"
        )


class NodeSpec:
    """
    One node of the model description.

    Attributes
    ----------
    name : str
        Variable name in the lowered model.
    kind : str
        One of "normal", "gamma", "inverse", "log_link", "logit_link",
        "zero_inflated_mean", "negative_binomial".
    params : Dict[str, Param]
        Parameter name -> reference (node, data or prior binding name) or literal.
    size : str or None
        Dimension name ("nvar", "n_sampled", "n_nonsampled") or None for scalars.
    observed : str or None
        Data binding holding observed values, for likelihood nodes.
    """

    def __init__(
        self,
        name: str,
        kind: str,
        params: Dict[str, Param],
        size: Optional[str] = None,
        observed: Optional[str] = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.params = dict(params)
        self.size = size
        self.observed = observed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "params": dict(self.params),
            "size": self.size,
            "observed": self.observed,
        }

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v}" for k, v in self.params.items())
        size = f"[{self.size}]" if self.size else ""
        obs = f" | {self.observed}" if self.observed else ""
        return f"{self.name}{size} ~ {self.kind}({params}){obs}"


class ModelSpec:
    """
    Backend-neutral hierarchical model description.

    Attributes
    ----------
    variant : str
        "sampled" (every area observed) or "mixed".
    nodes : Tuple[NodeSpec, ...]
        Nodes in dependency order.
    data : Dict[str, NDArray]
        Data bindings (observed outcomes, covariates, plug-in coefficients).
    priors : Dict[str, Any]
        Prior bindings from the hyperparameter state.
    dims : Dict[str, int]
        Dimension sizes referenced by NodeSpec.size.
    monitors : Tuple[str, ...]
        Quantities to retain, in output order.
    """

    def __init__(
        self,
        variant: str,
        nodes: Tuple[NodeSpec, ...],
        data: Dict[str, NDArray],
        priors: Dict[str, Any],
        dims: Dict[str, int],
        monitors: Tuple[str, ...],
    ) -> None:
        self.variant = variant
        self.nodes = nodes
        self.data = data
        self.priors = priors
        self.dims = dims
        self.monitors = monitors

    def node(self, name: str) -> NodeSpec:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    def monitor_sizes(self) -> List[Tuple[str, int]]:
        """(name, number of elements) for every monitor, in order."""
        sizes = []
        for name in self.monitors:
            size = self.node(name).size
            sizes.append((name, 1 if size is None else self.dims[size]))
        return sizes

    def to_dict(self) -> Dict[str, Any]:
        """Plain-container form (lists instead of arrays) for serialisation."""

        def plain(value):
            return value.tolist() if isinstance(value, np.ndarray) else value

        return {
            "variant": self.variant,
            "nodes": [node.to_dict() for node in self.nodes],
            "data": {k: plain(v) for k, v in self.data.items()},
            "priors": {k: plain(v) for k, v in self.priors.items()},
            "dims": dict(self.dims),
            "monitors": list(self.monitors),
        }

    def __repr__(self) -> str:
        return (
            f"ModelSpec(variant={self.variant!r}, dims={self.dims}, "
            f"nodes={len(self.nodes)}, monitors={list(self.monitors)})"
        )


class ModelBuilder:
    """
    Builds ZINB model descriptions for one area partition.

    The structure (fully-sampled vs mixed) is fixed by the partition; the
    numbers come from the hyperparameter state passed to ``build``.

    Attributes
    ----------
    partition : AreaPartition
        Areas being modelled.
    """

    def __init__(self, partition: AreaPartition) -> None:
        self.partition = partition

    @property
    def variant(self) -> str:
        return "sampled" if self.partition.fully_sampled else "mixed"

    @property
    def monitors(self) -> Tuple[str, ...]:
        head = ("a_var_u", "a_var_v", "b", "g", "mu_eff")
        if self.variant == "mixed":
            head = head + ("mu_eff_nonsampled",)
        return head + ("tau_pa", "tau_pb", "tau_u", "tau_v")

    def _prior_nodes(self) -> List[NodeSpec]:
        return [
            NodeSpec("b", "normal", {"mu": "mu_b", "tau": "tau_b"}, size="nvar"),
            NodeSpec("g", "normal", {"mu": "mu_g", "tau": "tau_g"}, size="nvar"),
            NodeSpec("tau_u", "gamma", {"alpha": "tau_ua", "beta": "tau_ub"}),
            NodeSpec("tau_v", "gamma", {"alpha": "tau_va", "beta": "tau_vb"}),
            NodeSpec("a_var_u", "inverse", {"x": "tau_u"}),
            NodeSpec("a_var_v", "inverse", {"x": "tau_v"}),
            NodeSpec("tau_pa", "gamma", {"alpha": "tau_aa", "beta": "tau_ab"}),
            NodeSpec("tau_pb", "gamma", {"alpha": "tau_ba", "beta": "tau_bb"}),
        ]

    def _likelihood_nodes(self) -> List[NodeSpec]:
        return [
            NodeSpec("u", "normal", {"mu": 0.0, "tau": "tau_u"}, size="n_sampled"),
            NodeSpec("v", "normal", {"mu": 0.0, "tau": "tau_v"}, size="n_sampled"),
            NodeSpec("phi", "gamma", {"alpha": "tau_pa", "beta": "tau_pb"}, size="n_sampled"),
            NodeSpec("mu", "log_link", {"coef": "b", "x": "x_sampled", "effect": "u"}, size="n_sampled"),
            NodeSpec("pi", "logit_link", {"coef": "g", "x": "x_sampled", "effect": "v"}, size="n_sampled"),
            NodeSpec("mu_eff", "zero_inflated_mean", {"mu": "mu", "pi": "pi"}, size="n_sampled"),
            NodeSpec(
                "y",
                "negative_binomial",
                {"mu": "mu_eff", "phi": "phi"},
                size="n_sampled",
                observed="y_sampled",
            ),
        ]

    def _prediction_nodes(self) -> List[NodeSpec]:
        return [
            NodeSpec("u_T", "normal", {"mu": 0.0, "tau": "tau_u"}, size="n_nonsampled"),
            NodeSpec("v_T", "normal", {"mu": 0.0, "tau": "tau_v"}, size="n_nonsampled"),
            NodeSpec(
                "mu_T", "log_link",
                {"coef": "pred_b", "x": "x_nonsampled", "effect": "u_T"},
                size="n_nonsampled",
            ),
            NodeSpec(
                "pi_T", "logit_link",
                {"coef": "pred_g", "x": "x_nonsampled", "effect": "v_T"},
                size="n_nonsampled",
            ),
            NodeSpec(
                "mu_eff_nonsampled", "zero_inflated_mean",
                {"mu": "mu_T", "pi": "pi_T"},
                size="n_nonsampled",
            ),
        ]

    def build(
        self,
        state: HyperparameterState,
        prediction_coefficients: Optional[Tuple[NDArray[np.float64], NDArray[np.float64]]] = None,
    ) -> ModelSpec:
        """
        Build the model description for the current hyperparameters.

        Parameters
        ----------
        state : HyperparameterState
            Current priors. Its vectors must have length partition.nvar.
        prediction_coefficients : (NDArray, NDArray), optional
            Fixed (b, g) used to predict non-sampled areas. Defaults to the
            current prior means (state.mu_b, state.mu_g). Ignored when every
            area is sampled.

        Returns
        -------
        spec : ModelSpec

        Raises
        ------
        ValueError
            If the state does not match the partition's nvar.
        """
        partition = self.partition
        if state.nvar != partition.nvar:
            raise ValueError(
                f"Hyperparameter state has nvar={state.nvar}, "
                f"partition needs nvar={partition.nvar}"
            )

        nodes = self._prior_nodes() + self._likelihood_nodes()
        data: Dict[str, NDArray] = {
            "y_sampled": partition.y_sampled,
            "x_sampled": partition.x_sampled,
        }
        dims = {"nvar": partition.nvar, "n_sampled": partition.n_sampled}

        if self.variant == "mixed":
            pred_b, pred_g = prediction_coefficients or (state.mu_b, state.mu_g)
            nodes += self._prediction_nodes()
            data["x_nonsampled"] = partition.x_nonsampled
            data["pred_b"] = np.asarray(pred_b, dtype=np.float64).copy()
            data["pred_g"] = np.asarray(pred_g, dtype=np.float64).copy()
            dims["n_nonsampled"] = partition.n_nonsampled

        return ModelSpec(
            variant=self.variant,
            nodes=tuple(nodes),
            data=data,
            priors=state.as_bindings(),
            dims=dims,
            monitors=self.monitors,
        )

    def initial_values(
        self,
        state: HyperparameterState,
        tau_u: float = 1.0,
        tau_v: float = 1.0,
    ) -> Dict[str, Any]:
        """
        Deterministic starting point: zero random effects, coefficients at prior means.
        """
        n1 = self.partition.n_sampled
        inits: Dict[str, Any] = {
            "u": np.zeros(n1),
            "v": np.zeros(n1),
            "b": state.mu_b.copy(),
            "g": state.mu_g.copy(),
            "tau_u": float(tau_u),
            "tau_v": float(tau_v),
            "tau_pa": DISPERSION_INIT,
            "tau_pb": DISPERSION_INIT,
        }
        if self.variant == "mixed":
            n2 = self.partition.n_nonsampled
            inits["u_T"] = np.zeros(n2)
            inits["v_T"] = np.zeros(n2)
        return inits

    def __repr__(self) -> str:
        return f"ModelBuilder(variant={self.variant!r}, partition={self.partition!r})"

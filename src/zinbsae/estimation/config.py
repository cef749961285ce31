"""
Estimation options and their validation.

All checks run before any sampling so a bad option never costs an MCMC run.
Coefficient prior options must have length nvar = (#covariates + 1),
which is only known once the areas are partitioned, hence ``validate(nvar)``.
"""

from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from zinbsae.exceptions import ConfigError
from zinbsae.inference.model_builder import HyperparameterState
from zinbsae.inference.refiner import MIN_ITER_UPDATE
from zinbsae.inference.sampler import STEP_METHODS, SLICE_ITER_LIMIT, retained_positions


class EstimationConfig:
    """
    Options of a ZINB HB estimation run.

    Attributes
    ----------
    iter_update : int
        Refinement passes (>= 3). Default 3.
    iter_mcmc : int
        Iterations per sampler call. Default 1100.
    burn_in : int
        Leading iterations discarded (< iter_mcmc). Default 600.
    thin : int
        Thinning stride (positive). Default 1.
    coef_nonzero, coef_zero : Sequence[float] or None
        Initial prior means of the log-model and logit-model coefficients
        (length nvar). Default zeros.
    var_coef_nonzero, var_coef_zero : Sequence[float] or None
        Initial prior variances of the coefficients (length nvar, > 0).
        Default ones.
    tau_u, tau_v : float
        Initial values of the random-effect precisions. Default 1.
    n_adapt : int
        Adaptation steps per sampler call. Default 500.
    step : str
        Sampler step method: "slice", "metropolis" or "nuts".
    random_seed : int or None
        Seed for the MCMC engine.
    progressbar : bool
        Show the engine's progress bar.
    slice_iter_limit : int
        Cap on slice-sampler steps per update; exceeding it fails the run
        with SamplingError.
    freeze_prediction_coefficients : bool
        Predict non-sampled areas with the initial prior means in every pass.
    """

    def __init__(
        self,
        iter_update: int = 3,
        iter_mcmc: int = 1100,
        burn_in: int = 600,
        thin: int = 1,
        coef_nonzero: Optional[Sequence[float]] = None,
        coef_zero: Optional[Sequence[float]] = None,
        var_coef_nonzero: Optional[Sequence[float]] = None,
        var_coef_zero: Optional[Sequence[float]] = None,
        tau_u: float = 1.0,
        tau_v: float = 1.0,
        n_adapt: int = 500,
        step: str = "slice",
        random_seed: Optional[int] = None,
        progressbar: bool = False,
        slice_iter_limit: int = SLICE_ITER_LIMIT,
        freeze_prediction_coefficients: bool = False,
    ) -> None:
        self.iter_update = iter_update
        self.iter_mcmc = iter_mcmc
        self.burn_in = burn_in
        self.thin = thin
        self.coef_nonzero = coef_nonzero
        self.coef_zero = coef_zero
        self.var_coef_nonzero = var_coef_nonzero
        self.var_coef_zero = var_coef_zero
        self.tau_u = tau_u
        self.tau_v = tau_v
        self.n_adapt = n_adapt
        self.step = step
        self.random_seed = random_seed
        self.progressbar = progressbar
        self.slice_iter_limit = slice_iter_limit
        self.freeze_prediction_coefficients = freeze_prediction_coefficients

    @staticmethod
    def _is_int(value) -> bool:
        return isinstance(value, (int, np.integer)) and not isinstance(value, bool)

    def validate_run(self) -> None:
        """
        Check the options that do not depend on the data.

        Raises
        ------
        ConfigError
            On the first invalid option.
        """
        if not self._is_int(self.iter_update) or self.iter_update < MIN_ITER_UPDATE:
            raise ConfigError(
                f"the number of iteration updates must be at least {MIN_ITER_UPDATE}. "
                f"Got {self.iter_update}"
            )
        if not self._is_int(self.iter_mcmc) or self.iter_mcmc < 2:
            raise ConfigError(f"iter_mcmc must be an integer >= 2. Got {self.iter_mcmc}")
        if not self._is_int(self.burn_in) or self.burn_in < 0:
            raise ConfigError(f"burn_in must be a non-negative integer. Got {self.burn_in}")
        if self.burn_in >= self.iter_mcmc:
            raise ConfigError(
                f"burn_in must be smaller than iter_mcmc. "
                f"Got burn_in={self.burn_in}, iter_mcmc={self.iter_mcmc}"
            )
        if not self._is_int(self.thin) or self.thin < 1:
            raise ConfigError(f"thin must be a positive integer. Got {self.thin}")
        if retained_positions(self.iter_mcmc, self.burn_in, self.thin).shape[0] < 2:
            raise ConfigError(
                f"iter_mcmc={self.iter_mcmc}, burn_in={self.burn_in}, thin={self.thin} "
                f"keep fewer than 2 draws"
            )
        if not self._is_int(self.n_adapt) or self.n_adapt < 0:
            raise ConfigError(f"n_adapt must be a non-negative integer. Got {self.n_adapt}")
        if self.step not in STEP_METHODS:
            raise ConfigError(f"step must be one of {STEP_METHODS}. Got {self.step!r}")
        if not self._is_int(self.slice_iter_limit) or self.slice_iter_limit < 1:
            raise ConfigError(
                f"slice_iter_limit must be a positive integer. Got {self.slice_iter_limit}"
            )
        for name in ("tau_u", "tau_v"):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise ConfigError(f"{name} must be a positive number. Got {value}")

    def _vector(self, name: str, nvar: int, positive: bool = False) -> Optional[NDArray[np.float64]]:
        value = getattr(self, name)
        if value is None:
            return None
        vector = np.atleast_1d(np.asarray(value, dtype=np.float64))
        if vector.shape != (nvar,):
            raise ConfigError(
                f"length of vector {name} does not match the number of regression "
                f"coefficients, the length must be {nvar}"
            )
        if not np.all(np.isfinite(vector)):
            raise ConfigError(f"{name} must contain finite values")
        if positive and np.any(vector <= 0):
            raise ConfigError(f"{name} must contain strictly positive variances")
        return vector

    def validate(self, nvar: int) -> None:
        """
        Check every option against a design with ``nvar`` coefficients.

        Raises
        ------
        ConfigError
            On the first invalid option.
        """
        self._vector("var_coef_nonzero", nvar, positive=True)
        self._vector("var_coef_zero", nvar, positive=True)
        self._vector("coef_nonzero", nvar)
        self._vector("coef_zero", nvar)
        self.validate_run()

    def initial_state(self, nvar: int) -> HyperparameterState:
        """Validated starting hyperparameters; variances become precisions."""
        self.validate(nvar)
        return HyperparameterState.initial(
            nvar,
            coef_nonzero=self._vector("coef_nonzero", nvar),
            coef_zero=self._vector("coef_zero", nvar),
            var_coef_nonzero=self._vector("var_coef_nonzero", nvar, positive=True),
            var_coef_zero=self._vector("var_coef_zero", nvar, positive=True),
        )

    def __repr__(self) -> str:
        return (
            f"EstimationConfig(iter_update={self.iter_update}, iter_mcmc={self.iter_mcmc}, "
            f"burn_in={self.burn_in}, thin={self.thin}, step={self.step!r})"
        )

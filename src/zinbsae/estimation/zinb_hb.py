"""
Small-area estimation with a Hierarchical Bayesian ZINB model.

Pipeline:
    partition areas → validate options → refinement passes → assemble tables

The outcome is a non-negative count with excess zeros and overdispersion.
Areas without an observed outcome get estimates predicted through the
fitted regression and their own random effects.
"""

import logging
from typing import Optional

import pandas as pd

from zinbsae.areas.partition import AreaPartition, design_from_formula, partition_areas
from zinbsae.estimation.config import EstimationConfig
from zinbsae.estimation.results import EstimationResult, assemble_results
from zinbsae.inference.model_builder import ModelBuilder
from zinbsae.inference.refiner import EmpiricalBayesRefiner
from zinbsae.inference.sampler import GibbsSampler

logger = logging.getLogger(__name__)


class ZinbHB:
    """
    ZINB Hierarchical Bayesian small-area estimator.

    Each ``fit`` call owns its partition, hyperparameters and posterior;
    one instance may be reused for several datasets.

    Attributes
    ----------
    config : EstimationConfig
        Estimation options.
    sampler : object
        Sampling adapter. Defaults to a GibbsSampler configured from ``config``.
    """

    def __init__(
        self,
        config: Optional[EstimationConfig] = None,
        sampler=None,
    ) -> None:
        self.config = config or EstimationConfig()
        self.sampler = sampler

    def _make_sampler(self):
        if self.sampler is not None:
            return self.sampler
        return GibbsSampler(
            step=self.config.step,
            n_adapt=self.config.n_adapt,
            random_seed=self.config.random_seed,
            progressbar=self.config.progressbar,
            slice_iter_limit=self.config.slice_iter_limit,
        )

    def fit_partition(self, partition: AreaPartition) -> EstimationResult:
        """
        Estimate area means for an already partitioned dataset.

        Raises
        ------
        ConfigError
            If an option is invalid for this design (checked before sampling).
        SamplingError
            If the MCMC engine fails in any pass.
        """
        config = self.config
        state = config.initial_state(partition.nvar)

        refiner = EmpiricalBayesRefiner(
            ModelBuilder(partition),
            self._make_sampler(),
            iter_update=config.iter_update,
            iter_mcmc=config.iter_mcmc,
            burn_in=config.burn_in,
            thin=config.thin,
            tau_u=config.tau_u,
            tau_v=config.tau_v,
            freeze_prediction_coefficients=config.freeze_prediction_coefficients,
        )

        logger.info("Fitting ZINB HB model: %r with %r", partition, config)
        outcome = refiner.run(state)
        result = assemble_results(outcome.summary, partition, state=outcome.state)
        logger.info("Finished %d refinement passes", outcome.iterations)
        return result

    def fit(self, y, x, index=None, covariate_names=None) -> EstimationResult:
        """
        Estimate from arrays.

        Parameters
        ----------
        y : array-like
            Outcome per area, NaN for non-sampled areas.
        x : array-like
            Covariates, shape (N, p).
        index : sequence, optional
            Row labels for the estimate table.
        covariate_names : sequence of str, optional
            Covariate names.

        Raises
        ------
        InvalidInputError
            If covariates are missing or outcomes are invalid.
        """
        partition = partition_areas(y, x, index=index, covariate_names=covariate_names)
        return self.fit_partition(partition)

    def fit_formula(self, formula: str, data: pd.DataFrame) -> EstimationResult:
        """
        Estimate from a patsy formula such as ``"y ~ x1 + x2"``.

        Rows with a missing outcome are non-sampled areas.
        """
        y, x, names, index = design_from_formula(formula, data)
        return self.fit(y, x, index=index, covariate_names=names)

    def __repr__(self) -> str:
        return f"ZinbHB(config={self.config!r}, sampler={self.sampler!r})"


def zinb_hb(
    formula: str,
    data: pd.DataFrame,
    sampler=None,
    **options,
) -> EstimationResult:
    """
    Small-area estimation under a ZINB Hierarchical Bayesian model.

    Parameters
    ----------
    formula : str
        Patsy formula naming the outcome and auxiliary variables.
    data : pd.DataFrame
        Area data; a missing outcome marks a non-sampled area.
    sampler : object, optional
        Sampling adapter replacing the default GibbsSampler.
    **options
        Any EstimationConfig option (iter_update, iter_mcmc, burn_in, thin,
        coef_nonzero, coef_zero, var_coef_nonzero, var_coef_zero, tau_u,
        tau_v, n_adapt, step, random_seed, progressbar, slice_iter_limit,
        freeze_prediction_coefficients).

    Returns
    -------
    result : EstimationResult
        ``estimates``, ``coefficients`` and ``random_effect_variances`` tables.

    Examples
    --------
    >>> result = zinb_hb("y ~ x1 + x2", data)  # doctest: +SKIP
    >>> result.estimates                        # doctest: +SKIP
    """
    return ZinbHB(EstimationConfig(**options), sampler=sampler).fit_formula(formula, data)

"""
Result assembly: named, area-ordered tables from the final posterior.

Monitors are read by name from the PosteriorSummary. In mixed mode the
sampled block (mu_eff) and the non-sampled block (mu_eff_nonsampled) are
scattered back to original area positions through the partition's
index map, so row k of the estimate table is always input row k.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from zinbsae.areas.partition import AreaPartition
from zinbsae.exceptions import SamplingError
from zinbsae.inference.model_builder import HyperparameterState
from zinbsae.inference.sampler import STAT_COLUMNS, PosteriorSummary

logger = logging.getLogger(__name__)

VARIANCE_LABELS = ["a.var.u", "a.var.v"]


class EstimationResult:
    """
    Output of a ZINB HB estimation.

    Attributes
    ----------
    estimates : pd.DataFrame
        Small-area mean estimates, one row per area in input order.
    coefficients : pd.DataFrame
        Rows b[0]..b[nvar-1] (log model) then g[0]..g[nvar-1] (logit model).
    random_effect_variances : pd.DataFrame
        Rows a.var.u (intensity) and a.var.v (zero inflation).
    hyperparameters : HyperparameterState or None
        State moment-matched from the final pass.
    summary : PosteriorSummary
        Posterior statistics of the final pass.
    """

    def __init__(
        self,
        estimates: pd.DataFrame,
        coefficients: pd.DataFrame,
        random_effect_variances: pd.DataFrame,
        summary: PosteriorSummary,
        hyperparameters: Optional[HyperparameterState] = None,
    ) -> None:
        self.estimates = estimates
        self.coefficients = coefficients
        self.random_effect_variances = random_effect_variances
        self.summary = summary
        self.hyperparameters = hyperparameters

    def _samples(self, name: str):
        posterior = self.summary.posterior
        if posterior is None or name not in posterior:
            return None
        return posterior[name]

    @property
    def beta_samples(self):
        """Retained draws of b (xarray.DataArray) for trace/ACF plots, or None."""
        return self._samples("b")

    @property
    def gamma_samples(self):
        """Retained draws of g (xarray.DataArray) for trace/ACF plots, or None."""
        return self._samples("g")

    def __repr__(self) -> str:
        return (
            f"EstimationResult(areas={len(self.estimates)}, "
            f"coefficients={len(self.coefficients)}, n_draws={self.summary.n_draws})"
        )


def _require(summary: PosteriorSummary, name: str, size: int) -> np.ndarray:
    if name not in summary:
        raise SamplingError(f"Posterior summary lacks monitor {name!r}")
    values = summary.values(name)
    if values.shape[0] != size:
        raise SamplingError(
            f"Monitor {name!r} has {values.shape[0]} elements, expected {size}"
        )
    return values


def assemble_results(
    summary: PosteriorSummary,
    partition: AreaPartition,
    state: Optional[HyperparameterState] = None,
) -> EstimationResult:
    """
    Build the estimate, coefficient and variance tables.

    Parameters
    ----------
    summary : PosteriorSummary
        Posterior of the final refinement pass.
    partition : AreaPartition
        Partition the model was built from.
    state : HyperparameterState, optional
        Final refined hyperparameters, stored on the result.

    Returns
    -------
    result : EstimationResult

    Raises
    ------
    SamplingError
        If a required monitor is missing or has the wrong size.
    """
    nvar = partition.nvar

    sampled = _require(summary, "mu_eff", partition.n_sampled)
    if partition.fully_sampled:
        area_rows = sampled
    else:
        nonsampled = _require(summary, "mu_eff_nonsampled", partition.n_nonsampled)
        area_rows = partition.merge(sampled, nonsampled)
    estimates = pd.DataFrame(area_rows, index=partition.index, columns=STAT_COLUMNS)

    beta = _require(summary, "b", nvar)
    gamma = _require(summary, "g", nvar)
    labels = [f"b[{k}]" for k in range(nvar)] + [f"g[{k}]" for k in range(nvar)]
    coefficients = pd.DataFrame(np.vstack([beta, gamma]), index=labels, columns=STAT_COLUMNS)

    variances = np.vstack([_require(summary, "a_var_u", 1), _require(summary, "a_var_v", 1)])
    random_effect_variances = pd.DataFrame(variances, index=VARIANCE_LABELS, columns=STAT_COLUMNS)

    logger.debug(
        "Assembled %d area estimates (%d sampled, %d non-sampled)",
        partition.n_areas, partition.n_sampled, partition.n_nonsampled,
    )
    return EstimationResult(
        estimates=estimates,
        coefficients=coefficients,
        random_effect_variances=random_effect_variances,
        summary=summary,
        hyperparameters=state,
    )

"""
Area partitioning: split areas into sampled and non-sampled blocks.

The sampler needs two separately sized blocks: areas with an observed
outcome contribute likelihood terms, areas with a missing outcome are
predicted only. Output tables must still follow the original area order,
so the partition records, for every original row, which block it went to
and where.

    sampled_index[k]    = original row of the k-th sampled area
    nonsampled_index[j] = original row of the j-th non-sampled area

Both index vectors are increasing, disjoint, and together cover 0..N-1.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import patsy
from numpy.typing import NDArray

from zinbsae.exceptions import InvalidInputError

logger = logging.getLogger(__name__)


class AreaPartition:
    """
    Areas split into sampled (observed outcome) and non-sampled blocks.

    Attributes
    ----------
    y : NDArray[np.float64]
        Outcome per area, shape (N,). NaN marks a non-sampled area.
    x : NDArray[np.float64]
        Auxiliary covariates, shape (N, p). Never contains NaN.
    sampled_index : NDArray[np.int64]
        Original positions of sampled areas, increasing.
    nonsampled_index : NDArray[np.int64]
        Original positions of non-sampled areas, increasing.
    index : pd.Index
        Row labels used for the area-estimate table.
    covariate_names : List[str]
        Names of the covariate columns.
    """

    def __init__(
        self,
        y: NDArray[np.float64],
        x: NDArray[np.float64],
        sampled_index: NDArray[np.int64],
        nonsampled_index: NDArray[np.int64],
        index: Optional[pd.Index] = None,
        covariate_names: Optional[Sequence[str]] = None,
    ) -> None:
        self.y = y
        self.x = x
        self.sampled_index = sampled_index
        self.nonsampled_index = nonsampled_index
        self.index = index if index is not None else pd.RangeIndex(len(y))
        if covariate_names is None:
            covariate_names = [f"x{k + 1}" for k in range(x.shape[1])]
        self.covariate_names: List[str] = list(covariate_names)

    @property
    def n_areas(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_sampled(self) -> int:
        return int(self.sampled_index.shape[0])

    @property
    def n_nonsampled(self) -> int:
        return int(self.nonsampled_index.shape[0])

    @property
    def nvar(self) -> int:
        """Number of regression coefficients per sub-model (covariates + intercept)."""
        return int(self.x.shape[1]) + 1

    @property
    def fully_sampled(self) -> bool:
        return self.n_nonsampled == 0

    @property
    def y_sampled(self) -> NDArray[np.int64]:
        return self.y[self.sampled_index].astype(np.int64)

    @property
    def x_sampled(self) -> NDArray[np.float64]:
        return self.x[self.sampled_index]

    @property
    def x_nonsampled(self) -> NDArray[np.float64]:
        return self.x[self.nonsampled_index]

    def merge(
        self,
        sampled_rows: NDArray[np.float64],
        nonsampled_rows: Optional[NDArray[np.float64]] = None,
    ) -> NDArray[np.float64]:
        """
        Scatter per-block rows back into original area order.

        Parameters
        ----------
        sampled_rows : NDArray[np.float64]
            Rows for the sampled block, shape (n_sampled, ...).
        nonsampled_rows : NDArray[np.float64], optional
            Rows for the non-sampled block, shape (n_nonsampled, ...).
            Required unless the partition is fully sampled.

        Returns
        -------
        merged : NDArray[np.float64]
            Rows in original area order, shape (N, ...).

        Raises
        ------
        ValueError
            If a block has the wrong number of rows.
        """
        sampled_rows = np.asarray(sampled_rows, dtype=np.float64)
        if sampled_rows.shape[0] != self.n_sampled:
            raise ValueError(
                f"Expected {self.n_sampled} sampled rows. Got {sampled_rows.shape[0]}"
            )

        merged = np.empty((self.n_areas,) + sampled_rows.shape[1:], dtype=np.float64)
        merged[self.sampled_index] = sampled_rows

        if self.n_nonsampled:
            if nonsampled_rows is None:
                raise ValueError(
                    f"Expected {self.n_nonsampled} non-sampled rows. Got none"
                )
            nonsampled_rows = np.asarray(nonsampled_rows, dtype=np.float64)
            if nonsampled_rows.shape[0] != self.n_nonsampled:
                raise ValueError(
                    f"Expected {self.n_nonsampled} non-sampled rows. "
                    f"Got {nonsampled_rows.shape[0]}"
                )
            merged[self.nonsampled_index] = nonsampled_rows

        return merged

    def __repr__(self) -> str:
        mode = "fully-sampled" if self.fully_sampled else "mixed"
        return (
            f"AreaPartition(n_areas={self.n_areas}, n_sampled={self.n_sampled}, "
            f"n_nonsampled={self.n_nonsampled}, nvar={self.nvar}, mode={mode})"
        )


def partition_areas(
    y,
    x,
    index: Optional[pd.Index] = None,
    covariate_names: Optional[Sequence[str]] = None,
) -> AreaPartition:
    """
    Validate areas and split them into sampled and non-sampled blocks.

    Parameters
    ----------
    y : array-like
        Outcome per area, shape (N,). Non-negative integers, NaN when missing.
    x : array-like
        Covariates, shape (N, p) or (N,) for a single covariate.
    index : pd.Index, optional
        Row labels for the output table. Defaults to 0..N-1.
    covariate_names : Sequence[str], optional
        Covariate column names.

    Returns
    -------
    partition : AreaPartition

    Raises
    ------
    InvalidInputError
        If covariates contain missing values, outcomes are negative or
        fractional, shapes disagree, or no area has an observed outcome.
    """
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)

    if x.ndim != 2 or x.shape[0] != y.shape[0]:
        raise InvalidInputError(
            f"Covariates must have shape ({y.shape[0]}, p). Got {x.shape}"
        )
    if y.shape[0] == 0:
        raise InvalidInputError("No areas supplied")
    if x.shape[1] == 0:
        raise InvalidInputError("At least one auxiliary variable is required")
    if np.isnan(x).any():
        raise InvalidInputError("auxiliary variables contain missing values")

    observed = ~np.isnan(y)
    y_obs = y[observed]
    if np.any(y_obs < 0) or np.any(y_obs != np.floor(y_obs)) or np.isinf(y_obs).any():
        raise InvalidInputError("Outcome values must be non-negative integers or missing")
    if not observed.any():
        raise InvalidInputError("At least one area must have an observed outcome")

    if index is not None and len(index) != y.shape[0]:
        raise InvalidInputError(
            f"index must have length {y.shape[0]}. Got {len(index)}"
        )
    if covariate_names is not None and len(covariate_names) != x.shape[1]:
        raise InvalidInputError(
            f"covariate_names must have length {x.shape[1]}. Got {len(covariate_names)}"
        )

    sampled_index = np.flatnonzero(observed).astype(np.int64)
    nonsampled_index = np.flatnonzero(~observed).astype(np.int64)

    partition = AreaPartition(
        y=y,
        x=x,
        sampled_index=sampled_index,
        nonsampled_index=nonsampled_index,
        index=pd.Index(index) if index is not None else None,
        covariate_names=covariate_names,
    )
    logger.debug("Partitioned areas: %r", partition)
    return partition


def design_from_formula(
    formula: str,
    data: pd.DataFrame,
) -> Tuple[NDArray[np.float64], NDArray[np.float64], List[str], pd.Index]:
    """
    Extract outcome and covariate matrix from a patsy formula.

    Rows with missing values are kept (patsy drops them by default), so
    non-sampled areas survive and missing covariates can be reported.
    The patsy intercept column is removed; the model carries its own.

    Parameters
    ----------
    formula : str
        Patsy formula, e.g. ``"y ~ x1 + x2"``.
    data : pd.DataFrame
        Area data.

    Returns
    -------
    y : NDArray[np.float64]
        Outcome, shape (N,).
    x : NDArray[np.float64]
        Covariates without intercept, shape (N, p).
    covariate_names : List[str]
        Design column names.
    index : pd.Index
        Row labels of ``data``.

    Raises
    ------
    InvalidInputError
        If the formula cannot be evaluated against ``data`` or has no
        outcome or no covariates.
    """
    keep_missing = patsy.NAAction(NA_types=[])
    try:
        y_df, x_df = patsy.dmatrices(
            formula, data, NA_action=keep_missing, return_type="dataframe"
        )
    except patsy.PatsyError as err:
        raise InvalidInputError(f"Cannot evaluate formula {formula!r}: {err}") from err

    if y_df.shape[1] != 1:
        raise InvalidInputError(
            f"Formula must have exactly one outcome column. Got {list(y_df.columns)}"
        )

    x_df = x_df.drop(columns=["Intercept"], errors="ignore")
    if x_df.shape[1] == 0:
        raise InvalidInputError("Formula must name at least one auxiliary variable")

    return (
        y_df.iloc[:, 0].to_numpy(dtype=np.float64),
        x_df.to_numpy(dtype=np.float64),
        [str(c) for c in x_df.columns],
        data.index,
    )

"""
Unit tests for area partitioning.

Tests cover:
- Sampled / non-sampled split and mode detection
- Validation of covariates and outcomes
- Re-merging block rows into original order
- Patsy formula front end
"""

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_array_equal, assert_allclose

from zinbsae.areas import AreaPartition, design_from_formula, partition_areas
from zinbsae.exceptions import InvalidInputError


class TestPartitionAreas:
    """Tests for splitting areas into blocks."""

    def test_fully_sampled(self) -> None:
        """Test that complete outcomes give a single sampled block."""
        y = np.array([0, 1, 4, 0])
        x = np.arange(8, dtype=float).reshape(4, 2)
        partition = partition_areas(y, x)

        assert partition.fully_sampled
        assert partition.n_areas == 4
        assert partition.n_sampled == 4
        assert partition.n_nonsampled == 0
        assert partition.nvar == 3
        assert_array_equal(partition.sampled_index, [0, 1, 2, 3])

    def test_mixed_split_keeps_order(self) -> None:
        """Test that missing outcomes go to the non-sampled block in order."""
        y = np.array([1, np.nan, 2, np.nan, 0])
        x = np.arange(5, dtype=float)
        partition = partition_areas(y, x)

        assert not partition.fully_sampled
        assert_array_equal(partition.sampled_index, [0, 2, 4])
        assert_array_equal(partition.nonsampled_index, [1, 3])
        assert_array_equal(partition.y_sampled, [1, 2, 0])
        assert_allclose(partition.x_nonsampled, [[1.0], [3.0]])

    def test_single_covariate_vector_is_reshaped(self) -> None:
        """Test that a 1-D covariate becomes one column."""
        partition = partition_areas([1, 2, 3], [0.1, 0.2, 0.3])
        assert partition.x.shape == (3, 1)
        assert partition.nvar == 2
        assert partition.covariate_names == ["x1"]

    def test_missing_covariate_raises_error(self) -> None:
        """Test that NaN covariates are rejected."""
        x = np.array([[1.0, 2.0], [np.nan, 1.0]])
        with pytest.raises(InvalidInputError, match="auxiliary variables contain missing values"):
            partition_areas([1, 2], x)

    def test_missing_covariate_in_nonsampled_row_raises_error(self) -> None:
        """Test that missing covariates are rejected even where the outcome is missing."""
        x = np.array([[1.0], [np.nan]])
        with pytest.raises(InvalidInputError, match="missing values"):
            partition_areas([1, np.nan], x)

    @pytest.mark.parametrize("bad", [-1, 2.5])
    def test_invalid_outcome_raises_error(self, bad) -> None:
        """Test that negative and fractional outcomes are rejected."""
        with pytest.raises(InvalidInputError, match="non-negative integers"):
            partition_areas([1, bad, 3], [0.0, 1.0, 2.0])

    def test_all_outcomes_missing_raises_error(self) -> None:
        """Test that at least one observed outcome is required."""
        with pytest.raises(InvalidInputError, match="observed outcome"):
            partition_areas([np.nan, np.nan], [0.0, 1.0])

    def test_shape_mismatch_raises_error(self) -> None:
        """Test that outcome and covariate lengths must agree."""
        with pytest.raises(InvalidInputError, match="shape"):
            partition_areas([1, 2, 3], np.zeros((2, 1)))

    def test_no_covariates_raises_error(self) -> None:
        """Test that an empty covariate matrix is rejected."""
        with pytest.raises(InvalidInputError, match="auxiliary variable"):
            partition_areas([1, 2], np.zeros((2, 0)))

    def test_index_length_checked(self) -> None:
        """Test that row labels must match the number of areas."""
        with pytest.raises(InvalidInputError, match="index"):
            partition_areas([1, 2], [0.0, 1.0], index=["a"])

    def test_repr_names_mode(self) -> None:
        """Test string representation."""
        partition = partition_areas([1, np.nan], [0.0, 1.0])
        assert "mixed" in repr(partition)
        assert "n_nonsampled=1" in repr(partition)


class TestMerge:
    """Tests for scattering block rows back to original order."""

    def test_merge_interleaves_blocks(self, mixed_partition: AreaPartition) -> None:
        """Test that rows land on their original positions."""
        sampled = np.arange(7, dtype=float) + 100.0
        nonsampled = np.arange(3, dtype=float) + 200.0
        merged = mixed_partition.merge(sampled, nonsampled)

        assert_allclose(merged, [100, 200, 101, 102, 201, 103, 104, 105, 202, 106])

    def test_merge_two_dimensional_rows(self, mixed_partition: AreaPartition) -> None:
        """Test that statistic rows keep their columns."""
        sampled = np.tile(np.arange(7, dtype=float)[:, None], (1, 7))
        nonsampled = -np.ones((3, 7))
        merged = mixed_partition.merge(sampled, nonsampled)

        assert merged.shape == (10, 7)
        assert_allclose(merged[[1, 4, 8]], -1.0)
        assert_allclose(merged[9], 6.0)

    def test_merge_fully_sampled_is_identity(self, sampled_partition: AreaPartition) -> None:
        """Test that a fully sampled partition needs no second block."""
        rows = np.arange(5, dtype=float)
        assert_allclose(sampled_partition.merge(rows), rows)

    def test_merge_wrong_block_size_raises_error(self, mixed_partition: AreaPartition) -> None:
        """Test that block sizes are checked."""
        with pytest.raises(ValueError, match="non-sampled rows"):
            mixed_partition.merge(np.zeros(7), np.zeros(2))
        with pytest.raises(ValueError, match="sampled rows"):
            mixed_partition.merge(np.zeros(6), np.zeros(3))
        with pytest.raises(ValueError, match="Got none"):
            mixed_partition.merge(np.zeros(7))


class TestDesignFromFormula:
    """Tests for the patsy front end."""

    def test_keeps_rows_with_missing_outcome(self) -> None:
        """Test that non-sampled rows survive formula evaluation."""
        data = pd.DataFrame(
            {"y": [1.0, np.nan, 3.0], "x1": [0.1, 0.2, 0.3], "x2": [1.0, 2.0, 3.0]},
            index=["a", "b", "c"],
        )
        y, x, names, index = design_from_formula("y ~ x1 + x2", data)

        assert y.shape == (3,)
        assert np.isnan(y[1])
        assert x.shape == (3, 2)
        assert names == ["x1", "x2"]
        assert list(index) == ["a", "b", "c"]

    def test_intercept_column_dropped(self) -> None:
        """Test that patsy's intercept column is not a covariate."""
        data = pd.DataFrame({"y": [1, 2], "x1": [0.5, 1.5]})
        _, x, names, _ = design_from_formula("y ~ x1", data)
        assert names == ["x1"]
        assert_allclose(x[:, 0], [0.5, 1.5])

    def test_missing_covariate_reaches_partition(self) -> None:
        """Test that NaN covariates are kept so the partitioner can reject them."""
        data = pd.DataFrame({"y": [1, 2], "x1": [0.5, np.nan]})
        y, x, _, _ = design_from_formula("y ~ x1", data)
        with pytest.raises(InvalidInputError):
            partition_areas(y, x)

    def test_unknown_column_raises_error(self) -> None:
        """Test that formula errors surface as invalid input."""
        data = pd.DataFrame({"y": [1, 2], "x1": [0.5, 1.5]})
        with pytest.raises(InvalidInputError, match="Cannot evaluate formula"):
            design_from_formula("y ~ nope", data)

    def test_formula_without_covariates_raises_error(self) -> None:
        """Test that an intercept-only formula is rejected."""
        data = pd.DataFrame({"y": [1, 2]})
        with pytest.raises(InvalidInputError, match="auxiliary variable"):
            design_from_formula("y ~ 1", data)

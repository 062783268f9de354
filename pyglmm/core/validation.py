"""
Input validation for GLMM data.

Every array a model touches passes through one of three gates:

    check_response            the response vector y
    check_observation_vector  per-observation vectors (weights, offset, trials)
    check_design_matrix       fixed-effect designs (X, zi_X, disp_X)

All of them convert with check_array, reject non-finite entries and
report the offending argument by name. Shape problems raise
DimensionError; anything else raises ValidationError. Nothing is
silently repaired.
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from typing import Any

from pyglmm.core.exceptions import ValidationError, DimensionError, ModelSpecError


MIN_OBSERVATIONS = 3


def check_array(value: ArrayLike, name: str) -> NDArray[np.float64]:
    """
    Convert to a float64 array, rejecting non-numeric input.

    Booleans are accepted as 0/1. Object and string arrays are not.

    Raises:
        ValidationError: If the input cannot be read as numbers.
    """
    try:
        arr = np.asarray(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e

    if arr.dtype == object:
        raise ValidationError(
            f"{name}: object dtype (mixed or non-numeric entries); expected numbers"
        )
    if arr.dtype != bool and not np.issubdtype(arr.dtype, np.number):
        raise ValidationError(f"{name}: non-numeric dtype {arr.dtype}")
    return arr.astype(np.float64, copy=False)


def check_finite(array: NDArray[np.floating[Any]], name: str) -> None:
    """Raise ValidationError if array holds NaN or Inf, with counts of each."""
    bad = ~np.isfinite(array)
    if bad.any():
        n_nan = int(np.isnan(array).sum())
        raise ValidationError(
            f"{name}: contains non-finite values ({n_nan} NaN, {int(bad.sum()) - n_nan} Inf)"
        )


def check_response(y: ArrayLike) -> NDArray[np.float64]:
    """
    Validate the response: finite, flattened to 1D, at least
    MIN_OBSERVATIONS entries.

    Support checks (counts, proportions, positivity) belong to the family.
    """
    arr = check_array(y, 'y')
    if arr.ndim > 1 and sum(d > 1 for d in arr.shape) > 1:
        raise DimensionError(f"y: expected a vector, got shape {arr.shape}")
    arr = arr.ravel()
    check_finite(arr, 'y')
    if arr.shape[0] < MIN_OBSERVATIONS:
        raise ValidationError(
            f"y: requires at least {MIN_OBSERVATIONS} observations, got {arr.shape[0]}"
        )
    return arr


def check_observation_vector(
    value: ArrayLike,
    name: str,
    n: int,
    nonnegative: bool = False,
) -> NDArray[np.float64]:
    """
    Validate a per-observation vector such as weights, offset or trials.

    Args:
        value: Array-like of length n.
        name: Argument name for error messages.
        n: Number of observations.
        nonnegative: Also reject negative entries.

    Raises:
        DimensionError: If the length differs from n.
        ValidationError: On non-numeric, non-finite or negative entries.
    """
    arr = check_array(value, name).ravel()
    if arr.shape[0] != n:
        raise DimensionError(f"{name}: length {arr.shape[0]}, expected {n} (one per observation)")
    check_finite(arr, name)
    if nonnegative and np.any(arr < 0):
        raise ValidationError(f"{name}: must be non-negative, got min {arr.min():g}")
    return arr


def check_design_matrix(
    value: ArrayLike,
    name: str,
    n: int,
    n_cols: int | None = None,
) -> NDArray[np.float64]:
    """
    Validate a fixed-effect design matrix with n rows.

    A 1D input is read as a single column. When n_cols is given the
    column count must match it (used for prediction on new data).

    Raises:
        DimensionError: On a wrong number of dimensions, rows or columns.
        ValidationError: On non-numeric or non-finite entries.
    """
    X = check_array(value, name)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise DimensionError(f"{name}: expected a 2D design matrix, got {X.ndim}D")
    if n_cols is not None and X.shape[1] != n_cols:
        raise DimensionError(f"{name}: has {X.shape[1]} columns, expected {n_cols}")
    if X.shape[0] != n:
        raise DimensionError(f"{name}: has {X.shape[0]} rows, expected {n}")
    check_finite(X, name)
    return X


def check_column_rank(
    X: NDArray[np.floating[Any]],
    name: str,
    component: str | None = None,
) -> None:
    """
    Reject a design without full column rank.

    Such a sub-model has unidentified coefficients, so the error is a
    ModelSpecError tagged with the sub-model ('cond', 'zi' or 'disp').
    An empty design (no columns) passes.
    """
    p = X.shape[1]
    if p == 0:
        return
    rank = int(np.linalg.matrix_rank(X))
    if rank < p:
        raise ModelSpecError(
            f"{name}: rank-deficient design (rank {rank} < {p} columns); "
            f"some coefficients are not identifiable",
            component=component,
        )

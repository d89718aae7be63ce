"""
Feature filtering, set statistics and multiple testing correction.
"""

from typing import Tuple
import numba as nb
import numpy as np
from scipy import stats
from statsmodels.stats.multitest import multipletests

from factor_gsea.config import validate_set_statistic, validate_sign


#  Core numba-optimised functions for inner loops

@nb.njit(nogil=True)
def _mean_differences(values, indptr, indices):
    """
    Difference between the foreground and background mean for every set.

    Args:
        values: Per-feature values (weights or ranks)
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix

    Returns:
        Array with one statistic per set
    """
    n_features = values.shape[0]
    n_sets = indptr.shape[0] - 1
    total = 0.0
    for j in range(n_features):
        total += values[j]

    out = np.empty(n_sets)
    for s in range(n_sets):
        start = indptr[s]
        end = indptr[s + 1]
        m1 = end - start
        m2 = n_features - m1
        fg = 0.0
        for k in range(start, end):
            fg += values[indices[k]]
        out[s] = fg / m1 - (total - fg) / m2
    return out


@nb.njit(nogil=True)
def _group_sums_of_squares(values, indptr, indices):
    """
    Within-group sums of squared deviations for foreground and background.

    Args:
        values: Per-feature values
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix

    Returns:
        Tuple of (foreground SS, background SS) arrays
    """
    n_features = values.shape[0]
    n_sets = indptr.shape[0] - 1

    # Centre first to limit cancellation in the sum-of-squares identity
    mean = 0.0
    for j in range(n_features):
        mean += values[j]
    mean /= n_features
    centred = values - mean
    total = 0.0
    total_sq = 0.0
    for j in range(n_features):
        total += centred[j]
        total_sq += centred[j] * centred[j]

    ss_fg = np.empty(n_sets)
    ss_bg = np.empty(n_sets)
    for s in range(n_sets):
        start = indptr[s]
        end = indptr[s + 1]
        m1 = end - start
        m2 = n_features - m1
        fg = 0.0
        fg_sq = 0.0
        for k in range(start, end):
            v = centred[indices[k]]
            fg += v
            fg_sq += v * v
        bg = total - fg
        bg_sq = total_sq - fg_sq
        ss_fg[s] = max(fg_sq - fg * fg / m1, 0.0)
        ss_bg[s] = max(bg_sq - bg * bg / m2, 0.0) if m2 > 0 else 0.0
    return ss_fg, ss_bg


def apply_sign_filter(weights, sign: str = "all") -> np.ndarray:
    """
    Restrict weights to one direction.

    'positive' zeroes weights <= 0; 'negative' zeroes weights >= 0 and takes
    magnitudes so that high values always mean a strong contribution in the
    selected direction; 'all' leaves weights unchanged. Works elementwise, so
    each factor column of a matrix is filtered independently.

    Args:
        weights: Vector or features x factors matrix of weights
        sign: One of 'positive', 'negative', 'all'

    Returns:
        Filtered copy of the weights
    """
    validate_sign(sign)
    filtered = np.array(weights, dtype=np.float64, copy=True)
    if sign == "positive":
        filtered[filtered <= 0] = 0.0
    elif sign == "negative":
        filtered[filtered >= 0] = 0.0
        filtered = np.abs(filtered)
    return filtered


def feature_values(filtered_weights, set_statistic: str = "mean.diff") -> np.ndarray:
    """
    Per-feature values that the set statistic averages.

    mean.diff uses the weights themselves, rank.sum their average-tie ranks
    over the whole universe.
    """
    validate_set_statistic(set_statistic)
    values = np.ascontiguousarray(filtered_weights, dtype=np.float64)
    if set_statistic == "rank.sum":
        return stats.rankdata(values, method='average').astype(np.float64)
    return values


def compute_set_statistics(
    filtered_weights,
    indptr,
    indices,
    set_statistic: str = "mean.diff"
) -> np.ndarray:
    """
    Compute one statistic per feature set for a single factor.

    mean.diff is mean(foreground) - mean(background). rank.sum is the mean
    foreground rank minus the mean background rank, i.e. the Wilcoxon rank sum
    centred on its expectation and scaled by N / (m1 * m2).

    Args:
        filtered_weights: Sign-filtered weights of one factor
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        set_statistic: 'mean.diff' or 'rank.sum'

    Returns:
        Array with one statistic per set
    """
    values = feature_values(filtered_weights, set_statistic)
    return _mean_differences(values, indptr, indices)


def tie_correction_term(values) -> float:
    """Sum of t^3 - t over groups of tied values."""
    _, counts = np.unique(values, return_counts=True)
    counts = counts.astype(np.float64)
    return float(np.sum(counts ** 3 - counts))


def pooled_variances(values, indptr, indices) -> np.ndarray:
    """Pooled within-group variance of foreground and background for every set."""
    ss_fg, ss_bg = _group_sums_of_squares(
        np.ascontiguousarray(values, dtype=np.float64), indptr, indices
    )
    dof = values.shape[0] - 2
    if dof <= 0:
        return np.full(ss_fg.shape, np.nan)
    return (ss_fg + ss_bg) / dof


def adjust_pvalues(p_values, method: str = 'fdr_bh') -> np.ndarray:
    """
    Correct one factor's p-values for multiple testing.

    Missing p-values are left missing and do not count towards the number
    of tests.

    Args:
        p_values: Array of raw p-values, one per tested set
        method: statsmodels multipletests method, Benjamini-Hochberg by default

    Returns:
        Array of adjusted p-values in [0, 1]
    """
    p_values = np.asarray(p_values, dtype=np.float64)
    adjusted = np.full(p_values.shape, np.nan)
    finite = np.isfinite(p_values)
    if not finite.any():
        return adjusted

    _, pvals_corrected, _, _ = multipletests(
        np.clip(p_values[finite], 0.0, 1.0),
        method=method
    )
    adjusted[finite] = np.clip(pvals_corrected, 0.0, 1.0)
    return adjusted


def mask_opposite_direction(p_values, set_statistics) -> np.ndarray:
    """Set p-values of sets depleted in the selected direction to 1; missing p-values stay missing."""
    masked = np.array(p_values, dtype=np.float64, copy=True)
    masked[(np.asarray(set_statistics) < 0) & np.isfinite(masked)] = 1.0
    return masked


def select_sets(indptr, indices, keep) -> Tuple[np.ndarray, np.ndarray]:
    """CSR arrays restricted to the sets where keep is True."""
    keep = np.asarray(keep, dtype=bool)
    sizes = np.diff(indptr)[keep]
    sub_indptr = np.zeros(sizes.shape[0] + 1, dtype=np.int64)
    np.cumsum(sizes, out=sub_indptr[1:])
    rows = [indices[indptr[s]:indptr[s + 1]] for s in np.flatnonzero(keep)]
    sub_indices = np.concatenate(rows).astype(np.int64) if rows else np.empty(0, dtype=np.int64)
    return sub_indptr, sub_indices


def group_sizes(indptr, n_features: int) -> Tuple[np.ndarray, np.ndarray]:
    """Foreground and background sizes from CSR row pointers."""
    m1 = np.diff(indptr).astype(np.int64)
    return m1, n_features - m1

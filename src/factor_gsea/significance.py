"""
Significance of set statistics under the competitive null hypothesis.

Three interchangeable strategies are available:

* ``parametric`` treats the features of a set as an independent sample and
  uses the closed-form variance of the statistic.
* ``cor.adj.parametric`` inflates that variance by the mean pairwise
  correlation of the features within each group (foreground and background),
  estimated from a samples x features data matrix.
* ``permutation`` permutes the weight vector as a whole against set
  membership and compares absolute statistics with the observed ones.
"""

from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Optional, Tuple
import logging
import warnings

import numba as nb
import numpy as np
from scipy import stats

from factor_gsea.config import validate_set_statistic, validate_test_name
from factor_gsea.exceptions import (
    DegenerateSampleSizeError,
    InvalidConfigurationError,
    MissingCorrelationDataError,
    NumericInstabilityWarning,
)
from factor_gsea.stats import (
    _mean_differences,
    feature_values,
    group_sizes,
    pooled_variances,
    tie_correction_term,
)

logger = logging.getLogger(__name__)

PERMUTATION_BATCH_SIZE = 256

_VARIANCE_EPS = 1e-12
_STATISTIC_EPS = 1e-10


@nb.njit(nogil=True)
def _count_extreme_permutations(values, permutations, indptr, indices, observed_abs, tolerance):
    """
    Count permuted statistics at least as extreme as the observed ones.

    Args:
        values: Per-feature values (weights or ranks)
        permutations: 2D array, one permutation of feature positions per row
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        observed_abs: Absolute observed statistic per set
        tolerance: Per-set slack for floating point ties

    Returns:
        Count per set
    """
    n_perm, n_features = permutations.shape
    n_sets = indptr.shape[0] - 1
    total = 0.0
    for j in range(n_features):
        total += values[j]

    counts = np.zeros(n_sets, dtype=np.int64)
    for b in range(n_perm):
        for s in range(n_sets):
            start = indptr[s]
            end = indptr[s + 1]
            m1 = end - start
            m2 = n_features - m1
            fg = 0.0
            for k in range(start, end):
                fg += values[permutations[b, indices[k]]]
            null_stat = fg / m1 - (total - fg) / m2
            if abs(null_stat) >= observed_abs[s] - tolerance[s]:
                counts[s] += 1
    return counts


def mean_pairwise_correlations(data, membership) -> Tuple[np.ndarray, np.ndarray]:
    """
    Mean pairwise Pearson correlation within the foreground and background of every set.

    Uses the identity sum(corr[S, S]) = ||Z 1_S||^2 / (n - 1) on the column
    standardised data Z, so no features x features matrix is formed. Missing
    values are treated as the column mean.

    Args:
        data: Samples x features data matrix restricted to the universe
        membership: Boolean sets x features membership matrix

    Returns:
        Tuple of (foreground, background) mean correlations; 0 for groups
        with a single feature
    """
    data = np.asarray(data, dtype=np.float64)
    n_samples = data.shape[0]
    membership = np.asarray(membership, dtype=np.float64)

    with np.errstate(divide='ignore', invalid='ignore'):
        z = (data - np.nanmean(data, axis=0)) / np.nanstd(data, axis=0, ddof=1)
    z = np.where(np.isfinite(z), z, 0.0)

    fg_sums = z @ membership.T
    bg_sums = z.sum(axis=1)[:, None] - fg_sums
    m1 = membership.sum(axis=1)
    m2 = membership.shape[1] - m1

    def _mean_correlation(sums, m):
        corr_total = (sums ** 2).sum(axis=0) / (n_samples - 1)
        with np.errstate(divide='ignore', invalid='ignore'):
            rho = (corr_total - m) / (m * (m - 1))
        return np.where(m > 1, rho, 0.0)

    return _mean_correlation(fg_sums, m1), _mean_correlation(bg_sums, m2)


def variance_inflation_factors(data, membership) -> Tuple[np.ndarray, np.ndarray]:
    """
    Variance inflation factors 1 + (m - 1) * rho for foreground and background.

    Factors are floored at 1 so the adjustment never makes a test less
    conservative than the independent case.
    """
    rho_fg, rho_bg = mean_pairwise_correlations(data, membership)
    m1 = np.asarray(membership).sum(axis=1)
    m2 = np.asarray(membership).shape[1] - m1
    vif_fg = np.maximum(1.0, 1.0 + (m1 - 1) * rho_fg)
    vif_bg = np.maximum(1.0, 1.0 + (m2 - 1) * rho_bg)
    return vif_fg, vif_bg


def _check_group_sizes(m1, m2):
    degenerate = np.flatnonzero((m1 < 2) | (m2 < 2))
    if degenerate.size:
        raise DegenerateSampleSizeError(
            f"{degenerate.size} feature set(s) have fewer than 2 foreground or background "
            f"features, so their variance cannot be estimated",
            gene_sets=degenerate.tolist()
        )


def _two_sided_pvalues(statistic, variance, distribution, scale: float) -> np.ndarray:
    """Two-sided p-values of statistic / sqrt(variance) under a symmetric distribution."""
    p_values = np.empty(statistic.shape)
    stable = variance > _VARIANCE_EPS * max(1.0, scale)
    unstable = ~stable
    if unstable.any():
        message = (
            f"Variance estimate is numerically zero for {int(unstable.sum())} feature set(s); "
            f"their p-values are set to 1 for a null statistic and 0 otherwise"
        )
        logger.warning(message)
        warnings.warn(message, NumericInstabilityWarning, stacklevel=3)
        p_values[unstable] = np.where(np.abs(statistic[unstable]) < _STATISTIC_EPS, 1.0, 0.0)

    score = statistic[stable] / np.sqrt(variance[stable])
    p_values[stable] = 2.0 * distribution.sf(np.abs(score))
    return np.clip(p_values, 0.0, 1.0)


def parametric_pvalues(
    filtered_weights,
    indptr,
    indices,
    set_statistic: str = "mean.diff",
    vif_fg: Optional[np.ndarray] = None,
    vif_bg: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Two-sided p-values assuming features are independent draws.

    mean.diff uses the pooled-variance two-sample t-test with m1 + m2 - 2
    degrees of freedom. rank.sum uses the normal approximation of the Wilcoxon
    rank sum with tie-corrected variance. Optional variance inflation factors
    scale the variance of the difference of means to s^2 (vif_fg/m1 + vif_bg/m2).

    Args:
        filtered_weights: Sign-filtered weights of one factor
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        set_statistic: 'mean.diff' or 'rank.sum'
        vif_fg: Foreground variance inflation per set (default 1)
        vif_bg: Background variance inflation per set (default 1)

    Returns:
        Array of p-values, one per set
    """
    validate_set_statistic(set_statistic)
    n_features = len(filtered_weights)
    m1, m2 = group_sizes(indptr, n_features)
    _check_group_sizes(m1, m2)

    vif_fg = np.ones(m1.shape) if vif_fg is None else np.asarray(vif_fg, dtype=np.float64)
    vif_bg = np.ones(m1.shape) if vif_bg is None else np.asarray(vif_bg, dtype=np.float64)

    values = feature_values(filtered_weights, set_statistic)
    difference = _mean_differences(values, indptr, indices)

    if set_statistic == "mean.diff":
        pooled = pooled_variances(values, indptr, indices)
        variance = pooled * (vif_fg / m1 + vif_bg / m2)
        scale = float(np.max(np.abs(values))) ** 2
        return _two_sided_pvalues(
            difference, variance, stats.t(df=n_features - 2), scale
        )

    # Rank sum centred on its null expectation m1 * (N + 1) / 2
    centred_rank_sum = difference * m1 * m2 / n_features
    ties = tie_correction_term(values)
    variance = m1 * m2 / 12.0 * ((n_features + 1) - ties / (n_features * (n_features - 1)))
    variance = variance * (vif_fg * m2 + vif_bg * m1) / (m1 + m2)
    return _two_sided_pvalues(
        centred_rank_sum, variance, stats.norm(), float(n_features) ** 2
    )


def correlation_adjusted_pvalues(
    filtered_weights,
    indptr,
    indices,
    set_statistic: str = "mean.diff",
    vifs: Optional[Tuple[np.ndarray, np.ndarray]] = None
) -> np.ndarray:
    """
    Parametric p-values with correlation-inflated variance.

    Args:
        filtered_weights: Sign-filtered weights of one factor
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        set_statistic: 'mean.diff' or 'rank.sum'
        vifs: (foreground, background) variance inflation factors, see
              variance_inflation_factors

    Returns:
        Array of p-values, one per set
    """
    if vifs is None:
        raise MissingCorrelationDataError(
            "The cor.adj.parametric test requires a data matrix to estimate feature correlations"
        )
    vif_fg, vif_bg = vifs
    return parametric_pvalues(
        filtered_weights, indptr, indices, set_statistic, vif_fg=vif_fg, vif_bg=vif_bg
    )


def _permutation_batch(values, indptr, indices, observed_abs, tolerance, size, seed_sequence):
    rng = np.random.default_rng(seed_sequence)
    permutations = rng.permuted(
        np.tile(np.arange(values.shape[0], dtype=np.int64), (size, 1)), axis=1
    )
    return _count_extreme_permutations(
        values, permutations, indptr, indices, observed_abs, tolerance
    )


def batch_seed_sequences(seed_sequence: np.random.SeedSequence, n_batches: int):
    """Child seed sequences derived from the parent's spawn key, without mutating the parent."""
    return [
        np.random.SeedSequence(
            entropy=seed_sequence.entropy,
            spawn_key=tuple(seed_sequence.spawn_key) + (i,)
        )
        for i in range(n_batches)
    ]


def permutation_pvalues(
    filtered_weights,
    indptr,
    indices,
    set_statistic: str = "mean.diff",
    n_permutations: int = 1000,
    seed_sequence: Optional[np.random.SeedSequence] = None,
    n_jobs: int = 1
) -> np.ndarray:
    """
    Empirical two-sided p-values from permuting weights against set membership.

    The p-value of a set is (1 + #{|null| >= |observed|}) / (1 + n_permutations).
    Permutations are drawn in fixed-size batches with their own seeds and the
    counts are summed, so the result does not depend on n_jobs.

    Args:
        filtered_weights: Sign-filtered weights of one factor
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        set_statistic: 'mean.diff' or 'rank.sum'
        n_permutations: Number of permutations
        seed_sequence: Seed for the draws; fresh entropy if None
        n_jobs: Threads used for the batches

    Returns:
        Array of p-values, one per set
    """
    if n_permutations is None or n_permutations < 1:
        raise InvalidConfigurationError(
            f"The permutation test requires a positive number of permutations, got {n_permutations}"
        )
    if seed_sequence is None:
        seed_sequence = np.random.SeedSequence()

    values = feature_values(filtered_weights, set_statistic)
    observed_abs = np.abs(_mean_differences(values, indptr, indices))
    tolerance = 1e-10 * np.maximum(1.0, observed_abs)

    n_batches, remainder = divmod(n_permutations, PERMUTATION_BATCH_SIZE)
    sizes = [PERMUTATION_BATCH_SIZE] * n_batches + ([remainder] if remainder else [])
    seeds = batch_seed_sequences(seed_sequence, len(sizes))

    count_batch = partial(_permutation_batch, values, indptr, indices, observed_abs, tolerance)
    if n_jobs > 1 and len(sizes) > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            batch_counts = list(executor.map(count_batch, sizes, seeds))
    else:
        batch_counts = list(map(count_batch, sizes, seeds))

    counts = np.sum(batch_counts, axis=0)
    return (counts + 1.0) / (n_permutations + 1.0)


def calculate_pvalues(
    statistical_test: str,
    filtered_weights,
    indptr,
    indices,
    set_statistic: str = "mean.diff",
    vifs: Optional[Tuple[np.ndarray, np.ndarray]] = None,
    n_permutations: Optional[int] = None,
    seed_sequence: Optional[np.random.SeedSequence] = None,
    n_jobs: int = 1
) -> np.ndarray:
    """
    P-values of one factor's set statistics with the selected strategy.

    Args:
        statistical_test: 'parametric', 'cor.adj.parametric' or 'permutation'
        filtered_weights: Sign-filtered weights of one factor
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        set_statistic: 'mean.diff' or 'rank.sum'
        vifs: Variance inflation factors, required for cor.adj.parametric
        n_permutations: Number of permutations, required for permutation
        seed_sequence: Seed for the permutation draws
        n_jobs: Threads used by the permutation strategy

    Returns:
        Array of p-values, one per set
    """
    validate_test_name(statistical_test)
    filtered_weights = np.ascontiguousarray(filtered_weights, dtype=np.float64)

    if statistical_test == "parametric":
        return parametric_pvalues(filtered_weights, indptr, indices, set_statistic)
    if statistical_test == "cor.adj.parametric":
        return correlation_adjusted_pvalues(
            filtered_weights, indptr, indices, set_statistic, vifs=vifs
        )
    return permutation_pvalues(
        filtered_weights, indptr, indices, set_statistic,
        n_permutations=n_permutations, seed_sequence=seed_sequence, n_jobs=n_jobs
    )

"""Tests for sign filtering, set statistics and multiple testing correction."""

import pytest
import numpy as np

from factor_gsea.data import _membership_to_csr
from factor_gsea.exceptions import InvalidConfigurationError, InvalidSignModeError
from factor_gsea.stats import (
    apply_sign_filter,
    compute_set_statistics,
    feature_values,
    pooled_variances,
    tie_correction_term,
    adjust_pvalues,
    mask_opposite_direction,
    group_sizes,
    select_sets,
)


@pytest.fixture
def two_sets():
    """Set A = {f1, f2}, set B = {f3, f4, f5} over five features."""
    membership = np.array([
        [1, 1, 0, 0, 0],
        [0, 0, 1, 1, 1],
    ], dtype=bool)
    return _membership_to_csr(membership)


def test_apply_sign_filter():
    """Test sign filtering of a weight vector."""
    weights = np.array([2.0, -1.0, 0.0, 3.0])

    assert np.array_equal(apply_sign_filter(weights, "positive"), [2.0, 0.0, 0.0, 3.0])
    assert np.array_equal(apply_sign_filter(weights, "negative"), [0.0, 1.0, 0.0, 0.0])
    assert np.array_equal(apply_sign_filter(weights, "all"), weights)

    # The input is never modified
    assert np.array_equal(weights, [2.0, -1.0, 0.0, 3.0])


def test_apply_sign_filter_per_factor():
    """A feature can be kept for one factor and zeroed for another."""
    weights = np.array([[1.0, -1.0], [-2.0, 2.0]])
    assert np.array_equal(apply_sign_filter(weights, "positive"), [[1.0, 0.0], [0.0, 2.0]])
    assert np.array_equal(apply_sign_filter(weights, "negative"), [[0.0, 1.0], [2.0, 0.0]])


def test_apply_sign_filter_invalid_mode():
    """Unknown sign modes are configuration errors."""
    with pytest.raises(InvalidSignModeError):
        apply_sign_filter(np.array([1.0]), "both")
    with pytest.raises(InvalidConfigurationError):
        apply_sign_filter(np.array([1.0]), "up")


def test_mean_difference_statistic(two_sets):
    """Mean difference between foreground and background."""
    indptr, indices = two_sets
    weights = np.array([3.0, 2.0, -1.0, -4.0, -2.0])

    result = compute_set_statistics(weights, indptr, indices, "mean.diff")

    expected = 2.5 - (-7.0 / 3.0)
    assert result[0] == pytest.approx(expected)
    assert result[1] == pytest.approx(-expected)


def test_rank_sum_statistic(two_sets):
    """Rank statistic is the mean foreground rank minus the mean background rank."""
    indptr, indices = two_sets
    weights = np.array([3.0, 2.0, -1.0, -4.0, -2.0])

    # Ranks are [5, 4, 3, 1, 2]
    result = compute_set_statistics(weights, indptr, indices, "rank.sum")
    assert result[0] == pytest.approx(4.5 - 2.0)
    assert result[1] == pytest.approx(2.0 - 4.5)

    # Centred Wilcoxon rank sum of set A: 9 - 2 * 6 / 2 = 3
    m1, m2 = group_sizes(indptr, 5)
    assert result[0] * m1[0] * m2[0] / 5 == pytest.approx(3.0)


def test_rank_sum_ties():
    """Tied weights share their average rank."""
    indptr, indices = _membership_to_csr(np.array([[1, 0, 0, 0]], dtype=bool))
    weights = np.array([1.0, 1.0, 0.0, 0.0])

    assert np.array_equal(feature_values(weights, "rank.sum"), [3.5, 3.5, 1.5, 1.5])
    result = compute_set_statistics(weights, indptr, indices, "rank.sum")
    assert result[0] == pytest.approx(3.5 - 6.5 / 3.0)
    assert tie_correction_term(feature_values(weights, "rank.sum")) == pytest.approx(12.0)


def test_single_feature_set():
    """Statistics are defined for a foreground of one feature."""
    indptr, indices = _membership_to_csr(np.array([[0, 1, 0]], dtype=bool))
    result = compute_set_statistics(np.array([1.0, 4.0, 3.0]), indptr, indices, "mean.diff")
    assert result[0] == pytest.approx(2.0)


def test_sign_filter_and_statistic_sign():
    """Flipping the weights and the sign mode gives the same filtered statistic."""
    indptr, indices = _membership_to_csr(np.array([[1, 0, 0]], dtype=bool))
    weights = np.array([2.0, -1.0, -1.0])
    flipped = -weights

    positive = compute_set_statistics(apply_sign_filter(weights, "positive"), indptr, indices)
    negative = compute_set_statistics(apply_sign_filter(flipped, "negative"), indptr, indices)
    assert positive[0] == pytest.approx(2.0)
    assert negative[0] == pytest.approx(positive[0])

    # Unfiltered, the mean difference changes sign with the weights
    unfiltered = compute_set_statistics(apply_sign_filter(weights, "all"), indptr, indices)
    unfiltered_flipped = compute_set_statistics(apply_sign_filter(flipped, "all"), indptr, indices)
    assert unfiltered[0] == pytest.approx(3.0)
    assert unfiltered_flipped[0] == pytest.approx(-3.0)


def test_invalid_set_statistic(two_sets):
    """Unknown set statistics are configuration errors."""
    indptr, indices = two_sets
    with pytest.raises(InvalidConfigurationError):
        compute_set_statistics(np.zeros(5), indptr, indices, "median.diff")


def test_pooled_variances(two_sets):
    """Pooled within-group variance."""
    indptr, indices = two_sets
    values = np.array([3.0, 2.0, -1.0, -4.0, -2.0])

    result = pooled_variances(values, indptr, indices)

    expected = (0.5 + 42.0 / 9.0) / 3.0
    assert result[0] == pytest.approx(expected)
    assert result[1] == pytest.approx(expected)


def test_adjust_pvalues():
    """Benjamini-Hochberg correction."""
    p_values = np.array([0.01, 0.02, 0.03, 0.04, 0.05])
    adjusted = adjust_pvalues(p_values)
    assert np.allclose(adjusted, 0.05)

    p_values = np.array([0.04, 0.001, 0.03])
    adjusted = adjust_pvalues(p_values)
    assert adjusted == pytest.approx([0.04, 0.003, 0.04])


def test_adjust_pvalues_invariants():
    """Adjusted p-values are never smaller than raw ones and keep their order."""
    rng = np.random.default_rng(7)
    p_values = rng.uniform(size=50) ** 3

    adjusted = adjust_pvalues(p_values)

    assert np.all(adjusted >= p_values)
    assert np.all((adjusted >= 0) & (adjusted <= 1))
    order = np.argsort(p_values)
    assert np.all(np.diff(adjusted[order]) >= 0)


def test_adjust_pvalues_missing():
    """Missing p-values stay missing and are not counted."""
    adjusted = adjust_pvalues(np.array([0.01, np.nan, 0.04]))
    assert adjusted[0] == pytest.approx(0.02)
    assert np.isnan(adjusted[1])
    assert adjusted[2] == pytest.approx(0.04)

    assert np.isnan(adjust_pvalues(np.array([np.nan, np.nan]))).all()


def test_adjust_pvalues_bonferroni():
    """Other statsmodels methods are accepted."""
    adjusted = adjust_pvalues(np.array([0.01, 0.2, 0.6]), method='bonferroni')
    assert adjusted == pytest.approx([0.03, 0.6, 1.0])


def test_mask_opposite_direction():
    """Sets depleted in the selected direction get p-value 1."""
    masked = mask_opposite_direction(np.array([0.01, 0.02, 0.5]), np.array([1.0, -0.5, 0.0]))
    assert masked == pytest.approx([0.01, 1.0, 0.5])

def test_mask_opposite_direction_keeps_missing():
    """Untested sets stay missing after masking."""
    masked = mask_opposite_direction(np.array([np.nan, 0.2]), np.array([-1.0, -1.0]))
    assert np.isnan(masked[0])
    assert masked[1] == 1.0


def test_select_sets():
    """Restricting the membership index to a subset of sets."""
    membership = np.array([
        [1, 1, 0, 0],
        [0, 0, 1, 0],
        [0, 1, 1, 1],
    ], dtype=bool)
    indptr, indices = _membership_to_csr(membership)

    sub_indptr, sub_indices = select_sets(indptr, indices, [True, False, True])

    expected_indptr, expected_indices = _membership_to_csr(membership[[0, 2]])
    assert sub_indptr.tolist() == expected_indptr.tolist()
    assert sub_indices.tolist() == expected_indices.tolist()

    empty_indptr, empty_indices = select_sets(indptr, indices, [False, False, False])
    assert empty_indptr.tolist() == [0]
    assert empty_indices.size == 0

"""
Factor Gene Set Enrichment
==========================

Gene set enrichment analysis of the feature weights of latent factor models.
"""

from .pipeline import EnrichmentPipeline, run_enrichment
from .config import EnrichmentConfig, EnrichmentSettings
from .result import EnrichmentResult
from .data import (
    align_inputs as align_inputs,
    load_weights as load_weights,
    load_feature_sets as load_feature_sets,
    load_gmt as load_gmt,
    gene_sets_to_matrix as gene_sets_to_matrix,
    load_data_matrix as load_data_matrix,
)
from .stats import (
    apply_sign_filter as apply_sign_filter,
    compute_set_statistics as compute_set_statistics,
    adjust_pvalues as adjust_pvalues,
)
from .significance import (
    calculate_pvalues as calculate_pvalues,
    parametric_pvalues as parametric_pvalues,
    correlation_adjusted_pvalues as correlation_adjusted_pvalues,
    permutation_pvalues as permutation_pvalues,
)
from .exceptions import (
    EnrichmentError,
    InputAlignmentError,
    InvalidConfigurationError,
    DegenerateInputError,
    NumericInstabilityWarning,
)
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "run_enrichment",
    "EnrichmentPipeline",
    "EnrichmentConfig",
    "EnrichmentSettings",
    "EnrichmentResult",
    "align_inputs",
    "load_weights",
    "load_feature_sets",
    "load_gmt",
    "gene_sets_to_matrix",
    "load_data_matrix",
    "apply_sign_filter",
    "compute_set_statistics",
    "adjust_pvalues",
    "calculate_pvalues",
    "parametric_pvalues",
    "correlation_adjusted_pvalues",
    "permutation_pvalues",
    "EnrichmentError",
    "InputAlignmentError",
    "InvalidConfigurationError",
    "DegenerateInputError",
    "NumericInstabilityWarning",
    "setup_logging",
    "ensure_dir",
]

"""Main pipeline implementation for factor gene set enrichment analysis."""

import logging
import os
import platform
import time
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from tqdm.auto import tqdm

from factor_gsea.config import EnrichmentConfig, EnrichmentSettings
from factor_gsea.data import (
    AlignedInputs,
    align_inputs,
    load_data_matrix,
    load_feature_sets,
    load_weights,
)
from factor_gsea.exceptions import (
    DegenerateInputError,
    MissingCorrelationDataError,
    NumericInstabilityWarning,
)
from factor_gsea.result import EnrichmentResult, assemble_result
from factor_gsea.significance import calculate_pvalues, variance_inflation_factors
from factor_gsea.stats import (
    adjust_pvalues,
    apply_sign_filter,
    compute_set_statistics,
    mask_opposite_direction,
    select_sets,
)

logger = logging.getLogger(__name__)

# Configure tqdm to work properly on macOS
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': is_mac,
}


@dataclass
class FactorOutcome:
    """Per-factor arrays produced by _analyse_factor."""

    factor: str
    feature_statistics: np.ndarray
    set_statistics: np.ndarray
    pvalues: np.ndarray
    adjusted_pvalues: np.ndarray
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


# Module-level so it can be pickled for ProcessPoolExecutor
def _analyse_factor(
    job: Tuple[str, int, np.ndarray],
    indptr: np.ndarray,
    indices: np.ndarray,
    set_names: Sequence[str],
    settings: EnrichmentSettings,
    vifs: Optional[Tuple[np.ndarray, np.ndarray]],
    n_jobs: int
) -> FactorOutcome:
    """
    Sign-filter, score, test and correct a single factor.

    Args:
        job: Tuple of (factor name, factor column position, weights)
        indptr: CSR row pointer of the membership matrix
        indices: CSR feature indices of the membership matrix
        set_names: Names of the tested sets
        settings: Settings of the run
        vifs: Variance inflation factors for cor.adj.parametric
        n_jobs: Threads for the permutation strategy

    Returns:
        FactorOutcome; sets that do not admit the requested test get NaN
        p-values and are named in its error message
    """
    factor, position, weights = job
    filtered = apply_sign_filter(weights, settings.sign)
    set_statistics = compute_set_statistics(filtered, indptr, indices, settings.set_statistic)

    seed_sequence = None
    if settings.statistical_test == "permutation":
        # One stream per factor column, independent of which other factors are selected
        seed_sequence = np.random.SeedSequence(entropy=settings.seed, spawn_key=(position,))

    test_sets = partial(
        calculate_pvalues,
        settings.statistical_test,
        filtered,
        set_statistic=settings.set_statistic,
        n_permutations=settings.n_permutations,
        seed_sequence=seed_sequence,
        n_jobs=n_jobs,
    )

    error = None
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", NumericInstabilityWarning)
        try:
            pvalues = test_sets(indptr, indices, vifs=vifs)
        except DegenerateInputError as e:
            offending = list(getattr(e, "gene_sets", []))
            names = [set_names[i] for i in offending[:5]]
            error = f"{e}" + (f" (e.g. {', '.join(names)})" if names else "")
            pvalues = np.full(len(set_names), np.nan)

            # The remaining sets are still tested; offending rows stay NaN
            keep = np.ones(len(set_names), dtype=bool)
            keep[offending] = False
            if offending and keep.any():
                sub_indptr, sub_indices = select_sets(indptr, indices, keep)
                sub_vifs = None if vifs is None else (vifs[0][keep], vifs[1][keep])
                pvalues[keep] = test_sets(sub_indptr, sub_indices, vifs=sub_vifs)

    instability = [
        str(w.message) for w in caught if issubclass(w.category, NumericInstabilityWarning)
    ]

    if settings.sign in ("positive", "negative"):
        pvalues = mask_opposite_direction(pvalues, set_statistics)

    adjusted = adjust_pvalues(pvalues, method=settings.p_adjust_method)
    return FactorOutcome(
        factor, filtered, set_statistics, pvalues, adjusted, error=error,
        warnings=[f"{factor}: {message}" for message in instability]
    )


def run_enrichment(
    weights: pl.DataFrame,
    feature_sets: pl.DataFrame,
    factors: Optional[Union[str, int, Sequence[Union[int, str]]]] = None,
    sign: str = "all",
    set_statistic: str = "mean.diff",
    statistical_test: str = "parametric",
    data: Optional[pl.DataFrame] = None,
    n_permutations: Optional[int] = None,
    alpha: float = 0.1,
    p_adjust_method: str = "fdr_bh",
    min_size: int = 1,
    max_size: Optional[int] = None,
    seed: Optional[int] = None,
    n_jobs: int = 1,
    verbose: bool = False
) -> EnrichmentResult:
    """
    Run gene set enrichment on the weights of a latent factor model.

    Args:
        weights: Weight matrix, feature_id + one numeric column per factor
        feature_sets: Binary catalog, gene_set + one column per feature
        factors: None or "all", 1-based factor indices, or factor names
        sign: 'all', 'positive' or 'negative'
        set_statistic: 'mean.diff' or 'rank.sum'
        statistical_test: 'parametric', 'cor.adj.parametric' or 'permutation'
        data: Samples x features data matrix, required for cor.adj.parametric
        n_permutations: Number of permutations, required for permutation
        alpha: Adjusted p-value threshold for the significant pathway lists
        p_adjust_method: Multiple testing method (statsmodels name)
        min_size: Minimum number of overlapping features per set
        max_size: Optional maximum number of overlapping features per set
        seed: Seed for the permutation test
        n_jobs: Worker processes across factors (threads across permutation
                batches when a single factor is tested)
        verbose: Show a progress bar over factors

    Returns:
        EnrichmentResult
    """
    settings = EnrichmentSettings(
        sign=sign,
        set_statistic=set_statistic,
        statistical_test=statistical_test,
        n_permutations=n_permutations,
        alpha=alpha,
        p_adjust_method=p_adjust_method,
        min_size=min_size,
        max_size=max_size,
        seed=seed,
        n_jobs=n_jobs,
    )
    if settings.statistical_test == "cor.adj.parametric" and data is None:
        raise MissingCorrelationDataError(
            "The cor.adj.parametric test requires a data matrix to estimate feature correlations"
        )
    if settings.statistical_test == "permutation" and settings.seed is None:
        # Record the entropy so the run can be reproduced
        settings = settings.with_seed(int(np.random.SeedSequence().entropy))

    aligned = align_inputs(
        weights,
        feature_sets,
        factors=factors,
        data=data if settings.statistical_test == "cor.adj.parametric" else None,
        min_size=settings.min_size,
        max_size=settings.max_size,
    )
    return _run_aligned(aligned, settings, verbose=verbose)


def _run_aligned(aligned: AlignedInputs, settings: EnrichmentSettings, verbose: bool = False) -> EnrichmentResult:
    start_time = time.time()
    logger.info(
        f"Testing {len(aligned.set_names)} feature sets over {aligned.n_features} features "
        f"for {len(aligned.factor_names)} factor(s) with the {settings.statistical_test} test "
        f"({settings.set_statistic}, sign={settings.sign})"
    )

    indptr, indices = aligned.membership_index()

    vifs = None
    if settings.statistical_test == "cor.adj.parametric":
        logger.debug("Estimating mean pairwise feature correlations")
        vifs = variance_inflation_factors(aligned.data, aligned.membership)

    jobs = [
        (factor, position, np.ascontiguousarray(aligned.weights[:, j]))
        for j, (factor, position) in enumerate(zip(aligned.factor_names, aligned.factor_positions))
    ]

    n_workers = max(1, min(settings.n_jobs, len(jobs)))
    if n_workers > 1:
        logger.info(f"Processing {len(jobs)} factors using {n_workers} parallel workers")
        analyse = partial(
            _analyse_factor, indptr=indptr, indices=indices, set_names=aligned.set_names,
            settings=settings, vifs=vifs, n_jobs=1
        )
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            outcomes = list(tqdm(
                executor.map(analyse, jobs), total=len(jobs), desc="Factors",
                disable=not verbose, **tqdm_kwargs
            ))
    else:
        analyse = partial(
            _analyse_factor, indptr=indptr, indices=indices, set_names=aligned.set_names,
            settings=settings, vifs=vifs, n_jobs=settings.n_jobs
        )
        outcomes = [
            analyse(job) for job in tqdm(jobs, desc="Factors", disable=not verbose, **tqdm_kwargs)
        ]

    errors = {}
    instability = []
    for outcome in outcomes:
        if outcome.error is not None:
            logger.error(f"Factor {outcome.factor} could not be tested: {outcome.error}")
            errors[outcome.factor] = outcome.error
        for message in outcome.warnings:
            logger.warning(message)
            warnings.warn(message, NumericInstabilityWarning, stacklevel=3)
            instability.append(message)

    result = assemble_result(
        aligned,
        feature_statistics=np.column_stack([o.feature_statistics for o in outcomes]),
        set_statistics=np.column_stack([o.set_statistics for o in outcomes]),
        pvalues=np.column_stack([o.pvalues for o in outcomes]),
        adjusted_pvalues=np.column_stack([o.adjusted_pvalues for o in outcomes]),
        settings=settings,
        errors=errors,
        warnings=instability,
    )

    elapsed_time = time.time() - start_time
    logger.info(f"Enrichment completed in {elapsed_time:.2f} seconds")
    return result


class EnrichmentPipeline:
    """Runs enrichment from a TOML configuration file."""

    def __init__(self, config: Union[str, Path, EnrichmentConfig]):
        """Initialise the pipeline with a configuration.

        Args:
            config: Path to the TOML configuration file, or a loaded EnrichmentConfig
        """
        self.config = config if isinstance(config, EnrichmentConfig) else EnrichmentConfig(config)
        self.settings = self.config.get_settings()
        self.results: Optional[EnrichmentResult] = None
        self.logger = logging.getLogger(__name__)
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if isinstance(file_path, (str, bytes, os.PathLike)) and not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.weights_df = load_weights(self.config.input_files['weights_file'])
        self.feature_sets_df = load_feature_sets(self.config.input_files['feature_sets_file'])

        if 'data_file' in self.config.input_files:
            self.data_df = load_data_matrix(self.config.input_files['data_file'])
        else:
            self.data_df = None

        self.logger.info(f"Loaded weights for {self.weights_df.height} features")
        self.logger.info(f"Loaded {self.feature_sets_df.height} feature sets")
        if self.data_df is not None:
            self.logger.info(f"Loaded data matrix with {self.data_df.height} samples")

        self.logger.debug("Finished loading input data files")

    def run(self, verbose: bool = True) -> EnrichmentResult:
        """Run the enrichment analysis."""
        self.logger.info("Starting factor gene set enrichment analysis")
        settings = self.settings
        self.results = run_enrichment(
            self.weights_df,
            self.feature_sets_df,
            factors=self.config.get_factors(),
            sign=settings.sign,
            set_statistic=settings.set_statistic,
            statistical_test=settings.statistical_test,
            data=self.data_df,
            n_permutations=settings.n_permutations,
            alpha=settings.alpha,
            p_adjust_method=settings.p_adjust_method,
            min_size=settings.min_size,
            max_size=settings.max_size,
            seed=settings.seed,
            n_jobs=settings.n_jobs,
            verbose=verbose,
        )
        return self.results

    def save_results(self, output_dir: Optional[Union[str, Path]] = None) -> Optional[Path]:
        """Save results and the configuration used to the output directory."""
        if self.results is None:
            self.logger.warning("No results to save. Run the pipeline first.")
            return None

        output_dir = Path(output_dir) if output_dir is not None else self.config.get_output_path()
        self.results.save(output_dir)

        config_file = output_dir / "config.toml"
        self.config.save_config(config_file)
        self.logger.info(f"Saved configuration to {config_file}")
        return output_dir

"""Assembly, inspection and export of enrichment results."""

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union
import json
import logging

import numpy as np
import polars as pl

from factor_gsea.config import EnrichmentSettings
from factor_gsea.data import AlignedInputs, FEATURE_COL, SET_COL
from factor_gsea.utils import ensure_dir

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrichmentResult:
    """Output of one enrichment run.

    Tables are held privately and every table property returns a fresh copy,
    so changing a returned DataFrame in place leaves the result untouched.

    Attributes:
        feature_sets: Filtered catalog, gene_set + aligned feature columns
        feature_statistics: Sign-filtered weights actually tested, feature_id + factors
        set_statistics: Set statistic per gene set and factor
        pvalues: Raw p-values per gene set and factor
        adjusted_pvalues: Per-factor multiple-testing adjusted p-values
        significant_pathways: Factor -> gene sets with adjusted p below alpha,
            most significant first
        errors: Factor -> reason, for factors with sets that could not be tested
        warnings: Numeric instability messages raised during the run
        settings: Settings of the run
    """

    _feature_sets: pl.DataFrame = field(repr=False)
    _feature_statistics: pl.DataFrame = field(repr=False)
    _set_statistics: pl.DataFrame = field(repr=False)
    _pvalues: pl.DataFrame = field(repr=False)
    _adjusted_pvalues: pl.DataFrame = field(repr=False)
    significant_pathways: Mapping[str, Tuple[str, ...]]
    errors: Mapping[str, str]
    warnings: Tuple[str, ...]
    settings: EnrichmentSettings

    @property
    def feature_sets(self) -> pl.DataFrame:
        return self._feature_sets.clone()

    @property
    def feature_statistics(self) -> pl.DataFrame:
        return self._feature_statistics.clone()

    @property
    def set_statistics(self) -> pl.DataFrame:
        return self._set_statistics.clone()

    @property
    def pvalues(self) -> pl.DataFrame:
        return self._pvalues.clone()

    @property
    def adjusted_pvalues(self) -> pl.DataFrame:
        return self._adjusted_pvalues.clone()

    @property
    def factors(self) -> List[str]:
        return [col for col in self._set_statistics.columns if col != SET_COL]

    @property
    def gene_sets(self) -> List[str]:
        return self._set_statistics[SET_COL].to_list()

    def _check_factor(self, factor: str):
        if factor not in self.factors:
            raise KeyError(f"Unknown factor {factor!r}. Available factors: {', '.join(self.factors)}")

    def to_long(self) -> pl.DataFrame:
        """One row per (gene set, factor) with statistic, p-value and adjusted p-value."""
        frames = []
        for name, frame in (
            ("statistic", self._set_statistics),
            ("pvalue", self._pvalues),
            ("padj", self._adjusted_pvalues),
        ):
            frames.append(frame.unpivot(
                index=SET_COL, on=self.factors, variable_name="factor", value_name=name
            ))
        long = frames[0].join(frames[1], on=[SET_COL, "factor"]).join(frames[2], on=[SET_COL, "factor"])
        return long.with_columns(
            (pl.col("padj") < self.settings.alpha).alias("significant")
        )

    def top_sets(self, factor: str, n: Optional[int] = None) -> pl.DataFrame:
        """Gene sets of one factor ranked by adjusted p-value, then name."""
        self._check_factor(factor)
        ranked = (
            self.to_long()
            .filter(pl.col("factor") == factor)
            .sort(["padj", SET_COL], nulls_last=True)
        )
        return ranked if n is None else ranked.head(n)

    def feature_contributions(self, factor: str, gene_set: str) -> pl.DataFrame:
        """Weights of the members of one gene set for one factor, largest first."""
        self._check_factor(factor)
        row = self._feature_sets.filter(pl.col(SET_COL) == gene_set)
        if row.height == 0:
            raise KeyError(f"Unknown gene set {gene_set!r}")
        members = [col for col in row.columns if col != SET_COL and row[col][0] == 1]
        return (
            self._feature_statistics
            .filter(pl.col(FEATURE_COL).is_in(members))
            .select([FEATURE_COL, pl.col(factor).alias("weight")])
            .sort("weight", descending=True)
        )

    def save(self, output_dir: Union[str, Path]) -> Path:
        """
        Write all tables and a JSON summary to a directory.

        Args:
            output_dir: Directory to write into (created if needed)

        Returns:
            Path of the output directory
        """
        output_dir = ensure_dir(Path(output_dir))

        self._feature_sets.write_csv(output_dir / "feature_sets.tsv", separator='\t')
        self._feature_statistics.write_csv(output_dir / "feature_statistics.tsv", separator='\t')
        self._set_statistics.write_csv(output_dir / "set_statistics.tsv", separator='\t')
        self._pvalues.write_csv(output_dir / "pvalues.tsv", separator='\t')
        self._adjusted_pvalues.write_csv(output_dir / "adjusted_pvalues.tsv", separator='\t')
        self.to_long().write_csv(output_dir / "enrichment_long.tsv", separator='\t')

        summary = {
            "settings": self.settings.to_dict(),
            "factors": self.factors,
            "n_gene_sets": len(self.gene_sets),
            "n_features": self._feature_statistics.height,
            "significant_pathways": {k: list(v) for k, v in self.significant_pathways.items()},
            "errors": dict(self.errors),
            "warnings": list(self.warnings),
        }
        summary_file = output_dir / "summary.json"
        with open(summary_file, 'w') as f:
            json.dump(summary, f, indent=2)

        logger.info(f"Saved results to {output_dir}")
        return output_dir


def significant_pathways(
    set_names: Sequence[str],
    adjusted: np.ndarray,
    alpha: float
) -> Tuple[str, ...]:
    """Gene sets with adjusted p-value below alpha, ascending adjusted p, ties by name."""
    hits = [
        (float(p), name) for name, p in zip(set_names, adjusted)
        if np.isfinite(p) and p < alpha
    ]
    return tuple(name for _, name in sorted(hits))


def _factor_frame(id_col: str, ids: Sequence[str], factor_names: Sequence[str], values: np.ndarray) -> pl.DataFrame:
    frame = pl.DataFrame(
        {name: values[:, j] for j, name in enumerate(factor_names)},
        schema={name: pl.Float64 for name in factor_names},
    )
    return frame.insert_column(0, pl.Series(id_col, list(ids), dtype=pl.Utf8))


def assemble_result(
    aligned: AlignedInputs,
    feature_statistics: np.ndarray,
    set_statistics: np.ndarray,
    pvalues: np.ndarray,
    adjusted_pvalues: np.ndarray,
    settings: EnrichmentSettings,
    errors: Optional[Dict[str, str]] = None,
    warnings: Sequence[str] = ()
) -> EnrichmentResult:
    """
    Package per-factor arrays into an EnrichmentResult.

    Args:
        aligned: Aligned inputs of the run
        feature_statistics: Sign-filtered weights, features x factors
        set_statistics: Set statistics, sets x factors
        pvalues: Raw p-values, sets x factors
        adjusted_pvalues: Adjusted p-values, sets x factors
        settings: Settings of the run (alpha is the significance threshold)
        errors: Factor -> failure reason
        warnings: Numeric instability messages

    Returns:
        Immutable EnrichmentResult
    """
    factor_names = aligned.factor_names
    sig = {
        factor: significant_pathways(aligned.set_names, adjusted_pvalues[:, j], settings.alpha)
        for j, factor in enumerate(factor_names)
    }
    for factor, hits in sig.items():
        logger.info(f"{factor}: {len(hits)} significant gene sets at alpha={settings.alpha}")

    return EnrichmentResult(
        _feature_sets=aligned.feature_sets_frame(),
        _feature_statistics=_factor_frame(FEATURE_COL, aligned.features, factor_names, feature_statistics),
        _set_statistics=_factor_frame(SET_COL, aligned.set_names, factor_names, set_statistics),
        _pvalues=_factor_frame(SET_COL, aligned.set_names, factor_names, pvalues),
        _adjusted_pvalues=_factor_frame(SET_COL, aligned.set_names, factor_names, adjusted_pvalues),
        significant_pathways=MappingProxyType(sig),
        errors=MappingProxyType(dict(errors or {})),
        warnings=tuple(warnings),
        settings=settings,
    )

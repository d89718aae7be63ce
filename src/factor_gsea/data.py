"""
Loading and alignment of weight matrices, feature set catalogs and data matrices.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
import logging

import numba as nb
import numpy as np
import polars as pl

from factor_gsea.exceptions import InputAlignmentError

logger = logging.getLogger(__name__)

FEATURE_COL = "feature_id"
SET_COL = "gene_set"
SAMPLE_COL = "sample_id"


@nb.njit
def _membership_to_csr(membership):
    """
    Convert a boolean sets x features matrix into CSR index arrays.

    Args:
        membership: 2D boolean membership matrix

    Returns:
        Tuple of (indptr, indices)
    """
    n_sets, n_features = membership.shape
    indptr = np.zeros(n_sets + 1, dtype=np.int64)
    for s in range(n_sets):
        count = 0
        for j in range(n_features):
            if membership[s, j]:
                count += 1
        indptr[s + 1] = indptr[s] + count

    indices = np.empty(indptr[n_sets], dtype=np.int64)
    for s in range(n_sets):
        pos = indptr[s]
        for j in range(n_features):
            if membership[s, j]:
                indices[pos] = j
                pos += 1
    return indptr, indices


@dataclass(frozen=True)
class AlignedInputs:
    """Weights, catalog and optional data restricted to the shared feature universe."""

    features: List[str]
    factor_names: List[str]
    factor_positions: List[int]
    weights: np.ndarray
    set_names: List[str]
    membership: np.ndarray
    data: Optional[np.ndarray] = None
    dropped_sets: List[str] = field(default_factory=list)

    @property
    def n_features(self) -> int:
        return len(self.features)

    @property
    def set_sizes(self) -> np.ndarray:
        return self.membership.sum(axis=1).astype(np.int64)

    def membership_index(self) -> Tuple[np.ndarray, np.ndarray]:
        """CSR (indptr, indices) view of the membership matrix."""
        return _membership_to_csr(np.ascontiguousarray(self.membership))

    def feature_sets_frame(self) -> pl.DataFrame:
        """Filtered catalog as a DataFrame (gene_set + aligned feature columns)."""
        frame = pl.DataFrame(
            self.membership.astype(np.int8),
            schema=self.features,
            orient="row",
        )
        return frame.insert_column(0, pl.Series(SET_COL, self.set_names, dtype=pl.Utf8))


def _identifier_column(df: pl.DataFrame, preferred: str, what: str) -> str:
    """Name of the identifier column of a table: the preferred name, else the first string column."""
    if preferred in df.columns:
        return preferred
    if df.width > 0 and df.schema[df.columns[0]] == pl.Utf8:
        return df.columns[0]
    raise InputAlignmentError(
        f"{what} needs a '{preferred}' column (or a leading string column) holding identifiers"
    )


def _numeric_columns(df: pl.DataFrame, exclude: Set[str]) -> List[str]:
    return [
        col for col, dtype in df.schema.items()
        if col not in exclude and dtype.is_numeric()
    ]


def load_weights(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load a weight matrix (features x factors).

    Args:
        file_path: Tab-delimited file, first column feature identifiers,
                   remaining columns one per factor

    Returns:
        DataFrame with feature_id and factor columns
    """
    df = pl.read_csv(file_path, separator='\t', has_header=True)
    if df.columns[0] != FEATURE_COL:
        df = df.rename({df.columns[0]: FEATURE_COL})
    return df.with_columns(pl.col(FEATURE_COL).cast(pl.Utf8))


def load_gmt(file_path: Union[str, Path]) -> Dict[str, Set[str]]:
    """
    Parse a GMT gene set file.

    Each line holds the set name, a description and then the member features,
    all tab-separated.

    Args:
        file_path: Path to the GMT file

    Returns:
        Mapping of set name to member feature identifiers
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FileNotFoundError(f"GMT file not found: {file_path}")

    gene_sets = {}
    with open(file_path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.rstrip('\n').rstrip('\r')
            if not line.strip():
                continue
            parts = line.split('\t')
            if len(parts) < 3:
                logger.debug(f"Skipping GMT line without members: {parts[0]}")
                continue
            members = {gene for gene in parts[2:] if gene}
            gene_sets.setdefault(parts[0], set()).update(members)

    logger.info(f"Loaded {len(gene_sets)} gene sets from {file_path}")
    return gene_sets


def gene_sets_to_matrix(
    gene_sets: Dict[str, Iterable[str]],
    features: Optional[Sequence[str]] = None
) -> pl.DataFrame:
    """
    Build a binary membership matrix from a mapping of set name to members.

    Args:
        gene_sets: Mapping of set name to member identifiers
        features: Column order to use; defaults to the sorted union of members

    Returns:
        DataFrame with gene_set column and one 0/1 column per feature
    """
    gene_sets = {name: set(members) for name, members in gene_sets.items()}
    if features is None:
        features = sorted(set().union(*gene_sets.values())) if gene_sets else []
    features = list(features)
    position = {feature: j for j, feature in enumerate(features)}

    matrix = np.zeros((len(gene_sets), len(features)), dtype=np.int8)
    for i, members in enumerate(gene_sets.values()):
        for feature in members:
            j = position.get(feature)
            if j is not None:
                matrix[i, j] = 1

    frame = pl.DataFrame(matrix, schema=features, orient="row") if features else pl.DataFrame()
    return frame.insert_column(0, pl.Series(SET_COL, list(gene_sets.keys()), dtype=pl.Utf8))


def load_feature_sets(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load a feature set catalog.

    Args:
        file_path: Either a GMT file or a tab-delimited binary matrix with
                   set names in the first column

    Returns:
        DataFrame with gene_set column and one 0/1 column per feature
    """
    file_path = Path(file_path)
    if file_path.suffix.lower() == '.gmt':
        return gene_sets_to_matrix(load_gmt(file_path))

    df = pl.read_csv(file_path, separator='\t', has_header=True)
    if df.columns[0] != SET_COL:
        df = df.rename({df.columns[0]: SET_COL})
    return df.with_columns(pl.col(SET_COL).cast(pl.Utf8))


def load_data_matrix(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load the samples x features data matrix used for correlation adjustment.

    Args:
        file_path: Tab-delimited file, first column sample identifiers

    Returns:
        DataFrame with sample_id and one numeric column per feature
    """
    df = pl.read_csv(file_path, separator='\t', has_header=True, infer_schema_length=10000)
    if df.columns[0] != SAMPLE_COL:
        df = df.rename({df.columns[0]: SAMPLE_COL})
    return df.with_columns(pl.col(SAMPLE_COL).cast(pl.Utf8))


def resolve_factors(
    factor_columns: Sequence[str],
    factors: Optional[Union[str, int, Sequence[Union[int, str]]]] = None
) -> List[int]:
    """
    Resolve a factor selection into 0-based column positions.

    Args:
        factor_columns: Factor column names of the weight matrix
        factors: None or "all" for every factor, 1-based indices, or names

    Returns:
        List of 0-based positions in selection order
    """
    if factors is None or (isinstance(factors, str) and factors == "all"):
        return list(range(len(factor_columns)))
    if isinstance(factors, (str, int)):
        factors = [factors]

    positions = []
    for factor in factors:
        if isinstance(factor, (int, np.integer)) and not isinstance(factor, bool):
            if not 1 <= factor <= len(factor_columns):
                raise InputAlignmentError(
                    f"Factor index {factor} is out of range (model has {len(factor_columns)} factors)"
                )
            position = int(factor) - 1
        elif isinstance(factor, str):
            if factor not in factor_columns:
                raise InputAlignmentError(
                    f"Unknown factor {factor!r}. Available factors: {', '.join(factor_columns)}"
                )
            position = list(factor_columns).index(factor)
        else:
            raise InputAlignmentError(f"Factors must be 1-based integers or names, got {factor!r}")
        if position not in positions:
            positions.append(position)

    if not positions:
        raise InputAlignmentError("No factors selected")
    return positions


def _weights_matrix(weights: pl.DataFrame) -> Tuple[List[str], List[str], np.ndarray]:
    feature_col = _identifier_column(weights, FEATURE_COL, "Weight matrix")
    feature_ids = weights[feature_col].cast(pl.Utf8).to_list()
    if len(set(feature_ids)) != len(feature_ids):
        raise InputAlignmentError("Weight matrix contains duplicate feature identifiers")

    factor_columns = _numeric_columns(weights, {feature_col})
    if not factor_columns:
        raise InputAlignmentError("Weight matrix has no numeric factor columns")

    values = weights.select(factor_columns).to_numpy().astype(np.float64)
    if not np.all(np.isfinite(values)):
        raise InputAlignmentError("Weight matrix contains missing or non-finite weights")
    return feature_ids, factor_columns, values


def _catalog_matrix(feature_sets: pl.DataFrame) -> Tuple[List[str], List[str], pl.DataFrame]:
    set_col = _identifier_column(feature_sets, SET_COL, "Feature set catalog")
    set_names = feature_sets[set_col].cast(pl.Utf8).to_list()
    if len(set(set_names)) != len(set_names):
        raise InputAlignmentError("Feature set catalog contains duplicate set names")
    feature_columns = [col for col in feature_sets.columns if col != set_col]
    return set_names, feature_columns, feature_sets.select(feature_columns)


def align_inputs(
    weights: pl.DataFrame,
    feature_sets: pl.DataFrame,
    factors: Optional[Union[str, int, Sequence[Union[int, str]]]] = None,
    data: Optional[pl.DataFrame] = None,
    min_size: int = 1,
    max_size: Optional[int] = None
) -> AlignedInputs:
    """
    Restrict weights, catalog and data to their shared feature universe.

    The originals are never modified. Sets with fewer than ``min_size``
    overlapping features (always at least one), more than ``max_size``, or
    covering the whole universe are dropped.

    Args:
        weights: Weight matrix (feature_id + factor columns)
        feature_sets: Binary catalog (gene_set + feature columns)
        factors: Factor selection, see resolve_factors
        data: Optional samples x features data matrix
        min_size: Minimum overlap for a set to be tested
        max_size: Optional maximum overlap

    Returns:
        AlignedInputs for the selected factors
    """
    feature_ids, factor_columns, weight_values = _weights_matrix(weights)
    positions = resolve_factors(factor_columns, factors)
    set_names, catalog_features, catalog = _catalog_matrix(feature_sets)

    catalog_lookup = set(catalog_features)
    universe = [feature for feature in feature_ids if feature in catalog_lookup]
    if not universe:
        raise InputAlignmentError(
            "Feature names in the feature set catalog do not match feature names in the weight matrix"
        )
    logger.info(
        f"Intersecting features of the weight matrix and the feature set catalog "
        f"results in a total of {len(universe)} features"
    )

    data_values = None
    if data is not None:
        data_lookup = set(_numeric_columns(data, set()))
        missing = [feature for feature in universe if feature not in data_lookup]
        if missing:
            raise InputAlignmentError(
                f"Data matrix lacks {len(missing)} aligned features (e.g. {', '.join(missing[:5])})"
            )
        if data.height < 3:
            raise InputAlignmentError(
                f"Data matrix needs at least 3 samples to estimate correlations, got {data.height}"
            )
        data_values = data.select(universe).to_numpy().astype(np.float64)
        variances = np.nanvar(data_values, axis=0)
        constant = ~(variances > 0)
        if constant.any():
            logger.warning(
                f"{int(constant.sum())} features were removed because they had no variance in the data"
            )
            universe = [feature for feature, drop in zip(universe, constant) if not drop]
            data_values = data_values[:, ~constant]
            if not universe:
                raise InputAlignmentError("No aligned feature has variance in the data matrix")

    row_of = {feature: i for i, feature in enumerate(feature_ids)}
    aligned_weights = weight_values[[row_of[feature] for feature in universe]][:, positions]

    membership_values = catalog.select(universe).to_numpy()
    if not np.isin(membership_values, (0, 1)).all():
        raise InputAlignmentError("Feature set catalog entries must be 0 or 1")
    membership = membership_values.astype(bool)

    sizes = membership.sum(axis=1)
    keep = (sizes >= max(min_size, 1)) & (sizes < len(universe))
    if max_size is not None:
        keep &= sizes <= max_size
    dropped = [name for name, kept in zip(set_names, keep) if not kept]
    if dropped:
        logger.info(f"Dropped {len(dropped)} feature sets outside the size limits")
    if not keep.any():
        raise InputAlignmentError(
            "No feature set has a usable overlap with the weight matrix features"
        )

    return AlignedInputs(
        features=universe,
        factor_names=[factor_columns[p] for p in positions],
        factor_positions=positions,
        weights=np.ascontiguousarray(aligned_weights),
        set_names=[name for name, kept in zip(set_names, keep) if kept],
        membership=np.ascontiguousarray(membership[keep]),
        data=data_values,
        dropped_sets=dropped,
    )

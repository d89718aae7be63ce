"""Tests for loading and aligning weights, catalogs and data matrices."""

import pytest
import numpy as np
import polars as pl

from factor_gsea.data import (
    _membership_to_csr,
    align_inputs,
    gene_sets_to_matrix,
    load_data_matrix,
    load_feature_sets,
    load_gmt,
    load_weights,
    resolve_factors,
)
from factor_gsea.exceptions import InputAlignmentError


@pytest.fixture
def weights_df():
    """Weights for six features and two factors; gX is absent from the catalog."""
    return pl.DataFrame({
        'feature_id': ['g1', 'g2', 'g3', 'g4', 'g5', 'gX'],
        'Factor1': [3.0, 2.0, -1.0, -4.0, -2.0, 0.5],
        'Factor2': [0.1, -0.2, 0.3, -0.4, 0.5, -0.6],
    })


@pytest.fixture
def catalog_df():
    """Catalog with a set that has no overlap with the weights (setC)."""
    return pl.DataFrame({
        'gene_set': ['setA', 'setB', 'setC'],
        'g1': [1, 0, 0],
        'g2': [1, 0, 0],
        'g3': [0, 1, 0],
        'g4': [0, 1, 0],
        'g5': [0, 1, 0],
        'gY': [0, 0, 1],
    })


def test_align_inputs(weights_df, catalog_df):
    """Universe is the intersection; zero-overlap sets are dropped."""
    aligned = align_inputs(weights_df, catalog_df)

    assert aligned.features == ['g1', 'g2', 'g3', 'g4', 'g5']
    assert aligned.factor_names == ['Factor1', 'Factor2']
    assert aligned.factor_positions == [0, 1]
    assert aligned.set_names == ['setA', 'setB']
    assert aligned.dropped_sets == ['setC']
    assert aligned.weights.shape == (5, 2)
    assert aligned.weights[:, 0].tolist() == [3.0, 2.0, -1.0, -4.0, -2.0]
    assert aligned.set_sizes.tolist() == [2, 3]

    frame = aligned.feature_sets_frame()
    assert frame.columns == ['gene_set', 'g1', 'g2', 'g3', 'g4', 'g5']
    assert frame['gene_set'].to_list() == ['setA', 'setB']

    # Inputs are left untouched
    assert weights_df.height == 6
    assert catalog_df.height == 3


def test_align_inputs_no_overlap(weights_df):
    """An empty feature intersection fails fast."""
    catalog = pl.DataFrame({'gene_set': ['s'], 'a': [1], 'b': [1]})
    with pytest.raises(InputAlignmentError, match="do not match"):
        align_inputs(weights_df, catalog)


def test_align_inputs_factor_selection(weights_df, catalog_df):
    """Factors are chosen by 1-based index or by name."""
    aligned = align_inputs(weights_df, catalog_df, factors=[2])
    assert aligned.factor_names == ['Factor2']
    assert aligned.weights[:, 0].tolist() == [0.1, -0.2, 0.3, -0.4, 0.5]

    aligned = align_inputs(weights_df, catalog_df, factors=['Factor2', 'Factor1', 2])
    assert aligned.factor_names == ['Factor2', 'Factor1']

    with pytest.raises(InputAlignmentError, match="out of range"):
        align_inputs(weights_df, catalog_df, factors=[3])
    with pytest.raises(InputAlignmentError, match="out of range"):
        align_inputs(weights_df, catalog_df, factors=[0])
    with pytest.raises(InputAlignmentError, match="Unknown factor"):
        align_inputs(weights_df, catalog_df, factors=['Factor9'])


def test_resolve_factors():
    """Factor resolution keeps selection order and ignores repeats."""
    columns = ['F1', 'F2', 'F3']
    assert resolve_factors(columns) == [0, 1, 2]
    assert resolve_factors(columns, "all") == [0, 1, 2]
    assert resolve_factors(columns, 3) == [2]
    assert resolve_factors(columns, [3, 1, 3]) == [2, 0]


def test_align_inputs_size_limits(weights_df, catalog_df):
    """Sets outside the size limits or without background are dropped."""
    aligned = align_inputs(weights_df, catalog_df, min_size=3)
    assert aligned.set_names == ['setB']

    aligned = align_inputs(weights_df, catalog_df, max_size=2)
    assert aligned.set_names == ['setA']

    everything = catalog_df.vstack(pl.DataFrame({
        'gene_set': ['setAll'], 'g1': [1], 'g2': [1], 'g3': [1], 'g4': [1], 'g5': [1], 'gY': [0],
    }))
    aligned = align_inputs(weights_df, everything)
    assert 'setAll' in aligned.dropped_sets

    with pytest.raises(InputAlignmentError):
        align_inputs(weights_df, catalog_df, min_size=4)


def test_align_inputs_invalid_tables(weights_df, catalog_df):
    """Malformed inputs are rejected."""
    duplicated = weights_df.with_columns(pl.Series('feature_id', ['g1', 'g1', 'g3', 'g4', 'g5', 'gX']))
    with pytest.raises(InputAlignmentError, match="duplicate"):
        align_inputs(duplicated, catalog_df)

    non_binary = catalog_df.with_columns(pl.Series('g1', [2, 0, 0]))
    with pytest.raises(InputAlignmentError, match="0 or 1"):
        align_inputs(weights_df, non_binary)

    missing = weights_df.with_columns(pl.Series('Factor1', [1.0, None, 1.0, 1.0, 1.0, 1.0]))
    with pytest.raises(InputAlignmentError, match="non-finite"):
        align_inputs(missing, catalog_df)


def test_align_inputs_with_data(weights_df, catalog_df):
    """Data must cover the universe; constant features are removed."""
    rng = np.random.default_rng(0)
    data = pl.DataFrame({
        'sample_id': ['s1', 's2', 's3', 's4'],
        **{f: rng.normal(size=4) for f in ['g1', 'g2', 'g3', 'g4', 'g5']},
    })

    aligned = align_inputs(weights_df, catalog_df, data=data)
    assert aligned.data.shape == (4, 5)

    constant = data.with_columns(pl.lit(1.0).alias('g5'))
    aligned = align_inputs(weights_df, catalog_df, data=constant)
    assert aligned.features == ['g1', 'g2', 'g3', 'g4']
    assert aligned.data.shape == (4, 4)

    with pytest.raises(InputAlignmentError, match="lacks"):
        align_inputs(weights_df, catalog_df, data=data.drop('g3'))

    with pytest.raises(InputAlignmentError, match="at least 3 samples"):
        align_inputs(weights_df, catalog_df, data=data.head(2))


def test_membership_to_csr():
    """CSR conversion of a membership matrix."""
    membership = np.array([
        [1, 0, 1, 0],
        [0, 0, 0, 1],
        [1, 1, 1, 1],
    ], dtype=bool)
    indptr, indices = _membership_to_csr(membership)
    assert indptr.tolist() == [0, 2, 3, 7]
    assert indices.tolist() == [0, 2, 3, 0, 1, 2, 3]


def test_load_weights(tmp_path):
    """Weight matrices are read from TSV with the first column as identifiers."""
    path = tmp_path / "weights.tsv"
    path.write_text("gene\tFactor1\tFactor2\ng1\t0.5\t-1.0\ng2\t-0.5\t2.0\n")

    df = load_weights(path)

    assert df.columns == ['feature_id', 'Factor1', 'Factor2']
    assert df['feature_id'].to_list() == ['g1', 'g2']


def test_load_gmt(tmp_path):
    """GMT files are parsed into set -> members."""
    path = tmp_path / "sets.gmt"
    path.write_text(
        "setA\thttp://example.org/a\tg1\tg2\n"
        "setB\tdescription\tg3\tg4\tg5\n"
        "\n"
        "setEmpty\tno members\n"
    )

    gene_sets = load_gmt(path)

    assert gene_sets == {'setA': {'g1', 'g2'}, 'setB': {'g3', 'g4', 'g5'}}

    with pytest.raises(FileNotFoundError):
        load_gmt(tmp_path / "missing.gmt")


def test_gene_sets_to_matrix():
    """Membership matrices from a mapping of sets."""
    matrix = gene_sets_to_matrix({'setA': ['g2', 'g1'], 'setB': ['g3']})
    assert matrix.columns == ['gene_set', 'g1', 'g2', 'g3']
    assert matrix.row(0) == ('setA', 1, 1, 0)
    assert matrix.row(1) == ('setB', 0, 0, 1)

    # Members outside the requested feature list are ignored
    matrix = gene_sets_to_matrix({'setA': ['g2', 'g9']}, features=['g1', 'g2'])
    assert matrix.row(0) == ('setA', 0, 1)


def test_load_feature_sets(tmp_path):
    """Catalogs load from GMT or from a TSV matrix."""
    gmt = tmp_path / "sets.gmt"
    gmt.write_text("setA\tna\tg1\tg2\nsetB\tna\tg2\tg3\n")
    from_gmt = load_feature_sets(gmt)
    assert from_gmt['gene_set'].to_list() == ['setA', 'setB']
    assert from_gmt.columns[1:] == ['g1', 'g2', 'g3']

    tsv = tmp_path / "sets.tsv"
    tsv.write_text("pathway\tg1\tg2\nsetA\t1\t0\nsetB\t1\t1\n")
    from_tsv = load_feature_sets(tsv)
    assert from_tsv.columns == ['gene_set', 'g1', 'g2']
    assert from_tsv['g2'].to_list() == [0, 1]


def test_load_data_matrix(tmp_path):
    """Data matrices are read with sample identifiers first."""
    path = tmp_path / "data.tsv"
    path.write_text("sample\tg1\tg2\ns1\t1.0\t2.0\ns2\t3.0\t\n")

    df = load_data_matrix(path)

    assert df.columns == ['sample_id', 'g1', 'g2']
    assert df['g2'].null_count() == 1

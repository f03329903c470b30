"""Tests for count matrix / sample sheet loading and result writers."""

import json

import numpy as np
import pandas as pd
import pytest

from compatde.io import (
    align_metadata,
    load_count_matrix,
    load_experiment,
    load_sample_metadata,
    write_decide_summary,
    write_matrix,
    write_norm_factors,
    write_run_summary,
    write_top_table,
)


class TestLoadCountMatrix:
    """Whitespace-delimited count tables."""

    def test_r_style_header(self, counts_file, count_matrix):
        """Header one field short: first column becomes the gene index."""
        m = load_count_matrix(counts_file)
        assert m.shape == count_matrix.shape
        assert list(m.sample_ids) == list(count_matrix.sample_ids)
        assert list(m.feature_ids) == list(count_matrix.feature_ids)
        np.testing.assert_allclose(m.data, count_matrix.data + 0.25)

    def test_full_header(self, tmp_path):
        """A header with a gene-id field is also accepted."""
        path = tmp_path / "counts.txt"
        path.write_text("gene S1 S2\ng1 1 2\ng2 3 4\n")
        m = load_count_matrix(path)
        assert list(m.sample_ids) == ["S1", "S2"]
        assert list(m.feature_ids) == ["g1", "g2"]
        np.testing.assert_array_equal(m.data, [[1, 2], [3, 4]])

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="not found"):
            load_count_matrix(tmp_path / "nope.txt")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("")
        with pytest.raises(ValueError, match="empty"):
            load_count_matrix(path)

    def test_non_numeric(self, tmp_path):
        path = tmp_path / "counts.txt"
        path.write_text("S1 S2\ng1 1 abc\ng2 3 4\n")
        with pytest.raises(ValueError, match="non-numeric"):
            load_count_matrix(path)

    def test_negative(self, tmp_path):
        path = tmp_path / "counts.txt"
        path.write_text("S1 S2\ng1 1 -2\ng2 3 4\n")
        with pytest.raises(ValueError, match="negative"):
            load_count_matrix(path)

    def test_duplicate_gene_ids_warn(self, tmp_path):
        path = tmp_path / "counts.txt"
        path.write_text("S1 S2\ng1 1 2\ng1 3 4\n")
        with pytest.warns(UserWarning, match="duplicate gene IDs"):
            m = load_count_matrix(path)
        assert m.n_features == 2


class TestSampleMetadata:
    """Sample sheets and their alignment to count columns."""

    def test_indexed_by_sample_column(self, metadata_file):
        meta = load_sample_metadata(metadata_file, sample_column="sample")
        assert "sample" not in meta.columns
        assert meta.index[0] == "IP_2_3"
        assert set(meta.columns) == {"compatibility", "pollen", "stage"}

    def test_missing_sample_column(self, metadata_file):
        with pytest.raises(ValueError, match="Sample column 'id' not found"):
            load_sample_metadata(metadata_file, sample_column="id")

    def test_duplicate_sample_ids(self, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text("sample,pollen\nS1,U\nS1,P\n")
        with pytest.raises(ValueError, match="Duplicate sample IDs"):
            load_sample_metadata(path, sample_column="sample")

    def test_values_read_as_strings(self, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text("sample, stage\nS1, 1\nS2, 2\n")
        meta = load_sample_metadata(path, sample_column="sample")
        assert meta.loc["S1", "stage"] == "1"

    def test_reordered_to_count_columns(self, counts_file, metadata_file):
        """Metadata in a different order is aligned to the count columns."""
        m = load_experiment(counts_file, metadata_file, sample_column="sample")
        assert m.sample_metadata.index.equals(m.sample_ids)
        assert m.sample_metadata.loc["CP_1_2", "pollen"] == "pollinated"
        assert m.sample_metadata.loc["IU_2_1", "compatibility"] == "incompatible"

    def test_positional_alignment(self, tmp_path, count_matrix):
        """Without a sample column, rows map to columns in order."""
        path = tmp_path / "samples.csv"
        count_matrix.sample_metadata.to_csv(path, index=False)
        meta = load_sample_metadata(path)
        aligned = align_metadata(count_matrix.with_metadata(pd.DataFrame(index=count_matrix.sample_ids)), meta)
        assert aligned.sample_metadata.index.equals(count_matrix.sample_ids)
        assert list(aligned.sample_metadata["stage"]) == list(count_matrix.sample_metadata["stage"])

    def test_positional_row_mismatch(self, tmp_path, count_matrix):
        path = tmp_path / "samples.csv"
        count_matrix.sample_metadata.iloc[:5].to_csv(path, index=False)
        with pytest.raises(ValueError, match="Positional metadata has 5 rows"):
            align_metadata(count_matrix, load_sample_metadata(path))

    def test_unannotated_samples(self, tmp_path, counts_file, count_matrix):
        path = tmp_path / "samples.csv"
        sheet = count_matrix.sample_metadata.iloc[2:].copy()
        sheet.insert(0, "sample", sheet.index)
        sheet.to_csv(path, index=False)

        with pytest.raises(ValueError, match="2 samples in the count matrix have no metadata"):
            load_experiment(counts_file, path, sample_column="sample")

        m = load_experiment(counts_file, path, sample_column="sample", drop_unannotated=True)
        assert m.n_samples == count_matrix.n_samples - 2
        assert list(m.sample_ids) == list(count_matrix.sample_ids[2:])


class TestWriters:
    """Result files."""

    def test_write_matrix_round_trips(self, tmp_path, count_matrix):
        path = write_matrix(count_matrix, tmp_path / "out" / "filtered.tsv")
        back = load_count_matrix(path)
        assert list(back.sample_ids) == list(count_matrix.sample_ids)
        np.testing.assert_array_equal(back.data, count_matrix.data)

    def test_write_top_table(self, tmp_path):
        table = pd.DataFrame({"logFC": [1.0, -2.0], "adj.P.Val": [0.01, 0.2]}, index=["g1", "g2"])
        path = write_top_table(table, tmp_path / "t.csv")
        back = pd.read_csv(path)
        assert list(back.columns) == ["gene_id", "logFC", "adj.P.Val"]

    def test_write_decide_summary(self, tmp_path):
        summary = pd.DataFrame({"c1": [1, 5, 2]}, index=["Down", "NotSig", "Up"])
        path = write_decide_summary(summary, tmp_path / "s.csv")
        back = pd.read_csv(path, index_col=0)
        assert back.loc["Up", "c1"] == 2

    def test_write_norm_factors(self, tmp_path, count_matrix):
        path = write_norm_factors(count_matrix, tmp_path / "nf.csv")
        back = pd.read_csv(path, index_col="sample")
        assert {"lib_size", "norm_factor", "effective_lib_size", "pollen"} <= set(back.columns)
        assert len(back) == count_matrix.n_samples

    def test_write_run_summary_numpy(self, tmp_path):
        path = write_run_summary({"x": np.float64(1.5), "v": np.arange(3)}, tmp_path / "run.json")
        data = json.loads(path.read_text())
        assert data == {"x": 1.5, "v": [0, 1, 2]}

    def test_write_run_summary_non_finite_becomes_null(self, tmp_path):
        summary = {"df_prior": np.inf, "stats": [np.nan, 2.0], "out": tmp_path / "x"}
        path = write_run_summary(summary, tmp_path / "run.json")
        assert "Infinity" not in path.read_text()
        data = json.loads(path.read_text())
        assert data == {"df_prior": None, "stats": [None, 2.0], "out": str(tmp_path / "x")}
        assert not list(tmp_path.glob("*.tmp"))

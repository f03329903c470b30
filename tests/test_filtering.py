"""Tests for count rounding and low-expression filters."""

import logging

import numpy as np
import pandas as pd
import pytest

from compatde.core.countmatrix import CountMatrix
from compatde.quality import CpmFilter, ExpressionByDesignFilter, RoundCounts


def _matrix(data, metadata=None):
    data = np.asarray(data, dtype=float)
    sample_ids = pd.Index([f"S{i + 1}" for i in range(data.shape[1])])
    if metadata is not None:
        metadata = pd.DataFrame(metadata, index=sample_ids)
    return CountMatrix(
        data=data,
        feature_ids=pd.Index([f"g{i + 1}" for i in range(data.shape[0])]),
        sample_ids=sample_ids,
        sample_metadata=metadata,
    )


class TestRoundCounts:
    """Estimated counts become integers."""

    def test_rounds_half_to_even(self):
        m = _matrix([[0.4, 1.5, 2.5, 3.6]])
        out = RoundCounts()(m)
        np.testing.assert_array_equal(out.data, [[0.0, 2.0, 2.0, 4.0]])

    def test_input_unchanged(self):
        m = _matrix([[0.4, 1.6]])
        RoundCounts()(m)
        assert m.data[0, 0] == 0.4

    def test_rejects_negative(self):
        with pytest.raises(ValueError, match="negative"):
            RoundCounts()(_matrix([[1.0, -1.0]]))


class TestCpmFilter:
    """CPM > min_cpm in at least min_samples samples."""

    def test_threshold_is_strict(self):
        """A gene exactly at min_cpm does not count as expressed."""
        # Library size 1e6 in every sample: counts are CPM
        data = np.array([
            [1.0, 1.0, 1.0],
            [2.0, 2.0, 0.0],
            [999997.0, 999997.0, 999999.0],
        ])
        out = CpmFilter(min_cpm=1.0, min_samples=2)(_matrix(data))
        assert list(out.feature_ids) == ["g2", "g3"]

    def test_min_samples_boundary(self):
        data = np.array([
            [5.0, 5.0, 0.0, 0.0],
            [5.0, 0.0, 0.0, 0.0],
            [100.0, 100.0, 100.0, 100.0],
        ])
        out = CpmFilter(min_cpm=0.5, min_samples=2)(_matrix(data))
        assert list(out.feature_ids) == ["g1", "g3"]

    def test_columns_untouched(self, count_matrix):
        out = CpmFilter(min_cpm=0.5, min_samples=12)(count_matrix)
        assert out.sample_ids.equals(count_matrix.sample_ids)
        assert out.sample_metadata.equals(count_matrix.sample_metadata)

    def test_removes_barely_expressed_genes(self, count_matrix, truth):
        out = CpmFilter(min_cpm=0.5, min_samples=12)(RoundCounts()(count_matrix))
        kept = set(out.feature_ids)
        assert not kept & set(truth["low"])
        assert set(truth["up"]) <= kept
        assert out.n_features >= count_matrix.n_features - len(truth["low"]) - 10

    def test_too_few_samples_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="compatde.quality.filtering"):
            out = CpmFilter(min_cpm=0.5, min_samples=5)(_matrix([[10.0, 10.0], [5.0, 5.0]]))
        assert out.n_features == 0
        assert "no gene can pass" in caplog.text

    def test_invalid_parameters(self):
        with pytest.raises(ValueError, match="min_cpm"):
            CpmFilter(min_cpm=-1)
        with pytest.raises(ValueError, match="min_samples"):
            CpmFilter(min_samples=0)

    def test_stratified_keeps_group_specific_genes(self):
        """A gene expressed in one group only survives stratification."""
        data = np.array([
            [50.0, 50.0, 0.0, 0.0],
            [50.0, 50.0, 50.0, 50.0],
            [1e6, 1e6, 1e6, 1e6],
        ])
        meta = {"pollen": ["P", "P", "U", "U"]}

        unstratified = CpmFilter(min_cpm=1.0, min_samples=3)(_matrix(data, meta))
        assert list(unstratified.feature_ids) == ["g2", "g3"]

        stratified = CpmFilter(min_cpm=1.0, min_samples=2, stratify_by=["pollen"])
        result = stratified.get_passing_genes(_matrix(data, meta))
        assert result.passed_genes == {"g1", "g2", "g3"}
        assert set(result.stratum_stats) == {"P", "U"}
        assert result.stratum_stats["U"]["passed"] == 2

    def test_stratify_missing_column(self, count_matrix):
        with pytest.raises(ValueError, match="Stratification columns not found"):
            CpmFilter(stratify_by=["tissue"]).get_passing_genes(count_matrix)

    def test_get_passing_genes_provenance(self, count_matrix):
        result = CpmFilter(min_cpm=0.5, min_samples=12).get_passing_genes(count_matrix)
        assert result.n_passed + result.n_failed == count_matrix.n_features
        assert result.keep_mask.sum() == result.n_passed
        assert result.stratum_stats["all"]["n_samples"] == count_matrix.n_samples
        assert result.parameters["min_samples"] == 12
        assert 0 < result.pass_rate < 1


class TestExpressionByDesignFilter:
    """edgeR filterByExpr rule."""

    def test_min_sample_size_from_smallest_group(self):
        meta = {"g": ["a", "a", "b", "b", "b"]}
        f = ExpressionByDesignFilter(group="g")
        assert f.min_sample_size(_matrix(np.ones((1, 5)), meta)) == 2.0

    def test_large_groups_relaxed(self):
        f = ExpressionByDesignFilter(large_n=10, min_prop=0.7)
        assert f.min_sample_size(_matrix(np.ones((1, 20)))) == pytest.approx(17.0)

    def test_total_count_required(self):
        # Median library 1e6: CPM cutoff is 10
        data = np.array([
            [10.0, 10.0, 10.0],
            [5.0, 5.0, 4.0],
            [999980.0, 999985.0, 999986.0],
        ])
        out = ExpressionByDesignFilter(min_count=10, min_total_count=15)(_matrix(data))
        assert "g1" in out.feature_ids
        assert "g2" not in out.feature_ids

    def test_removes_barely_expressed_genes(self, count_matrix, truth):
        f = ExpressionByDesignFilter(group=["compatibility", "pollen", "stage"])
        out = f(RoundCounts()(count_matrix))
        assert not set(out.feature_ids) & set(truth["low"])


def test_expression_filter_base_is_abstract():
    from compatde.quality.filtering import _ExpressionFilter

    class _NoMask(_ExpressionFilter):
        pass

    with pytest.raises(TypeError, match="abstract"):
        _NoMask(name="NoMask", params={})

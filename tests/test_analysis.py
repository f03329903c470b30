"""
End-to-end tests of the differential expression pipeline.

The synthetic experiment has genes that respond to pollination only in the
compatible genotype, so the stage1 "pollination" contrast must recover them
and the run must write every table, figure and the run summary.
"""

import json

import numpy as np
import pandas as pd
import pytest

from compatde.analysis import AnalysisConfig, Comparison, DifferentialExpressionAnalysis
from compatde.utils import safe_file_stem


@pytest.fixture
def config(analysis_config_dict):
    return AnalysisConfig.from_dict(analysis_config_dict)


class TestPipelineSteps:
    """Each step runs its prerequisites on demand."""

    def test_filter_runs_load_and_round(self, config, truth):
        analysis = DifferentialExpressionAnalysis(config)
        filtered = analysis.filter_genes()

        assert analysis.raw is not None and analysis.rounded is not None
        # Rounding undid the fractional offset written to the file
        np.testing.assert_array_equal(analysis.rounded.data, np.round(analysis.raw.data))
        assert not set(filtered.feature_ids) & set(truth["low"])
        assert filtered.sample_ids.equals(analysis.raw.sample_ids)
        assert analysis.filter_result.n_passed == filtered.n_features

    def test_normalize_and_mds(self, config):
        analysis = DifferentialExpressionAnalysis(config)
        mds = analysis.mds()
        assert np.prod(analysis.normalized.norm_factors) == pytest.approx(1.0)
        assert mds.coords.index.equals(analysis.normalized.sample_ids)
        assert mds.top == 100

    def test_select_samples_keeps_column_order(self, config):
        analysis = DifferentialExpressionAnalysis(config)
        subset = analysis.select_samples(config.comparisons[0])
        assert subset.n_samples == 12
        assert (subset.sample_metadata["stage"] == "stage1").all()
        order = [list(analysis.filtered.sample_ids).index(s) for s in subset.sample_ids]
        assert order == sorted(order)

    def test_subset_list_of_values(self, config):
        analysis = DifferentialExpressionAnalysis(config)
        comparison = Comparison(name="x", contrasts={"c": "a - b"},
                                subset={"pollen": ["pollinated"], "stage": "stage2"})
        assert analysis.select_samples(comparison).n_samples == 6

    def test_subset_errors(self, config):
        analysis = DifferentialExpressionAnalysis(config)
        with pytest.raises(ValueError, match="subset column 'tissue' not in metadata"):
            analysis.select_samples(Comparison(name="x", contrasts={"c": "a"}, subset={"tissue": "stigma"}))
        with pytest.raises(ValueError, match="matches no samples"):
            analysis.select_samples(Comparison(name="x", contrasts={"c": "a"}, subset={"stage": "stage9"}))

    def test_no_genes_pass(self, analysis_config_dict):
        analysis_config_dict["filter"] = {"min_cpm": 1e9, "min_samples": 1}
        analysis = DifferentialExpressionAnalysis(AnalysisConfig.from_dict(analysis_config_dict))
        with pytest.raises(ValueError, match="No genes passed"):
            analysis.filter_genes()

    def test_invalid_config_rejected_on_construction(self, analysis_config_dict):
        analysis_config_dict["fdr"] = {"alpha": 0}
        with pytest.raises(ValueError, match="fdr.alpha"):
            DifferentialExpressionAnalysis(AnalysisConfig.from_dict(analysis_config_dict))


class TestRunComparison:
    """Linear model, contrasts and decisions for one comparison."""

    def test_recovers_pollination_response(self, config, truth):
        analysis = DifferentialExpressionAnalysis(config)
        result = analysis.run_comparison(config.comparisons[0])

        assert result.fit.coef_names == ["pollination", "incompatibility"]
        assert len(result.sample_ids) == 12
        assert len(result.normalization.norm_factors) == 12
        assert result.voom is not None

        calls = result.decisions["pollination"]
        assert (calls.loc[truth["up"]] == 1).sum() >= 15
        assert (calls.loc[truth["down"]] == -1).sum() >= 10
        null_genes = calls.index.difference(truth["up"] + truth["down"])
        assert (calls.loc[null_genes] != 0).sum() <= 10

        table = result.top_tables["pollination"]
        assert table["P.Value"].is_monotonic_increasing
        assert table.loc[truth["up"], "logFC"].median() > 1.0

    def test_incompatible_contrast_has_opposite_sign(self, config, truth):
        result = DifferentialExpressionAnalysis(config).run_comparison(config.comparisons[0])
        table = result.top_tables["incompatibility"]
        assert table.loc[truth["up"], "logFC"].median() < -1.0

    def test_summary_counts(self, config):
        result = DifferentialExpressionAnalysis(config).run_comparison(config.comparisons[0])
        summary = result.summary
        assert list(summary.index) == ["Down", "NotSig", "Up"]
        assert summary["pollination"].sum() == result.fit.n_genes
        assert result.n_significant["pollination"] == summary.loc[["Down", "Up"], "pollination"].sum()

    def test_without_voom(self, analysis_config_dict, truth):
        analysis_config_dict["voom"] = {"enabled": False}
        config = AnalysisConfig.from_dict(analysis_config_dict)
        result = DifferentialExpressionAnalysis(config).run_comparison(config.comparisons[0])
        assert result.voom is None
        assert (result.decisions["pollination"].loc[truth["up"]] == 1).sum() >= 15

    def test_unknown_group_names_the_comparison(self, config):
        bad = Comparison(name="typo", contrasts={"c": "compatible.polinated - compatible.unpollinated"},
                         subset={"stage": "stage1"})
        with pytest.raises(ValueError, match="Comparison 'typo'"):
            DifferentialExpressionAnalysis(config).run_comparison(bad)

    def test_unreplicated_groups(self, config):
        analysis = DifferentialExpressionAnalysis(config)
        analysis.filter_genes()
        # One sample per group: no residual degrees of freedom
        keep = analysis.filtered.sample_ids.isin(["CU_1_1", "IU_1_1"])
        analysis.filtered = analysis.filtered.select_samples(keep)
        single = Comparison(name="single", contrasts={"c": "compatible - incompatible"},
                            factors=["compatibility"])
        with pytest.raises(ValueError, match="Comparison 'single'.*residual df"):
            analysis.run_comparison(single)


class TestRun:
    """Full run with outputs."""

    def test_writes_all_outputs(self, config):
        summary = DifferentialExpressionAnalysis(config).run(make_plots=True)
        out = config.output

        for name in ["filtered_counts.tsv", "norm_factors.csv", "mds_coordinates.csv",
                     "mds.png", "run_summary.json"]:
            assert (out / name).exists(), name

        stage1 = out / "stage1"
        for name in ["pollination.top_table.csv", "incompatibility.top_table.csv",
                     "decide_tests_summary.csv", "mean_variance.png",
                     "pollination.md.png", "pollination.volcano.png", "pollination.pvalues.png"]:
            assert (stage1 / name).exists(), name

        stem = "compatible.pollinated.stage2_-_compatible.unpollinated.stage2"
        assert (out / "all_stages" / f"{stem}.top_table.csv").exists()

        on_disk = json.loads((out / "run_summary.json").read_text())
        assert on_disk["genes"] == summary["genes"]
        assert on_disk["samples"] == 24
        assert set(on_disk["comparisons"]) == {"stage1", "all_stages"}
        assert on_disk["comparisons"]["stage1"]["contrasts"]["pollination"]["up"] >= 15
        assert on_disk["normalization"]["method"] == "TMM"
        assert on_disk["config"]["filter"]["min_samples"] == 6

    def test_tables_only(self, config):
        DifferentialExpressionAnalysis(config).run(make_plots=False)
        out = config.output
        assert (out / "stage1" / "pollination.top_table.csv").exists()
        assert not (out / "stage1" / "pollination.volcano.png").exists()
        assert not (out / "mds.png").exists()

        table = pd.read_csv(out / "stage1" / "pollination.top_table.csv")
        assert list(table.columns) == ["gene_id", "logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]

    def test_mds_coordinates_carry_metadata(self, config):
        DifferentialExpressionAnalysis(config).run(make_plots=False)
        coords = pd.read_csv(config.output / "mds_coordinates.csv", index_col="sample")
        assert {"dim1", "dim2", "compatibility", "pollen", "stage"} <= set(coords.columns)
        assert len(coords) == 24

    def test_expression_named_contrasts_stay_in_comparison_dir(self, analysis_config_dict):
        average = ("(compatible.pollinated.stage1 + compatible.pollinated.stage2)/2"
                   " - (compatible.unpollinated.stage1 + compatible.unpollinated.stage2)/2")
        analysis_config_dict["comparisons"] = [{
            "name": "../avg",
            "factors": ["compatibility", "pollen", "stage"],
            "contrasts": [average],
        }]
        config = AnalysisConfig.from_dict(analysis_config_dict)
        summary = DifferentialExpressionAnalysis(config).run(make_plots=True)

        comparison_dir = config.output / "avg"
        written = [p for p in comparison_dir.rglob("*") if p.is_file()]
        assert written
        assert all(p.parent == comparison_dir for p in written)
        assert not (config.output.parent / "avg").exists()

        stem = safe_file_stem(average)
        assert stem == ("compatible.pollinated.stage1_compatible.pollinated.stage2_2_-_"
                        "compatible.unpollinated.stage1_compatible.unpollinated.stage2_2")
        for suffix in ["top_table.csv", "md.png", "volcano.png", "pvalues.png"]:
            assert (comparison_dir / f"{stem}.{suffix}").exists(), suffix

        entry = summary["comparisons"]["../avg"]
        assert entry["contrasts"][average]["file_stem"] == stem
        assert entry["files"][f"{average}.volcano"] == str(comparison_dir / f"{stem}.volcano.png")

    def test_unadjusted_p_values(self, analysis_config_dict):
        analysis_config_dict["fdr"] = {"method": "none"}
        config = AnalysisConfig.from_dict(analysis_config_dict)
        result = DifferentialExpressionAnalysis(config).run_comparison(config.comparisons[0])
        table = result.top_tables["pollination"]
        np.testing.assert_array_equal(table["adj.P.Val"].to_numpy(), table["P.Value"].to_numpy())

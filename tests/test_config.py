"""Tests for config loading, CLI override merging and config validation."""

import json
from argparse import Namespace
from pathlib import Path

import pytest
import yaml

from compatde.analysis import AnalysisConfig, Comparison
from compatde.cli.config import (
    _merge_value,
    load_config,
    merge_config_with_args,
    validate_config,
)


def _args(**overrides):
    values = {
        "counts": None, "metadata": None, "sample_column": None, "output": None,
        "plot_format": None, "min_cpm": None, "min_samples": None, "alpha": None, "lfc": None,
    }
    values.update(overrides)
    return Namespace(**values)


class TestLoadConfig:
    """YAML / JSON config files."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text("counts: /data/counts.txt\nfdr:\n  alpha: 0.01\n")
        config = load_config(path)
        assert config["counts"] == "/data/counts.txt"
        assert config["fdr"]["alpha"] == 0.01

    def test_json(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps({"metadata": "/data/samples.csv"}))
        assert load_config(path)["metadata"] == "/data/samples.csv"

    def test_relative_paths_resolved_against_config_dir(self, tmp_path):
        sub = tmp_path / "project"
        sub.mkdir()
        path = sub / "analysis.yml"
        path.write_text("counts: data/counts.txt\noutput: results\n")
        config = load_config(path)
        assert Path(config["counts"]) == sub / "data" / "counts.txt"
        assert Path(config["output"]) == sub / "results"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(tmp_path / "nope.yaml")

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "analysis.toml"
        path.write_text("x = 1\n")
        with pytest.raises(ValueError, match="Unsupported config format"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("fdr: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="dictionary/mapping"):
            load_config(path)


class TestMergeConfigWithArgs:
    """Explicit CLI arguments override config values."""

    def test_merge_value(self):
        assert _merge_value(0.01, 0.05, True) == 0.01
        assert _merge_value(None, 0.05, False) == 0.05

    def test_explicit_override(self):
        config = {"fdr": {"alpha": 0.05, "method": "BH"}, "counts": "a.txt"}
        merged = merge_config_with_args(config, _args(alpha=0.01, counts=Path("b.txt")))
        assert merged["fdr"] == {"alpha": 0.01, "method": "BH"}
        assert merged["counts"] == "b.txt"

    def test_unset_args_keep_config(self):
        config = {"filter": {"min_samples": 6}, "output": "out"}
        merged = merge_config_with_args(config, _args())
        assert merged == config

    def test_creates_missing_section(self):
        merged = merge_config_with_args({}, _args(min_samples=3))
        assert merged["filter"] == {"min_samples": 3}
        assert "fdr" not in merged

    def test_input_not_modified(self):
        config = {"fdr": {"alpha": 0.05}}
        merge_config_with_args(config, _args(alpha=0.2))
        assert config["fdr"]["alpha"] == 0.05


class TestValidateConfig:
    """AnalysisConfig schema and value checks."""

    def test_valid(self, analysis_config_dict):
        config = validate_config(analysis_config_dict)
        assert isinstance(config, AnalysisConfig)
        assert config.filter.min_samples == 6
        assert config.fdr.alpha == 0.05
        assert config.comparisons[0].subset == {"stage": "stage1"}
        # A list of contrasts is keyed by the expressions themselves
        expr = "compatible.pollinated.stage2 - compatible.unpollinated.stage2"
        assert config.comparisons[1].contrasts == {expr: expr}
        assert config.comparisons[1].factors == ["compatibility", "pollen", "stage"]

    def test_to_dict_is_plain(self, analysis_config_dict):
        data = validate_config(analysis_config_dict).to_dict()
        assert isinstance(data["counts"], str)
        assert data["comparisons"][0]["name"] == "stage1"
        # Round-trips through YAML
        assert yaml.safe_load(yaml.safe_dump(data))["fdr"]["method"] == "BH"

    @pytest.mark.parametrize("change, message", [
        ({"colour": "red"}, "Unknown config keys"),
        ({"fdr": {"alpha": 1.5}}, "fdr.alpha must be in"),
        ({"fdr": {"method": "qvalue"}}, "Invalid FDR method"),
        ({"fdr": {"q": 0.1}}, "Unknown keys in 'fdr'"),
        ({"filter": {"method": "median"}}, "Invalid filter method"),
        ({"filter": {"min_samples": 0}}, "min_samples must be a positive integer"),
        ({"normalization": {"method": "RLE"}}, "Unknown normalization method"),
        ({"voom": {"span": 1.5}}, "voom.span"),
        ({"mds": {"gene_selection": "best"}}, "Invalid MDS gene selection"),
        ({"plot_format": "gif"}, "Invalid plot format"),
        ({"counts": None}, "needs both 'counts' and 'metadata'"),
    ])
    def test_invalid_values(self, analysis_config_dict, change, message):
        analysis_config_dict.update(change)
        with pytest.raises(ValueError, match=message):
            validate_config(analysis_config_dict)

    def test_duplicate_comparison_names(self, analysis_config_dict):
        analysis_config_dict["comparisons"][1]["name"] = "stage1"
        with pytest.raises(ValueError, match="Duplicate comparison names"):
            validate_config(analysis_config_dict)

    def test_comparison_needs_factors(self, analysis_config_dict):
        analysis_config_dict["factors"] = []
        with pytest.raises(ValueError, match="Comparison 'stage1' has no factors"):
            validate_config(analysis_config_dict)

    def test_comparison_needs_contrasts(self, analysis_config_dict):
        analysis_config_dict["comparisons"][0]["contrasts"] = {}
        with pytest.raises(ValueError, match="has no contrasts"):
            validate_config(analysis_config_dict)


class TestComparison:
    """Comparison.from_dict."""

    def test_required_keys(self):
        with pytest.raises(ValueError, match="needs 'name' and 'contrasts'"):
            Comparison.from_dict({"name": "x"})

    def test_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown keys in comparison"):
            Comparison.from_dict({"name": "x", "contrasts": ["B - A"], "design": "~group"})

    def test_factor_string(self):
        c = Comparison.from_dict({"name": "x", "contrasts": {"c": "B - A"}, "factors": "group"})
        assert c.factors == ["group"]
        assert c.subset == {}


class TestOutputNames:
    """Contrast and comparison names become file names."""

    def test_colliding_contrast_stems(self, analysis_config_dict):
        analysis_config_dict["comparisons"][0]["contrasts"] = {
            "p/u": "compatible.pollinated - compatible.unpollinated",
            "p u": "incompatible.pollinated - compatible.pollinated",
        }
        with pytest.raises(ValueError, match="same output file name 'p_u'"):
            validate_config(analysis_config_dict)

    def test_colliding_comparison_stems(self, analysis_config_dict):
        analysis_config_dict["comparisons"][1]["name"] = "stage1/"
        with pytest.raises(ValueError, match="comparison names"):
            validate_config(analysis_config_dict)


def test_fdr_method_none_accepted(analysis_config_dict):
    analysis_config_dict["fdr"] = {"method": "none"}
    assert validate_config(analysis_config_dict).fdr.method == "none"

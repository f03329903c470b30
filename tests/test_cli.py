"""Tests for the compatde command line interface."""

import json

import pandas as pd
import pytest
import yaml

from compatde import __version__
from compatde.cli import main


@pytest.fixture
def config_file(tmp_path, analysis_config_dict):
    path = tmp_path / "analysis.yaml"
    path.write_text(yaml.safe_dump(analysis_config_dict, sort_keys=False))
    return path


class TestMain:
    """Dispatcher."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: compatde" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_builtin_filter_not_shadowed(self):
        assert "filter" not in main.__code__.co_varnames

    def test_invalid_argument_value(self, config_file):
        with pytest.raises(SystemExit) as exc:
            main(["run", "--config", str(config_file), "--alpha", "2"])
        assert exc.value.code == 2


class TestRunCommand:
    """compatde run"""

    def test_run_tables_only(self, config_file, analysis_config_dict, capsys):
        assert main(["run", "--config", str(config_file), "--no-plots"]) == 0

        out_dir = analysis_config_dict["output"]
        summary = json.loads(open(f"{out_dir}/run_summary.json").read())
        assert summary["comparisons"]["stage1"]["n_samples"] == 12
        used = yaml.safe_load(open(f"{out_dir}/config_used.yaml").read())
        assert used["filter"]["min_samples"] == 6

        printed = capsys.readouterr().out
        assert "compatde: differential expression analysis" in printed
        assert "pollination" in printed

    def test_cli_overrides_config(self, config_file, tmp_path):
        out_dir = tmp_path / "strict"
        code = main(["run", "--config", str(config_file), "--no-plots",
                     "--alpha", "0.01", "--output", str(out_dir)])
        assert code == 0
        summary = json.loads((out_dir / "run_summary.json").read_text())
        assert summary["config"]["fdr"]["alpha"] == 0.01
        assert summary["config"]["output"] == str(out_dir)

    def test_missing_config(self, tmp_path):
        assert main(["run", "--config", str(tmp_path / "missing.yaml")]) == 1

    def test_invalid_config(self, tmp_path, analysis_config_dict):
        analysis_config_dict["fdr"] = {"method": "qvalue"}
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(analysis_config_dict))
        assert main(["run", "--config", str(path)]) == 1

    def test_analysis_error(self, tmp_path, analysis_config_dict):
        analysis_config_dict["comparisons"][0]["contrasts"] = {"c": "compatible.polinated - compatible.unpollinated"}
        path = tmp_path / "typo.yaml"
        path.write_text(yaml.safe_dump(analysis_config_dict))
        assert main(["run", "--config", str(path), "--no-plots"]) == 1


class TestFilterCommand:
    """compatde filter"""

    def test_filter(self, counts_file, tmp_path, truth, capsys):
        out = tmp_path / "filtered.tsv"
        assert main(["filter", "--counts", str(counts_file), "--output", str(out),
                     "--min-samples", "6"]) == 0
        table = pd.read_csv(out, sep="\t", index_col="gene_id")
        assert not set(table.index) & set(truth["low"])
        assert (table.to_numpy() % 1 == 0).all()
        assert "Kept" in capsys.readouterr().out

    def test_stratified(self, counts_file, metadata_file, tmp_path):
        out = tmp_path / "filtered.tsv"
        code = main(["filter", "--counts", str(counts_file), "--metadata", str(metadata_file),
                     "--sample-column", "sample", "--stratify-by", "compatibility", "pollen",
                     "--min-samples", "3", "--output", str(out)])
        assert code == 0
        assert out.exists()

    def test_stratify_needs_metadata(self, counts_file, tmp_path):
        code = main(["filter", "--counts", str(counts_file), "--stratify-by", "pollen",
                     "--output", str(tmp_path / "f.tsv")])
        assert code == 1

    def test_missing_counts(self, tmp_path):
        code = main(["filter", "--counts", str(tmp_path / "nope.txt"),
                     "--output", str(tmp_path / "f.tsv")])
        assert code == 1


class TestMdsCommand:
    """compatde mds"""

    def test_mds_plot(self, counts_file, metadata_file, tmp_path):
        out = tmp_path / "plots" / "mds.png"
        code = main(["mds", "--counts", str(counts_file), "--metadata", str(metadata_file),
                     "--sample-column", "sample", "--color-by", "compatibility",
                     "--shape-by", "pollen", "--top", "100", "--output", str(out)])
        assert code == 0
        assert out.exists()

    def test_unsupported_suffix_closes_figure(self, counts_file, metadata_file, tmp_path):
        import matplotlib.pyplot as plt

        plt.close("all")
        code = main(["mds", "--counts", str(counts_file), "--metadata", str(metadata_file),
                     "--sample-column", "sample", "--color-by", "compatibility",
                     "--top", "100", "--output", str(tmp_path / "mds.gif")])
        assert code == 1
        assert plt.get_fignums() == []
        assert not (tmp_path / "mds.gif").exists()

    def test_unknown_color_column(self, counts_file, metadata_file, tmp_path):
        code = main(["mds", "--counts", str(counts_file), "--metadata", str(metadata_file),
                     "--sample-column", "sample", "--color-by", "tissue",
                     "--output", str(tmp_path / "mds.png")])
        assert code == 1


class TestValidators:
    """argparse bounds checks."""

    @pytest.mark.parametrize("flag, value", [
        ("--min-samples", "0"),
        ("--min-samples", "2.5"),
        ("--min-cpm", "-1"),
        ("--alpha", "0"),
        ("--alpha", "nan"),
        ("--lfc", "-0.5"),
    ])
    def test_rejected(self, config_file, flag, value, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["run", "--config", str(config_file), flag, value])
        assert exc.value.code == 2
        assert "invalid" in capsys.readouterr().err

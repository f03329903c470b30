"""
The differential expression pipeline.

One linear pass over the experiment:

    load -> round -> filter genes -> TMM -> MDS
         -> per comparison: subset samples -> TMM -> design -> contrasts
                            -> voom -> lm_fit -> contrasts_fit -> e_bayes
                            -> top tables, decisions, figures

Rounding and gene filtering are applied once to the full matrix. Each
comparison re-slices the samples it needs (column order preserved) and
recomputes normalization factors on that subset.

Examples:
    >>> from compatde.analysis import AnalysisConfig, DifferentialExpressionAnalysis
    >>> config = AnalysisConfig.from_dict({
    ...     "counts": "counts.txt",
    ...     "metadata": "samples.csv",
    ...     "sample_column": "sample",
    ...     "factors": ["compatibility", "pollen"],
    ...     "comparisons": [{
    ...         "name": "stage1",
    ...         "subset": {"stage": "stage1"},
    ...         "contrasts": {"pollination": "compatible.pollinated - compatible.unpollinated"},
    ...     }],
    ...     "output": "results",
    ... })
    >>> summary = DifferentialExpressionAnalysis(config).run()
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from compatde import __version__
from compatde.core.countmatrix import CountMatrix
from compatde.io import (
    load_experiment,
    write_decide_summary,
    write_matrix,
    write_norm_factors,
    write_run_summary,
    write_top_table,
)
from compatde.quality import CpmFilter, ExpressionByDesignFilter, ExpressionFilterResult, RoundCounts
from compatde.stats import (
    ADJUST_METHODS,
    LinearModelFit,
    MDSResult,
    NormalizationMethod,
    NormalizationResult,
    TMMNormalization,
    VoomResult,
    build_group_design,
    contrasts_fit,
    decide_tests,
    e_bayes,
    lm_fit,
    log_cpm,
    make_contrasts,
    make_group_factor,
    plot_mds_coordinates,
    summarize_decisions,
    top_table,
    voom,
)
from compatde.stats.mds import GENE_SELECTIONS
from compatde.utils.fileio import safe_file_stem

logger = logging.getLogger(__name__)

FILTER_METHODS = ("cpm", "by_design")
PLOT_FORMATS = ("png", "pdf", "svg")


# =============================================================================
# Configuration schema
# =============================================================================

@dataclass
class FilterConfig:
    """Gene filtering configuration."""
    method: str = "cpm"
    min_cpm: float = 0.5
    min_samples: int = 12
    stratify_by: Optional[List[str]] = None
    min_count: float = 10
    min_total_count: float = 15


@dataclass
class NormalizationConfig:
    """Library-size normalization configuration."""
    method: str = "TMM"


@dataclass
class VoomConfig:
    """voom configuration; prior_count is used for log-CPM when voom is off."""
    enabled: bool = True
    span: float = 0.5
    prior_count: float = 2.0


@dataclass
class FdrConfig:
    """Multiple testing and significance thresholds."""
    method: str = "BH"
    alpha: float = 0.05
    lfc: float = 0.0


@dataclass
class MdsConfig:
    """MDS plot configuration."""
    top: int = 500
    gene_selection: str = "pairwise"
    color_by: Optional[str] = None
    shape_by: Optional[str] = None
    prior_count: float = 2.0
    label: bool = False


@dataclass
class Comparison:
    """
    One set of contrasts fitted on a subset of the samples.

    Attributes:
        name: Identifier, also the output subdirectory
        contrasts: {contrast name: expression over group names}
        subset: {metadata column: value or list of values}; empty = all samples
        factors: Columns combined into the group label (default: the
            analysis factors)
    """
    name: str
    contrasts: Dict[str, str]
    subset: Dict[str, Any] = field(default_factory=dict)
    factors: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comparison":
        if not isinstance(data, dict):
            raise ValueError(f"Each comparison must be a mapping, got {type(data).__name__}")
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown keys in comparison: {sorted(unknown)}")
        if "name" not in data or "contrasts" not in data:
            raise ValueError("Each comparison needs 'name' and 'contrasts'")

        contrasts = data["contrasts"]
        if isinstance(contrasts, list):
            contrasts = {str(expr): str(expr) for expr in contrasts}
        elif isinstance(contrasts, dict):
            contrasts = {str(k): str(v) for k, v in contrasts.items()}
        else:
            raise ValueError(f"Comparison '{data['name']}': contrasts must be a mapping or a list")

        factors = data.get("factors")
        if isinstance(factors, str):
            factors = [factors]

        return cls(
            name=str(data["name"]),
            contrasts=contrasts,
            subset=dict(data.get("subset") or {}),
            factors=list(factors) if factors else None,
        )


_SECTIONS = {
    "filter": FilterConfig,
    "normalization": NormalizationConfig,
    "voom": VoomConfig,
    "fdr": FdrConfig,
    "mds": MdsConfig,
}


@dataclass
class AnalysisConfig:
    """
    Complete configuration of a differential expression run.

    Mirrors the structure of the YAML/JSON config file.
    """
    counts: Optional[Path] = None
    metadata: Optional[Path] = None
    sample_column: Optional[str] = None
    factors: List[str] = field(default_factory=list)
    drop_unannotated: bool = False
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    voom: VoomConfig = field(default_factory=VoomConfig)
    fdr: FdrConfig = field(default_factory=FdrConfig)
    mds: MdsConfig = field(default_factory=MdsConfig)
    comparisons: List[Comparison] = field(default_factory=list)
    output: Path = Path("results")
    plot_format: str = "png"
    n_labels: int = 10

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """
        Build a config from a parsed YAML/JSON mapping.

        Raises:
            ValueError: On unknown keys or malformed sections
        """
        data = dict(data or {})
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key in _SECTIONS:
                section_cls = _SECTIONS[key]
                if value is None:
                    value = {}
                if not isinstance(value, dict):
                    raise ValueError(f"Config section '{key}' must be a mapping")
                bad = set(value) - {f.name for f in fields(section_cls)}
                if bad:
                    raise ValueError(f"Unknown keys in '{key}': {sorted(bad)}")
                kwargs[key] = section_cls(**value)
            elif key == "comparisons":
                kwargs[key] = [Comparison.from_dict(c) for c in (value or [])]
            elif key in ("counts", "metadata", "output"):
                kwargs[key] = Path(value) if value is not None else None
            elif key == "factors":
                kwargs[key] = [value] if isinstance(value, str) else list(value or [])
            else:
                kwargs[key] = value

        if kwargs.get("output") is None:
            kwargs.pop("output", None)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data representation (paths as strings) for the run summary."""
        data = asdict(self)
        for key in ("counts", "metadata", "output"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data

    def validate(self) -> None:
        """
        Check values and cross-references.

        Raises:
            ValueError: Describing the first invalid setting
        """
        if self.counts is None or self.metadata is None:
            raise ValueError("Config needs both 'counts' and 'metadata' paths")

        if self.filter.method not in FILTER_METHODS:
            raise ValueError(
                f"Invalid filter method '{self.filter.method}'. Choose from: {', '.join(FILTER_METHODS)}"
            )
        if self.filter.min_cpm < 0:
            raise ValueError(f"filter.min_cpm must be non-negative, got {self.filter.min_cpm}")
        if not isinstance(self.filter.min_samples, int) or self.filter.min_samples < 1:
            raise ValueError(f"filter.min_samples must be a positive integer, got {self.filter.min_samples}")

        NormalizationMethod.parse(self.normalization.method)

        if not 0 < self.voom.span <= 1:
            raise ValueError(f"voom.span must be in (0, 1], got {self.voom.span}")
        if self.voom.prior_count <= 0:
            raise ValueError(f"voom.prior_count must be positive, got {self.voom.prior_count}")

        if self.fdr.method not in ADJUST_METHODS:
            raise ValueError(
                f"Invalid FDR method '{self.fdr.method}'. Choose from: {', '.join(ADJUST_METHODS)}"
            )
        if not 0 < self.fdr.alpha < 1:
            raise ValueError(f"fdr.alpha must be in (0, 1), got {self.fdr.alpha}")
        if self.fdr.lfc < 0:
            raise ValueError(f"fdr.lfc must be non-negative, got {self.fdr.lfc}")

        if self.mds.top < 2:
            raise ValueError(f"mds.top must be at least 2, got {self.mds.top}")
        if self.mds.gene_selection not in GENE_SELECTIONS:
            raise ValueError(
                f"Invalid MDS gene selection '{self.mds.gene_selection}'. "
                f"Choose from: {', '.join(GENE_SELECTIONS)}"
            )

        if self.plot_format not in PLOT_FORMATS:
            raise ValueError(
                f"Invalid plot format '{self.plot_format}'. Choose from: {', '.join(PLOT_FORMATS)}"
            )

        names = [c.name for c in self.comparisons]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate comparison names: {duplicates}")
        _check_distinct_stems(names, "comparison names")
        for comparison in self.comparisons:
            if not comparison.name.strip():
                raise ValueError("Comparison names must be non-empty")
            if not comparison.contrasts:
                raise ValueError(f"Comparison '{comparison.name}' has no contrasts")
            if not (comparison.factors or self.factors):
                raise ValueError(
                    f"Comparison '{comparison.name}' has no factors and no default 'factors' is set"
                )
            _check_distinct_stems(list(comparison.contrasts), f"contrasts of comparison '{comparison.name}'")


def _check_distinct_stems(names: List[str], what: str) -> None:
    stems: Dict[str, str] = {}
    for name in names:
        stem = safe_file_stem(name)
        if stem in stems and stems[stem] != name:
            raise ValueError(
                f"The {what} '{stems[stem]}' and '{name}' map to the same output file name '{stem}'"
            )
        stems[stem] = name


# =============================================================================
# Results
# =============================================================================

@dataclass
class ComparisonResult:
    """Everything computed for one comparison."""
    name: str
    sample_ids: pd.Index
    fit: LinearModelFit
    top_tables: Dict[str, pd.DataFrame]
    decisions: pd.DataFrame
    voom: Optional[VoomResult] = None
    normalization: Optional[NormalizationResult] = None

    @property
    def summary(self) -> pd.DataFrame:
        return summarize_decisions(self.decisions)

    @property
    def n_significant(self) -> Dict[str, int]:
        return {name: int((self.decisions[name] != 0).sum()) for name in self.decisions.columns}


# =============================================================================
# Pipeline
# =============================================================================

class DifferentialExpressionAnalysis:
    """
    Run the analysis described by an AnalysisConfig.

    Every step is a public method; a step runs the steps it depends on if
    they have not run yet, so `run()` and step-by-step use are equivalent.

    Attributes (filled as the steps run):
        raw: Matrix as loaded, metadata aligned
        rounded: After rounding
        filtered: After gene filtering
        normalized: Filtered matrix with TMM factors over all samples
        filter_result: Provenance of the gene filter
        mds_result: MDS of all samples
        results: ComparisonResult per comparison name
    """

    def __init__(self, config: AnalysisConfig):
        config.validate()
        self.config = config
        self.raw: Optional[CountMatrix] = None
        self.rounded: Optional[CountMatrix] = None
        self.filtered: Optional[CountMatrix] = None
        self.normalized: Optional[CountMatrix] = None
        self.filter_result: Optional[ExpressionFilterResult] = None
        self.norm_result: Optional[NormalizationResult] = None
        self.mds_result: Optional[MDSResult] = None
        self.results: Dict[str, ComparisonResult] = {}

    # ---------------------------------------------------------------- steps

    def load(self) -> CountMatrix:
        cfg = self.config
        self.raw = load_experiment(
            cfg.counts,
            cfg.metadata,
            sample_column=cfg.sample_column,
            drop_unannotated=cfg.drop_unannotated,
        )
        logger.info(f"Loaded {self.raw.n_features} genes x {self.raw.n_samples} samples")
        return self.raw

    def round_counts(self) -> CountMatrix:
        if self.raw is None:
            self.load()
        self.rounded = RoundCounts()(self.raw)
        return self.rounded

    def _make_filter(self):
        fc = self.config.filter
        if fc.method == "by_design":
            return ExpressionByDesignFilter(
                group=fc.stratify_by or self.config.factors or None,
                min_count=fc.min_count,
                min_total_count=fc.min_total_count,
            )
        return CpmFilter(min_cpm=fc.min_cpm, min_samples=fc.min_samples, stratify_by=fc.stratify_by)

    def filter_genes(self) -> CountMatrix:
        if self.rounded is None:
            self.round_counts()
        gene_filter = self._make_filter()
        errors = gene_filter.validate(self.rounded)
        if errors:
            raise ValueError(f"{gene_filter.name} cannot be applied: " + "; ".join(errors))
        self.filter_result = gene_filter.get_passing_genes(self.rounded)
        if self.filter_result.n_passed == 0:
            raise ValueError(f"No genes passed the expression filter ({gene_filter!r})")
        self.filtered = self.rounded.select_features(self.filter_result.keep_mask)
        logger.info(
            f"Gene filter: kept {self.filtered.n_features} of {self.rounded.n_features} genes"
        )
        return self.filtered

    def normalize(self) -> CountMatrix:
        if self.filtered is None:
            self.filter_genes()
        normalizer = TMMNormalization(method=self.config.normalization.method)
        self.normalized = normalizer(self.filtered)
        self.norm_result = normalizer.last_result
        return self.normalized

    def mds(self) -> MDSResult:
        if self.normalized is None:
            self.normalize()
        mc = self.config.mds
        expr = pd.DataFrame(
            log_cpm(self.normalized, prior_count=mc.prior_count),
            index=self.normalized.feature_ids,
            columns=self.normalized.sample_ids,
        )
        self.mds_result = plot_mds_coordinates(expr, top=mc.top, gene_selection=mc.gene_selection)
        return self.mds_result

    def select_samples(self, comparison: Comparison) -> CountMatrix:
        """
        Columns of the filtered matrix matching the comparison subset.

        Raises:
            ValueError: If a subset column is missing or nothing matches
        """
        if self.filtered is None:
            self.filter_genes()
        metadata = self.filtered.sample_metadata
        mask = np.ones(self.filtered.n_samples, dtype=bool)

        for column, wanted in comparison.subset.items():
            if column not in metadata.columns:
                raise ValueError(
                    f"Comparison '{comparison.name}': subset column '{column}' not in metadata. "
                    f"Available: {list(metadata.columns)}"
                )
            values = wanted if isinstance(wanted, (list, tuple, set)) else [wanted]
            mask &= metadata[column].astype(str).isin([str(v) for v in values]).to_numpy()

        if not mask.any():
            raise ValueError(
                f"Comparison '{comparison.name}': subset {comparison.subset} matches no samples"
            )
        return self.filtered.select_samples(mask)

    def run_comparison(self, comparison: Comparison) -> ComparisonResult:
        """
        Fit the linear model for one comparison and test its contrasts.

        Raises:
            ValueError: Naming the comparison, if the samples, groups or
                contrasts cannot support the model
        """
        cfg = self.config
        subset = self.select_samples(comparison)
        factors = comparison.factors or cfg.factors

        try:
            groups = make_group_factor(subset.sample_metadata, factors)
            design = build_group_design(groups)
            contrasts = make_contrasts(comparison.contrasts, design.col_names)

            normalizer = TMMNormalization(method=cfg.normalization.method)
            subset = normalizer(subset)

            voom_result = None
            if cfg.voom.enabled:
                voom_result = voom(subset, design, span=cfg.voom.span)
                fit = lm_fit(voom_result.E, design, weights=voom_result.weights,
                             feature_ids=subset.feature_ids)
            else:
                fit = lm_fit(log_cpm(subset, prior_count=cfg.voom.prior_count), design,
                             feature_ids=subset.feature_ids)

            fit = e_bayes(contrasts_fit(fit, contrasts))
        except ValueError as e:
            raise ValueError(f"Comparison '{comparison.name}': {e}") from e

        top_tables = {
            name: top_table(fit, coef=name, adjust_method=cfg.fdr.method, sort_by="p")
            for name in fit.coef_names
        }
        decisions = decide_tests(fit, adjust_method=cfg.fdr.method, p_value=cfg.fdr.alpha, lfc=cfg.fdr.lfc)

        result = ComparisonResult(
            name=comparison.name,
            sample_ids=subset.sample_ids,
            fit=fit,
            top_tables=top_tables,
            decisions=decisions,
            voom=voom_result,
            normalization=normalizer.last_result,
        )
        self.results[comparison.name] = result

        counts = ", ".join(f"{k}={v}" for k, v in result.n_significant.items())
        logger.info(
            f"Comparison '{comparison.name}': {subset.n_samples} samples, "
            f"{design.n_params} groups, significant genes: {counts}"
        )
        return result

    # ---------------------------------------------------------------- output

    def _comparison_figures(self, result: ComparisonResult, plotter):
        from compatde.viz import FigureCollection

        cfg = self.config
        figures = FigureCollection()
        if result.voom is not None:
            figures.add("mean_variance",
                        plotter.plot_mean_variance(result.voom, title=f"{result.name}: voom trend"))
        for name, table in result.top_tables.items():
            stem = safe_file_stem(name)
            figures.add(f"{stem}.md", plotter.plot_md(result.fit, name, result.decisions))
            figures.add(f"{stem}.volcano",
                        plotter.plot_volcano(table, lfc=cfg.fdr.lfc, p_value=cfg.fdr.alpha,
                                             n_labels=cfg.n_labels, title=name))
            figures.add(f"{stem}.pvalues",
                        plotter.plot_pvalue_histogram(table, title=f"{name}: p-values"))
        return figures

    def write_comparison(self, result: ComparisonResult, plotter=None) -> Dict[str, Any]:
        """Write tables and figures of one comparison under output/<name>/."""
        cfg = self.config
        out = Path(cfg.output) / safe_file_stem(result.name)
        files: Dict[str, str] = {}

        for name, table in result.top_tables.items():
            path = out / f"{safe_file_stem(name)}.top_table.csv"
            files[f"{name}.top_table"] = str(write_top_table(table, path))
        files["decide_tests_summary"] = str(write_decide_summary(result.summary, out / "decide_tests_summary.csv"))

        if plotter is not None:
            figures = self._comparison_figures(result, plotter)
            try:
                paths = figures.save_all(out, format=cfg.plot_format)
            finally:
                figures.close_all()
            labels = ["mean_variance"] if result.voom is not None else []
            for name in result.top_tables:
                labels += [f"{name}.md", f"{name}.volcano", f"{name}.pvalues"]
            files.update({label: str(path) for label, path in zip(labels, paths)})

        return {
            "n_samples": int(len(result.sample_ids)),
            "samples": [str(s) for s in result.sample_ids],
            "norm_factors": result.normalization.norm_factors if result.normalization else None,
            "df_prior": result.fit.df_prior,
            "s2_prior": result.fit.s2_prior,
            "contrasts": {
                name: {
                    "expression": expr,
                    "file_stem": safe_file_stem(name),
                    "up": int((result.decisions[name] == 1).sum()),
                    "down": int((result.decisions[name] == -1).sum()),
                }
                for name, expr in zip(result.fit.coef_names, self._expressions(result.name))
            },
            "files": files,
        }

    def _expressions(self, comparison_name: str) -> List[str]:
        for comparison in self.config.comparisons:
            if comparison.name == comparison_name:
                return list(comparison.contrasts.values())
        return []

    def run(self, make_plots: bool = True) -> Dict[str, Any]:
        """
        Run every step and write all outputs under config.output.

        Returns:
            The run summary (also written to run_summary.json)
        """
        cfg = self.config
        out = Path(cfg.output)
        out.mkdir(parents=True, exist_ok=True)
        started = datetime.now()

        plotter = None
        if make_plots:
            from compatde.viz import DifferentialPlotter
            plotter = DifferentialPlotter()

        self.normalize()
        files: Dict[str, str] = {
            "filtered_counts": str(write_matrix(self.filtered, out / "filtered_counts.tsv")),
            "norm_factors": str(write_norm_factors(self.normalized, out / "norm_factors.csv")),
        }

        self.mds()
        mds_coords = self.mds_result.coords.join(self.normalized.sample_metadata)
        mds_coords.to_csv(out / "mds_coordinates.csv", index_label="sample")
        files["mds_coordinates"] = str(out / "mds_coordinates.csv")
        if plotter is not None and cfg.mds.color_by:
            figure = plotter.plot_mds(self.mds_result, self.normalized.sample_metadata,
                                      color_by=cfg.mds.color_by, shape_by=cfg.mds.shape_by,
                                      label=cfg.mds.label)
            try:
                files["mds"] = str(figure.save(out / f"mds.{cfg.plot_format}"))
            finally:
                figure.close()

        comparisons: Dict[str, Any] = {}
        for comparison in cfg.comparisons:
            result = self.run_comparison(comparison)
            comparisons[comparison.name] = self.write_comparison(result, plotter)

        summary = {
            "compatde_version": __version__,
            "started": started.isoformat(timespec="seconds"),
            "finished": datetime.now().isoformat(timespec="seconds"),
            "config": cfg.to_dict(),
            "genes": {
                "loaded": int(self.raw.n_features),
                "after_filter": int(self.filtered.n_features),
                "removed": int(self.raw.n_features - self.filtered.n_features),
            },
            "samples": int(self.raw.n_samples),
            "filter": {
                "parameters": self.filter_result.parameters,
                "strata": self.filter_result.stratum_stats,
            },
            "normalization": {
                "method": self.norm_result.method,
                "reference_sample": (
                    str(self.normalized.sample_ids[self.norm_result.ref_column])
                    if self.norm_result.ref_column is not None else None
                ),
            },
            "mds": {
                "var_explained": self.mds_result.var_explained[:2],
                "top": self.mds_result.top,
            },
            "comparisons": comparisons,
            "files": files,
        }
        write_run_summary(summary, out / "run_summary.json")
        return summary

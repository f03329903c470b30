"""
Figures for the differential expression analysis.

Each plot answers one question about a step of the pipeline:

plot_mds:              Do samples cluster by experimental factor?
plot_mean_variance:    Is the voom mean-variance trend well behaved?
plot_md:               Which genes change, at what expression level?
plot_volcano:          How large and how significant are the changes?
plot_pvalue_histogram: Is there signal at all (excess of small p-values)?

Color is semantic: up-regulated red, down-regulated blue, not significant gray.
"""

from __future__ import annotations

from typing import Literal, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
import seaborn as sns
from adjustText import adjust_text

from compatde.stats.linear_model import LinearModelFit
from compatde.stats.mds import MDSResult
from compatde.stats.voom import VoomResult
from compatde.viz.core import Figure
from compatde.viz.styles import Palette, PALETTES, configure_style, markers_for


class DifferentialPlotter:
    """
    Plots for sample structure and per-contrast results.

    Usage:
        plotter = DifferentialPlotter()
        fig = plotter.plot_mds(mds_result, matrix.sample_metadata, color_by="compatibility")
        fig.save("mds.png")

        fig = plotter.plot_volcano(top_table(fit, coef="pollination"), p_value=0.05)
        fig.save("volcano_pollination.png")
    """

    def __init__(
        self,
        palette: str | Palette = "default",
        style: Literal["paper", "presentation", "notebook"] = "paper",
    ):
        if isinstance(palette, str):
            self.palette = PALETTES.get(palette, PALETTES["default"])
        else:
            self.palette = palette
        self.style = style
        configure_style(style=style, palette=self.palette)

        self.font_sizes = {
            "paper": {"title": 12, "label": 10, "tick": 9, "annotation": 7},
            "presentation": {"title": 18, "label": 14, "tick": 12, "annotation": 10},
            "notebook": {"title": 12, "label": 10, "tick": 8, "annotation": 7},
        }[style]

    def _direction_colors(self, direction: np.ndarray) -> list[str]:
        lookup = {1: self.palette.up, -1: self.palette.down, 0: self.palette.neutral}
        return [lookup[int(d)] for d in direction]

    def _direction_legend(self, ax, n_up: int, n_down: int) -> None:
        handles = [
            mpatches.Patch(color=self.palette.up, label=f"Up ({n_up})"),
            mpatches.Patch(color=self.palette.down, label=f"Down ({n_down})"),
            mpatches.Patch(color=self.palette.neutral, label="Not significant"),
        ]
        ax.legend(handles=handles, loc="best", fontsize=self.font_sizes["annotation"])

    # =========================================================================
    # Sample structure
    # =========================================================================

    def plot_mds(
        self,
        mds_result: MDSResult,
        metadata: pd.DataFrame,
        color_by: str,
        shape_by: Optional[str] = None,
        label: bool = False,
        title: str = "MDS of samples",
        figsize: tuple[float, float] = (7, 6),
    ) -> Figure:
        """
        Scatter of MDS coordinates, colored (and optionally shaped) by factors.

        Args:
            mds_result: Result of plot_mds_coordinates()
            metadata: Sample metadata indexed by sample ID
            color_by: Metadata column mapped to color
            shape_by: Metadata column mapped to marker shape
            label: Write the sample ID next to each point
            title: Plot title
            figsize: Figure dimensions

        Raises:
            ValueError: If a column is missing from the metadata
        """
        for col in [color_by, shape_by]:
            if col is not None and col not in metadata.columns:
                raise ValueError(
                    f"Column '{col}' not in sample metadata. Available: {list(metadata.columns)}"
                )

        coords = mds_result.coords
        x_col, y_col = coords.columns
        factor_cols = list(dict.fromkeys(c for c in (color_by, shape_by) if c))
        df = coords.join(metadata.loc[coords.index, factor_cols])

        color_levels = list(pd.unique(df[color_by].astype(str)))
        df[color_by] = df[color_by].astype(str)
        colors = self.palette.for_groups(color_levels)

        fig, ax = plt.subplots(figsize=figsize)
        scatter_kwargs = {}
        if shape_by is not None:
            df[shape_by] = df[shape_by].astype(str)
            shape_levels = list(pd.unique(df[shape_by]))
            scatter_kwargs = {"style": shape_by, "markers": markers_for(shape_levels), "style_order": shape_levels}

        sns.scatterplot(
            data=df, x=x_col, y=y_col,
            hue=color_by, hue_order=color_levels, palette=colors,
            s=70, edgecolor="white", linewidth=0.5, ax=ax,
            **scatter_kwargs,
        )

        if label:
            texts = [
                ax.text(row[x_col], row[y_col], str(sample_id), fontsize=self.font_sizes["annotation"])
                for sample_id, row in df.iterrows()
            ]
            adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle="-", color="#94a3b8", lw=0.5))

        ax.set_xlabel(mds_result.axis_label(0), fontsize=self.font_sizes["label"])
        ax.set_ylabel(mds_result.axis_label(1), fontsize=self.font_sizes["label"])
        ax.set_title(title, fontsize=self.font_sizes["title"], fontweight="bold")
        ax.legend(loc="best", fontsize=self.font_sizes["annotation"])

        fig.tight_layout()

        return Figure(
            fig=fig,
            title="MDS",
            description=f"Leading log-FC MDS ({mds_result.gene_selection}, top {mds_result.top} genes)",
            metadata={"color_by": color_by, "shape_by": shape_by, "n_samples": len(df)},
        )

    def plot_mean_variance(
        self,
        voom_result: VoomResult,
        title: str = "voom: Mean-variance trend",
        figsize: tuple[float, float] = (7, 5),
    ) -> Figure:
        """Square-root residual SD against average log-count with the lowess trend."""
        trend = voom_result.trend

        fig, ax = plt.subplots(figsize=figsize)
        ax.scatter(trend.sx, trend.sy, s=3, color="#1e293b", alpha=0.4, linewidths=0, rasterized=True)
        ax.plot(trend.line_x, trend.line_y, color=self.palette.trend, linewidth=1.5)

        ax.set_xlabel(r"log$_2$(count size + 0.5)", fontsize=self.font_sizes["label"])
        ax.set_ylabel(r"Sqrt(standard deviation)", fontsize=self.font_sizes["label"])
        ax.set_title(title, fontsize=self.font_sizes["title"], fontweight="bold")

        fig.tight_layout()

        return Figure(
            fig=fig,
            title="Mean-variance trend",
            description="voom mean-variance trend used for the precision weights",
            metadata={"n_genes": int(trend.sx.size)},
        )

    # =========================================================================
    # Per-contrast results
    # =========================================================================

    def plot_md(
        self,
        fit: LinearModelFit,
        coef: int | str,
        decisions: Optional[pd.DataFrame] = None,
        title: Optional[str] = None,
        figsize: tuple[float, float] = (7, 5),
    ) -> Figure:
        """
        Mean-difference plot: log-fold-change against average log-expression.

        Args:
            fit: Fit after contrasts_fit()/e_bayes()
            coef: Contrast to plot
            decisions: Output of decide_tests(); colors significant genes
        """
        j = fit.coef_index(coef)
        name = fit.coef_names[j]
        logfc = fit.coefficients[:, j]

        if decisions is not None:
            direction = decisions[name].to_numpy()
        else:
            direction = np.zeros(len(logfc), dtype=int)

        order = np.argsort(np.abs(direction), kind="stable")

        fig, ax = plt.subplots(figsize=figsize)
        ax.scatter(
            fit.Amean[order], logfc[order],
            c=np.array(self._direction_colors(direction))[order],
            s=np.where(direction[order] != 0, 8, 3),
            alpha=0.7, linewidths=0, rasterized=True,
        )
        ax.axhline(0, color="#64748b", linewidth=0.8)

        ax.set_xlabel("Average log-expression", fontsize=self.font_sizes["label"])
        ax.set_ylabel(r"log$_2$ fold change", fontsize=self.font_sizes["label"])
        ax.set_title(title or name, fontsize=self.font_sizes["title"], fontweight="bold")
        self._direction_legend(ax, int((direction == 1).sum()), int((direction == -1).sum()))

        fig.tight_layout()

        return Figure(
            fig=fig,
            title=f"MD plot: {name}",
            description=f"Mean-difference plot for contrast {name}",
            metadata={"contrast": name},
        )

    def plot_volcano(
        self,
        table: pd.DataFrame,
        lfc: float = 0.0,
        p_value: float = 0.05,
        n_labels: int = 10,
        title: str = "Volcano plot",
        figsize: tuple[float, float] = (7, 6),
    ) -> Figure:
        """
        log-fold-change against -log10(p-value).

        Genes with adj.P.Val < p_value and |logFC| >= lfc are colored; the
        n_labels most significant of them are labelled with their gene ID.

        Args:
            table: Single-contrast output of top_table()
            lfc: Fold-change threshold (log2 scale)
            p_value: Adjusted p-value threshold
            n_labels: Number of genes to label
            title: Plot title
        """
        required = {"logFC", "P.Value", "adj.P.Val"}
        missing = required - set(table.columns)
        if missing:
            raise ValueError(f"Table is missing columns: {sorted(missing)}")

        df = table.copy()
        df["neglog10p"] = -np.log10(df["P.Value"].clip(lower=1e-300))
        significant = (df["adj.P.Val"] < p_value) & (df["logFC"].abs() >= lfc)
        direction = np.where(significant, np.sign(df["logFC"]), 0).astype(int)

        order = np.argsort(np.abs(direction), kind="stable")

        fig, ax = plt.subplots(figsize=figsize)
        ax.scatter(
            df["logFC"].to_numpy()[order], df["neglog10p"].to_numpy()[order],
            c=np.array(self._direction_colors(direction))[order],
            s=np.where(direction[order] != 0, 10, 4),
            alpha=0.7, linewidths=0, rasterized=True,
        )

        if lfc > 0:
            for x in (-lfc, lfc):
                ax.axvline(x, color=self.palette.highlight, linestyle="--", linewidth=1, alpha=0.7)

        texts = []
        for gene, row in df[significant].nsmallest(n_labels, "P.Value").iterrows():
            texts.append(ax.text(
                row["logFC"], row["neglog10p"], str(gene),
                fontsize=self.font_sizes["annotation"],
                color="#1e293b",
            ))
        if texts:
            adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle="-", color="#94a3b8", lw=0.5))

        ax.set_xlabel(r"log$_2$ fold change", fontsize=self.font_sizes["label"])
        ax.set_ylabel(r"-log$_{10}$(p-value)", fontsize=self.font_sizes["label"])
        ax.set_title(title, fontsize=self.font_sizes["title"], fontweight="bold")
        self._direction_legend(ax, int((direction == 1).sum()), int((direction == -1).sum()))

        fig.tight_layout()

        return Figure(
            fig=fig,
            title="Volcano plot",
            description=f"Volcano plot (adj.P.Val < {p_value}, |logFC| >= {lfc})",
            metadata={"n_significant": int(significant.sum()), "n_genes": len(df)},
        )

    def plot_pvalue_histogram(
        self,
        table: pd.DataFrame,
        title: str = "P-value distribution",
        bins: int = 50,
        figsize: tuple[float, float] = (6, 4),
    ) -> Figure:
        """Histogram of raw p-values; a uniform shape means no signal."""
        pvals = table["P.Value"].dropna()

        fig, ax = plt.subplots(figsize=figsize)
        ax.hist(pvals, bins=np.linspace(0, 1, bins + 1), color=self.palette.neutral,
                edgecolor="white", linewidth=0.5)
        if len(pvals):
            ax.axhline(len(pvals) / bins, color=self.palette.highlight, linestyle="--",
                       linewidth=1, label="Uniform expectation")
            ax.legend(loc="upper right", fontsize=self.font_sizes["annotation"])

        ax.set_xlabel("P-value", fontsize=self.font_sizes["label"])
        ax.set_ylabel("Number of genes", fontsize=self.font_sizes["label"])
        ax.set_title(title, fontsize=self.font_sizes["title"], fontweight="bold")

        fig.tight_layout()

        return Figure(
            fig=fig,
            title="P-value histogram",
            description="Distribution of raw moderated t-test p-values",
            metadata={"n_genes": int(len(pvals)), "n_p_below_0_05": int((pvals < 0.05).sum())},
        )

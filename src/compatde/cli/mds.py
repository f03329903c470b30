"""
MDS plot of the samples.

Rounds and filters the counts, computes TMM factors, then plots the leading
log-fold-change MDS of log-CPM values colored (and optionally shaped) by
metadata columns.

Usage:
    compatde mds --counts counts.txt --metadata samples.csv --sample-column sample \\
        --color-by compatibility --shape-by stage --output mds.png
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from compatde.cli._validators import _non_negative_float, _positive_float, _positive_int

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the mds subcommand to the parser."""
    parser = subparsers.add_parser(
        "mds",
        help="MDS plot of the samples",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--counts", type=Path, required=True,
                        help="Whitespace-delimited gene x sample count matrix")
    parser.add_argument("--metadata", "-m", type=Path, required=True,
                        help="Sample metadata CSV")
    parser.add_argument("--sample-column", default=None,
                        help="Metadata column holding sample IDs (default: rows in column order)")
    parser.add_argument("--color-by", required=True,
                        help="Metadata column mapped to color")
    parser.add_argument("--shape-by", default=None,
                        help="Metadata column mapped to marker shape")
    parser.add_argument("--top", type=_positive_int, default=500,
                        help="Genes used per pairwise distance (default: 500)")
    parser.add_argument("--gene-selection", choices=["pairwise", "common"], default="pairwise",
                        help="Top genes per pair or common to all pairs (default: pairwise)")
    parser.add_argument("--min-cpm", type=_non_negative_float, default=0.5,
                        help="Filter: CPM a sample must exceed (default: 0.5)")
    parser.add_argument("--min-samples", type=_positive_int, default=12,
                        help="Filter: samples that must exceed --min-cpm (default: 12)")
    parser.add_argument("--prior-count", type=_positive_float, default=2.0,
                        help="Prior count for log-CPM (default: 2)")
    parser.add_argument("--label", action="store_true",
                        help="Label points with sample IDs")
    parser.add_argument("--output", "-o", type=Path, required=True,
                        help="Output figure (.png, .pdf or .svg)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    parser.set_defaults(func=run_mds)


def run_mds(args: argparse.Namespace) -> int:
    """Execute the MDS plot."""
    import matplotlib
    matplotlib.use("Agg")

    import pandas as pd

    from compatde.cli import configure_logging
    from compatde.io import load_experiment
    from compatde.quality import CpmFilter, RoundCounts
    from compatde.stats import TMMNormalization, log_cpm, plot_mds_coordinates
    from compatde.viz import DifferentialPlotter

    configure_logging(args.verbose)

    try:
        matrix = load_experiment(args.counts, args.metadata, sample_column=args.sample_column)
        matrix = CpmFilter(min_cpm=args.min_cpm, min_samples=args.min_samples)(RoundCounts()(matrix))
        matrix = TMMNormalization()(matrix)

        expr = pd.DataFrame(
            log_cpm(matrix, prior_count=args.prior_count),
            index=matrix.feature_ids,
            columns=matrix.sample_ids,
        )
        result = plot_mds_coordinates(expr, top=args.top, gene_selection=args.gene_selection)

        figure = DifferentialPlotter().plot_mds(
            result,
            matrix.sample_metadata,
            color_by=args.color_by,
            shape_by=args.shape_by,
            label=args.label,
        )
        try:
            figure.save(args.output)
        finally:
            figure.close()
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"MDS failed: {e}")
        return 1

    print(f"MDS of {matrix.n_samples} samples ({matrix.n_features} genes) -> {args.output}")
    return 0

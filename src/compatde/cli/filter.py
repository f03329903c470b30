"""
Round a count matrix and remove lowly expressed genes.

Usage:
    compatde filter --counts counts.txt --output filtered.tsv
    compatde filter --counts counts.txt --output filtered.tsv \\
        --metadata samples.csv --sample-column sample --stratify-by compatibility pollen
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from compatde.cli._validators import _non_negative_float, _positive_int

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the filter subcommand to the parser."""
    parser = subparsers.add_parser(
        "filter",
        help="Round counts and filter lowly expressed genes",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--counts", type=Path, required=True,
                        help="Whitespace-delimited gene x sample count matrix")
    parser.add_argument("--metadata", "-m", type=Path, default=None,
                        help="Sample metadata CSV (needed for --stratify-by)")
    parser.add_argument("--sample-column", default=None,
                        help="Metadata column holding sample IDs (default: rows in column order)")
    parser.add_argument("--output", "-o", type=Path, required=True,
                        help="Output table (tab-separated)")
    parser.add_argument("--min-cpm", type=_non_negative_float, default=0.5,
                        help="CPM a sample must exceed (default: 0.5)")
    parser.add_argument("--min-samples", type=_positive_int, default=12,
                        help="Samples that must exceed --min-cpm (default: 12)")
    parser.add_argument("--stratify-by", nargs="+", default=None,
                        help="Keep genes passing within any group of these metadata columns")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    parser.set_defaults(func=run_filter)


def run_filter(args: argparse.Namespace) -> int:
    """Execute rounding and filtering."""
    from compatde.cli import configure_logging
    from compatde.io import load_count_matrix, load_experiment, write_matrix
    from compatde.quality import CpmFilter, RoundCounts

    configure_logging(args.verbose)

    if args.stratify_by and args.metadata is None:
        logger.error("--stratify-by requires --metadata")
        return 1

    try:
        if args.metadata is not None:
            matrix = load_experiment(args.counts, args.metadata, sample_column=args.sample_column)
        else:
            matrix = load_count_matrix(args.counts)

        rounded = RoundCounts()(matrix)
        filtered = CpmFilter(
            min_cpm=args.min_cpm,
            min_samples=args.min_samples,
            stratify_by=args.stratify_by,
        )(rounded)
        write_matrix(filtered, args.output)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Filtering failed: {e}")
        return 1

    print(f"Kept {filtered.n_features} of {matrix.n_features} genes "
          f"({matrix.n_samples} samples) -> {args.output}")
    return 0

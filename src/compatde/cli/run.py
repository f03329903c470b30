"""
Full differential expression analysis from a config file.

Usage:
    compatde run --config analysis.yaml
    compatde run --config analysis.yaml --counts other_counts.txt --alpha 0.01

Steps: round counts, CPM filter, TMM, MDS of all samples, then for every
comparison: subset samples, TMM, voom, linear model, contrasts, empirical
Bayes, top tables, decisions and plots. Results go to the output directory
together with run_summary.json and the resolved config.
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path

from compatde.cli._validators import _non_negative_float, _positive_int, _probability

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the run subcommand to the parser."""
    parser = subparsers.add_parser(
        "run",
        help="Full analysis from a YAML/JSON config",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config", "-c",
        type=Path,
        required=True,
        help="Analysis config (.yaml, .yml or .json)",
    )

    # Overrides: default None so only explicitly given values replace the config
    parser.add_argument("--counts", type=Path, default=None,
                        help="Count matrix (overrides config 'counts')")
    parser.add_argument("--metadata", "-m", type=Path, default=None,
                        help="Sample metadata CSV (overrides config 'metadata')")
    parser.add_argument("--sample-column", default=None,
                        help="Metadata column holding sample IDs")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory (overrides config 'output')")
    parser.add_argument("--min-cpm", type=_non_negative_float, default=None,
                        help="CPM a sample must exceed to count as expressing a gene")
    parser.add_argument("--min-samples", type=_positive_int, default=None,
                        help="Samples that must exceed --min-cpm")
    parser.add_argument("--alpha", type=_probability, default=None,
                        help="Adjusted p-value threshold for significance")
    parser.add_argument("--lfc", type=_non_negative_float, default=None,
                        help="Minimum absolute log2 fold change for significance")
    parser.add_argument("--plot-format", choices=["png", "pdf", "svg"], default=None,
                        help="Figure format")
    parser.add_argument("--no-plots", action="store_true",
                        help="Write tables only")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")

    parser.set_defaults(func=run_analysis)


def run_analysis(args: argparse.Namespace) -> int:
    """Execute the full analysis."""
    import matplotlib
    matplotlib.use("Agg")

    from compatde.analysis import DifferentialExpressionAnalysis
    from compatde.cli import configure_logging
    from compatde.cli.config import load_config, merge_config_with_args, validate_config
    from compatde.utils.fileio import atomic_write_yaml

    configure_logging(args.verbose)

    print("=" * 70)
    print("  compatde: differential expression analysis")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print()

    try:
        config = validate_config(merge_config_with_args(load_config(args.config), args))
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    print(f"Counts:      {config.counts}")
    print(f"Metadata:    {config.metadata}")
    print(f"Output:      {config.output}")
    print(f"Comparisons: {', '.join(c.name for c in config.comparisons) or '(none)'}")
    print()

    analysis = DifferentialExpressionAnalysis(config)
    try:
        summary = analysis.run(make_plots=not args.no_plots)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Analysis failed: {e}")
        return 1

    atomic_write_yaml(Path(config.output) / "config_used.yaml", config.to_dict())

    print()
    print("=" * 70)
    print("  Summary")
    print("=" * 70)
    genes = summary["genes"]
    print(f"Genes: {genes['loaded']} loaded, {genes['after_filter']} after filtering")
    for name, comparison in summary["comparisons"].items():
        print(f"{name} ({comparison['n_samples']} samples)")
        for contrast, counts in comparison["contrasts"].items():
            print(f"  {contrast:<30} up {counts['up']:>6}  down {counts['down']:>6}")
    print(f"\nResults written to {config.output}")

    return 0

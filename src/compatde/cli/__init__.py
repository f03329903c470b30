"""
compatde CLI - differential expression of pollination RNA-seq counts.

Commands:
    compatde run     - Full analysis from a YAML/JSON config
    compatde filter  - Round and filter a count matrix
    compatde mds     - MDS plot of the samples
"""

import argparse
import logging
import sys
from typing import Optional, List

from compatde import __version__

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(verbose: bool = False) -> None:
    """Route library logging to stderr at INFO (DEBUG with --verbose)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        force=True,
    )
    # Font and backend chatter is noise at DEBUG
    logging.getLogger("matplotlib").setLevel(logging.WARNING)


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for compatde."""
    parser = argparse.ArgumentParser(
        prog="compatde",
        description="Differential expression analysis of pollination RNA-seq count data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run      Full analysis (filter, TMM, voom, limma contrasts, plots)
  filter   Round counts and remove lowly expressed genes
  mds      Multidimensional scaling plot of the samples

Examples:
  compatde run --config analysis.yaml
  compatde run --config analysis.yaml --alpha 0.01 --output results/strict
  compatde filter --counts counts.txt --output filtered.tsv --min-samples 6
  compatde mds --counts counts.txt --metadata samples.csv --sample-column sample \\
      --color-by compatibility --shape-by stage --output mds.png
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from compatde.cli import filter as filter_command
    from compatde.cli import mds, run
    run.register_parser(subparsers)
    filter_command.register_parser(subparsers)
    mds.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())

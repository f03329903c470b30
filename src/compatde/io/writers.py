"""
Writers for analysis results.

Tables are written as CSV so they open directly in R, Excel or pandas; the
run summary is JSON written atomically.

Examples:
    >>> from pathlib import Path
    >>> from compatde.io.writers import write_top_table
    >>> write_top_table(table, Path("results/stage1/C.P_vs_C.U.csv"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
import pandas as pd

from compatde.core.countmatrix import CountMatrix
from compatde.utils.fileio import atomic_write_json

logger = logging.getLogger(__name__)

__all__ = [
    'write_top_table',
    'write_decide_summary',
    'write_matrix',
    'write_norm_factors',
    'write_run_summary',
]


def _prepare(path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_top_table(table: pd.DataFrame, path: Path | str) -> Path:
    """Write a top table with the gene ID as first column."""
    path = _prepare(path)
    table.to_csv(path, index=True, index_label="gene_id")
    logger.info(f"Wrote {len(table)} genes to {path}")
    return path


def write_decide_summary(summary: pd.DataFrame, path: Path | str) -> Path:
    """Write the Down/NotSig/Up counts per contrast."""
    path = _prepare(path)
    summary.to_csv(path, index=True)
    logger.info(f"Wrote decision summary to {path}")
    return path


def write_matrix(matrix: CountMatrix, path: Path | str, sep: str = "\t") -> Path:
    """
    Write counts as a delimited genes × samples table.

    The first header field is "gene_id", so the file reads back with
    load_count_matrix().
    """
    path = _prepare(path)
    matrix.to_frame().to_csv(path, sep=sep, index=True, index_label="gene_id")
    logger.info(f"Wrote {matrix.n_features} × {matrix.n_samples} matrix to {path}")
    return path


def write_norm_factors(matrix: CountMatrix, path: Path | str) -> Path:
    """Write library sizes and normalization factors per sample."""
    path = _prepare(path)
    df = pd.DataFrame(
        {
            "lib_size": matrix.lib_sizes,
            "norm_factor": matrix.norm_factors,
            "effective_lib_size": matrix.effective_lib_sizes,
        },
        index=matrix.sample_ids,
    )
    df = df.join(matrix.sample_metadata)
    df.to_csv(path, index=True, index_label="sample")
    return path


def write_run_summary(summary: dict[str, Any], path: Path | str) -> Path:
    """Write the run summary JSON atomically."""
    path = _prepare(path)
    atomic_write_json(path, summary)
    logger.info(f"Wrote run summary to {path}")
    return path

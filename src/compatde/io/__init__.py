"""
I/O for count matrices, sample sheets and analysis results.

Key Functions:
    - load_count_matrix: whitespace-delimited gene × sample counts
    - load_sample_metadata: comma-delimited sample sheet
    - align_metadata / load_experiment: attach metadata aligned to columns
    - write_top_table, write_decide_summary, write_matrix, write_run_summary

Examples:
    >>> from compatde.io import load_experiment
    >>> matrix = load_experiment("counts.txt", "samples.csv", sample_column="sample")
    >>> print(f"Loaded {matrix.n_features} genes x {matrix.n_samples} samples")
"""

from compatde.io.loaders import (
    load_count_matrix,
    load_sample_metadata,
    align_metadata,
    load_experiment,
)
from compatde.io.writers import (
    write_top_table,
    write_decide_summary,
    write_matrix,
    write_norm_factors,
    write_run_summary,
)

__all__ = [
    'load_count_matrix',
    'load_sample_metadata',
    'align_metadata',
    'load_experiment',
    'write_top_table',
    'write_decide_summary',
    'write_matrix',
    'write_norm_factors',
    'write_run_summary',
]

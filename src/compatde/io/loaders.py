"""
Loaders for count matrices and sample sheets.

Biological Context:
    Transcript quantifiers (RSEM, salmon, kallisto) and their summarizing
    scripts emit a gene x sample table of estimated counts, often written by R
    with `write.table`, i.e. whitespace-delimited with a header that has one
    field fewer than the data rows:

    ```
    stigma_C_U_1 stigma_C_P_1 stigma_I_P_1
    AT1G01010 612.00 1056.37 830.1
    AT1G01020 0.00 1.98 0
    ```

    The experimental design lives in a separate comma-delimited sample sheet:

    ```
    sample,compatibility,pollen,stage
    stigma_C_U_1,compatible,unpollinated,stage1
    ```

Engineering Design:
    - Accepts both header layouts (with or without a gene-id header field)
    - Clear validation messages for malformed files
    - Metadata is aligned to the count columns, never the other way round,
      so the column order of the count table is the order of the analysis
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
import warnings
import numpy as np
import pandas as pd

from compatde.core.countmatrix import CountMatrix

logger = logging.getLogger(__name__)

__all__ = [
    'load_count_matrix',
    'load_sample_metadata',
    'align_metadata',
    'load_experiment',
]


def load_count_matrix(path: Path | str, sep: str = r"\s+") -> CountMatrix:
    """
    Load a whitespace-delimited gene × sample count matrix.

    Args:
        path: Path to the count table
        sep: Field separator (regex); whitespace by default

    Returns:
        CountMatrix with float counts and empty sample metadata

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the table is empty, non-numeric, has negative or
            infinite values, or duplicate sample IDs
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        # A header one field shorter than the rows makes pandas use the
        # first column as the index on its own
        df = pd.read_csv(path, sep=sep)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Count matrix is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"Failed to parse count matrix {path}: {e}") from e

    if isinstance(df.index, pd.RangeIndex):
        if df.shape[1] < 2:
            raise ValueError(f"Count matrix has no sample columns: {path}")
        df = df.set_index(df.columns[0])

    if df.shape[0] == 0:
        raise ValueError(f"Count matrix contains no genes (rows): {path}")
    if df.shape[1] == 0:
        raise ValueError(f"Count matrix contains no samples (columns): {path}")

    df.index = df.index.astype(str)
    df.index.name = None
    df.columns = df.columns.astype(str)

    if df.columns.duplicated().any():
        dups = df.columns[df.columns.duplicated()].tolist()
        raise ValueError(f"Duplicate sample IDs in count matrix: {dups[:5]}")

    if df.index.duplicated().any():
        n_duplicates = int(df.index.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate gene IDs in {path.name}; "
            "rows are kept as separate genes.",
            UserWarning,
        )

    try:
        data = df.to_numpy(dtype=np.float64)
    except (ValueError, TypeError) as e:
        bad = []
        for col in df.columns:
            coerced = pd.to_numeric(df[col], errors="coerce")
            offending = df[col][coerced.isna() & df[col].notna()]
            for gene, val in offending.items():
                bad.append(f"gene '{gene}', sample '{col}': {val!r}")
                if len(bad) >= 5:
                    break
            if len(bad) >= 5:
                break
        raise ValueError(
            "Count matrix contains non-numeric values:\n"
            + "\n".join(f"  - {x}" for x in bad)
        ) from e

    if np.isnan(data).any():
        raise ValueError(
            f"Count matrix contains {int(np.isnan(data).sum())} missing values "
            "(rows with fewer fields than the header?)"
        )
    if np.isinf(data).any():
        raise ValueError(f"Count matrix contains {int(np.isinf(data).sum())} infinite values")
    if (data < 0).any():
        raise ValueError(f"Count matrix contains {int((data < 0).sum())} negative values")

    logger.info(f"Loaded count matrix: {data.shape[0]} genes × {data.shape[1]} samples from {path}")

    return CountMatrix(
        data=data,
        feature_ids=pd.Index(df.index),
        sample_ids=pd.Index(df.columns),
    )


def load_sample_metadata(
    path: Path | str,
    sample_column: Optional[str] = None,
) -> pd.DataFrame:
    """
    Load a comma-delimited sample sheet.

    All columns are read as strings: the experimental factors are categorical
    labels even when they look numeric (e.g., stage "1", "2").

    Args:
        path: Path to the CSV sample sheet
        sample_column: Column holding the sample IDs. When given it becomes
            the (unique) index; otherwise rows are matched to count columns
            by position.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the sheet is empty, the sample column is missing or
            contains duplicates
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Sample metadata not found: {path}")

    try:
        metadata = pd.read_csv(path, dtype=str, skipinitialspace=True)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Sample metadata is empty: {path}") from e

    if metadata.empty:
        raise ValueError(f"Sample metadata contains no rows: {path}")

    metadata.columns = [str(c).strip() for c in metadata.columns]
    metadata = metadata.apply(lambda col: col.str.strip())

    if sample_column is not None:
        if sample_column not in metadata.columns:
            raise ValueError(
                f"Sample column '{sample_column}' not found in {path.name}. "
                f"Available: {list(metadata.columns)}"
            )
        if metadata[sample_column].isna().any():
            raise ValueError(f"Sample column '{sample_column}' has missing values")
        if metadata[sample_column].duplicated().any():
            dups = metadata.loc[metadata[sample_column].duplicated(), sample_column].tolist()
            raise ValueError(f"Duplicate sample IDs in metadata: {dups[:5]}")
        metadata = metadata.set_index(sample_column)
        metadata.index.name = None
        metadata.attrs["positional"] = False
    else:
        metadata.attrs["positional"] = True

    logger.info(f"Loaded sample metadata: {len(metadata)} samples, columns {list(metadata.columns)}")
    return metadata


def align_metadata(
    matrix: CountMatrix,
    metadata: pd.DataFrame,
    drop_unannotated: bool = False,
) -> CountMatrix:
    """
    Attach sample metadata to a count matrix, aligned to its columns.

    Indexed metadata is reordered to the column order of the matrix.
    Positional metadata (loaded without a sample column) is assigned to the
    columns in order and must have exactly one row per column.

    Args:
        matrix: Count matrix
        metadata: Sample sheet from load_sample_metadata()
        drop_unannotated: Remove count columns with no metadata row instead
            of raising

    Returns:
        New CountMatrix whose metadata rows line up with its columns

    Raises:
        ValueError: On row-count mismatch (positional) or unannotated samples
    """
    if metadata.attrs.get("positional", False):
        if len(metadata) != matrix.n_samples:
            raise ValueError(
                f"Positional metadata has {len(metadata)} rows but the count "
                f"matrix has {matrix.n_samples} columns"
            )
        aligned = metadata.copy()
        aligned.index = matrix.sample_ids
        aligned.attrs = {}
        return matrix.with_metadata(aligned)

    missing = matrix.sample_ids.difference(metadata.index, sort=False)
    if len(missing) > 0:
        if not drop_unannotated:
            raise ValueError(
                f"{len(missing)} samples in the count matrix have no metadata: "
                f"{list(missing[:5])}"
            )
        logger.warning(f"Dropping {len(missing)} unannotated samples: {list(missing[:5])}")
        matrix = matrix.select_samples(~matrix.sample_ids.isin(missing))

    extra = metadata.index.difference(matrix.sample_ids, sort=False)
    if len(extra) > 0:
        logger.info(f"Ignoring {len(extra)} metadata rows with no count column: {list(extra[:5])}")

    aligned = metadata.loc[matrix.sample_ids].copy()
    aligned.attrs = {}
    return matrix.with_metadata(aligned)


def load_experiment(
    counts_path: Path | str,
    metadata_path: Path | str,
    sample_column: Optional[str] = None,
    drop_unannotated: bool = False,
    sep: str = r"\s+",
) -> CountMatrix:
    """Load counts and sample sheet and align them."""
    matrix = load_count_matrix(counts_path, sep=sep)
    metadata = load_sample_metadata(metadata_path, sample_column=sample_column)
    return align_metadata(matrix, metadata, drop_unannotated=drop_unannotated)

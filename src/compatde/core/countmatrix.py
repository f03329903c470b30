"""
Core data structure for RNA-seq count matrices.

CountMatrix couples the gene x sample table of (estimated) counts with the
per-sample experimental annotations (compatibility genotype, pollen treatment,
developmental stage) and the library-size normalization factors computed for
the samples.

Biological Context:
    Count matrices from transcript quantifiers are the input of every
    differential expression analysis:
    - Rows = genes
    - Columns = samples (one library per biological replicate)
    - Values = estimated read counts (non-negative, possibly fractional)

    Sample annotations must stay aligned with the columns at all times:
    a metadata row describes exactly the column at the same position.
    Every subset operation therefore carries the metadata along.

Engineering Design:
    - Immutable: operations return new instances
    - NumPy arrays for numbers, pandas for identifiers and annotations
    - Constructor validates shape and alignment invariants
    - Normalization factors live next to the counts, as in edgeR's DGEList

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from compatde.core.countmatrix import CountMatrix
    >>>
    >>> data = np.array([[10, 20], [30, 40]], dtype=float)
    >>> sample_ids = pd.Index(["S1", "S2"])
    >>> matrix = CountMatrix(
    ...     data=data,
    ...     feature_ids=pd.Index(["AT1G01010", "AT1G01020"]),
    ...     sample_ids=sample_ids,
    ...     sample_metadata=pd.DataFrame({'pollen': ['U', 'P']}, index=sample_ids),
    ... )
    >>> pollinated = matrix.select_samples(matrix.sample_metadata['pollen'] == 'P')
"""

from __future__ import annotations

from typing import Optional
import numpy as np
import pandas as pd

__all__ = ['CountMatrix']


class CountMatrix:
    """
    Immutable container for a count matrix, sample annotations and norm factors.

    Attributes:
        data: Count matrix (genes × samples)
        feature_ids: Row identifiers (gene IDs)
        sample_ids: Column identifiers (library / sample IDs)
        sample_metadata: Experimental annotations, one row per sample
        norm_factors: Per-sample library-size scaling factors (TMM etc.)

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids (same order)
        - len(norm_factors) == n_samples, all factors positive
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: Optional[pd.DataFrame] = None,
        norm_factors: Optional[np.ndarray] = None,
    ):
        """
        Initialize CountMatrix with validation.

        Args:
            data: Count matrix (genes × samples)
            feature_ids: Gene identifiers
            sample_ids: Sample identifiers
            sample_metadata: DataFrame indexed by sample_ids (same order).
                If None, an empty frame indexed by sample_ids is used.
            norm_factors: Per-sample normalization factors. If None, all ones.

        Raises:
            TypeError: If argument types are wrong
            ValueError: If shapes are inconsistent or indices don't line up
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )

        # Positional alignment: metadata row i describes column i
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly and in order. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        if norm_factors is None:
            norm_factors = np.ones(n_samples, dtype=np.float64)
        else:
            norm_factors = np.asarray(norm_factors, dtype=np.float64)
            if norm_factors.shape != (n_samples,):
                raise ValueError(
                    f"norm_factors shape {norm_factors.shape} must be ({n_samples},)"
                )
            if not np.all(np.isfinite(norm_factors)) or np.any(norm_factors <= 0):
                raise ValueError("norm_factors must be finite and positive")

        self._data = data
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._norm_factors = norm_factors

    @property
    def data(self) -> np.ndarray:
        """Count matrix (genes × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        """Gene identifiers."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Sample identifiers."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Experimental annotations for samples."""
        return self._sample_metadata

    @property
    def norm_factors(self) -> np.ndarray:
        """Per-sample normalization factors."""
        return self._norm_factors

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def lib_sizes(self) -> np.ndarray:
        """Raw library sizes (column sums)."""
        return self._data.sum(axis=0)

    @property
    def effective_lib_sizes(self) -> np.ndarray:
        """Library sizes scaled by the normalization factors."""
        return self.lib_sizes * self._norm_factors

    def select_samples(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset matrix by samples (columns), keeping their original order.

        Args:
            mask: Boolean array/Series indicating which samples to keep.
                If Series, uses values and ignores index.

        Returns:
            New CountMatrix with selected samples, metadata and norm factors

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return CountMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.iloc[np.flatnonzero(mask)],
            norm_factors=self._norm_factors[mask],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset matrix by genes (rows).

        Args:
            mask: Boolean array/Series indicating which genes to keep.

        Returns:
            New CountMatrix with selected genes; columns untouched

        Raises:
            ValueError: If mask length doesn't match n_features
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return CountMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            norm_factors=self._norm_factors,
        )

    def with_data(self, data: np.ndarray) -> CountMatrix:
        """Return a new matrix with replaced values (same shape)."""
        if data.shape != self._data.shape:
            raise ValueError(f"data shape {data.shape} must match {self._data.shape}")
        return CountMatrix(
            data=data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            norm_factors=self._norm_factors,
        )

    def with_norm_factors(self, norm_factors: np.ndarray) -> CountMatrix:
        """Return a new matrix carrying the given normalization factors."""
        return CountMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            norm_factors=norm_factors,
        )

    def with_metadata(self, sample_metadata: pd.DataFrame) -> CountMatrix:
        """Return a new matrix with replaced sample annotations."""
        return CountMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata,
            norm_factors=self._norm_factors,
        )

    def to_frame(self) -> pd.DataFrame:
        """Counts as a genes × samples DataFrame."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def copy(self, deep: bool = True) -> CountMatrix:
        """
        Create a copy of this matrix.

        Args:
            deep: If True, copy all arrays. If False, share them.
        """
        if deep:
            return CountMatrix(
                data=self._data.copy(),
                feature_ids=self._feature_ids.copy(),
                sample_ids=self._sample_ids.copy(),
                sample_metadata=self._sample_metadata.copy(),
                norm_factors=self._norm_factors.copy(),
            )
        return CountMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            norm_factors=self._norm_factors,
        )

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"CountMatrix({self.n_features} genes × {self.n_samples} samples)"
        return (
            f"CountMatrix({self.n_features} genes × {self.n_samples} samples)\n"
            f"  Genes: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )

    def __str__(self) -> str:
        return self.__repr__()

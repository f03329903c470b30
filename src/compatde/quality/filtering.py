"""
Count preparation and low-expression filtering.

Provides the transformations applied to the full count matrix before any
model is fitted: rounding estimated counts to integers and removing genes
too lowly expressed to be tested. Implements the Transform interface so the
steps compose into a pipeline.

Engineering Design:
    - Pure functions (Transform): input matrix -> output matrix
    - Filters remove rows only; columns and their metadata are never touched
    - CPM thresholds use raw library sizes (column sums), computed internally
    - Stratified filtering keeps genes expressed in any one experimental group
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import numpy as np
import pandas as pd

from compatde.core.countmatrix import CountMatrix
from compatde.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['RoundCounts', 'CpmFilter', 'ExpressionByDesignFilter', 'ExpressionFilterResult']


@dataclass
class ExpressionFilterResult:
    """Results from expression filtering with full provenance."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    stratum_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)
    # stratum_stats format: {"compatible.pollinated": {"passed": 15000, "failed": 5000, "n_samples": 12}}
    parameters: Dict[str, Any] = field(default_factory=dict)
    keep_mask: Optional[np.ndarray] = None

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class RoundCounts(Transform):
    """
    Round estimated counts to integers.

    Transcript quantifiers report fractional expected counts; the count-based
    statistics expect integers. numpy rounds halves to the nearest even
    integer (2.5 -> 2, 3.5 -> 4).

    Examples:
        >>> rounded = RoundCounts()(matrix)
    """

    def __init__(self, decimals: int = 0):
        super().__init__(name="RoundCounts", params={"decimals": decimals})
        self.decimals = decimals

    def apply(self, matrix: CountMatrix) -> CountMatrix:
        rounded = np.round(matrix.data, self.decimals)
        n_changed = int(np.count_nonzero(rounded != matrix.data))
        logger.info(f"Rounded counts: {n_changed} of {matrix.data.size} values changed")
        return matrix.with_data(rounded)

    def validate(self, matrix: CountMatrix) -> list[str]:
        errors = super().validate(matrix)
        if np.any(matrix.data < 0):
            errors.append("Matrix contains negative values (expected counts)")
        return errors


def _raw_cpm(data: np.ndarray) -> np.ndarray:
    """CPM from raw column sums; empty libraries count as size one."""
    library_sizes = data.sum(axis=0)
    library_sizes[library_sizes == 0] = 1.0
    return (data / library_sizes[None, :]) * 1e6


class _ExpressionFilter(Transform):
    """Shared apply / get_passing_genes logic over a keep mask."""

    @abstractmethod
    def _compute_keep_mask(self, matrix: CountMatrix) -> tuple[np.ndarray, Dict[str, Dict[str, int]]]:
        """Boolean keep mask over genes plus per-stratum pass counts."""

    def apply(self, matrix: CountMatrix) -> CountMatrix:
        logger.info(f"Applying {self.name}: {self.params}")

        keep_mask, _ = self._compute_keep_mask(matrix)

        n_kept = int(keep_mask.sum())
        n_removed = matrix.n_features - n_kept
        logger.info(f"Filtering complete: Kept {n_kept}/{matrix.n_features} genes "
                    f"({100*n_kept/matrix.n_features:.1f}%), Removed {n_removed}")

        return matrix.select_features(keep_mask)

    def get_passing_genes(self, matrix: CountMatrix) -> ExpressionFilterResult:
        """
        Get genes passing the filter without subsetting the matrix.

        Args:
            matrix: CountMatrix with counts and sample_metadata

        Returns:
            ExpressionFilterResult with passed/failed genes and statistics
        """
        keep_mask, stratum_stats = self._compute_keep_mask(matrix)

        feature_ids = matrix.feature_ids
        result = ExpressionFilterResult(
            passed_genes=set(feature_ids[keep_mask]),
            failed_genes=set(feature_ids[~keep_mask]),
            stratum_stats=stratum_stats,
            parameters=dict(self.params),
            keep_mask=keep_mask,
        )

        logger.info(f"Gene filtering: {result.n_passed}/{matrix.n_features} "
                    f"genes passed ({result.pass_rate*100:.1f}%)")
        return result

    def validate(self, matrix: CountMatrix) -> list[str]:
        errors = super().validate(matrix)
        if np.any(matrix.data < 0):
            errors.append("Matrix contains negative values (expected counts for CPM calculation)")
        return errors


class CpmFilter(_ExpressionFilter):
    """
    Keep genes with CPM above a threshold in a minimum number of samples.

    A gene passes when the number of samples with CPM strictly greater than
    min_cpm is at least min_samples. The default (0.5 CPM in 12 samples)
    corresponds to about 10 reads at a depth of 20 million, in as many
    libraries as the smallest set of replicates compared.

    With stratify_by the rule is applied within each group defined by the
    metadata columns and a gene is kept if it passes in at least one group,
    so group-specific genes survive. Groups with fewer than min_samples
    samples cannot pass and are skipped.

    Params:
        min_cpm: CPM a sample must exceed to count as expressing the gene
        min_samples: Number of expressing samples required
        stratify_by: Metadata columns defining groups (None = all samples)

    Examples:
        >>> filtered = CpmFilter(min_cpm=0.5, min_samples=12)(rounded)
    """

    def __init__(
        self,
        min_cpm: float = 0.5,
        min_samples: int = 12,
        stratify_by: Optional[List[str]] = None,
    ):
        if min_cpm < 0:
            raise ValueError(f"min_cpm must be non-negative, got {min_cpm}")
        if min_samples < 1:
            raise ValueError(f"min_samples must be at least 1, got {min_samples}")
        super().__init__(
            name="CpmFilter",
            params={
                "min_cpm": min_cpm,
                "min_samples": min_samples,
                "stratify_by": stratify_by,
            }
        )
        self.min_cpm = min_cpm
        self.min_samples = min_samples
        self.stratify_by = list(stratify_by or [])

    def _compute_keep_mask(self, matrix: CountMatrix) -> tuple[np.ndarray, Dict[str, Dict[str, int]]]:
        """
        Core filtering logic: compute which genes to keep.

        Returns:
            keep_mask: Boolean array indicating which genes pass
            stratum_stats: Per-group statistics
        """
        cpm = _raw_cpm(matrix.data)
        expressed = cpm > self.min_cpm

        if not self.stratify_by:
            n_samples = matrix.n_samples
            if n_samples < self.min_samples:
                logger.warning(
                    f"Only {n_samples} samples but min_samples={self.min_samples}: no gene can pass"
                )
            keep_mask = expressed.sum(axis=1) >= self.min_samples
            stats = {
                "all": {
                    "passed": int(keep_mask.sum()),
                    "failed": int((~keep_mask).sum()),
                    "n_samples": int(n_samples),
                }
            }
            return keep_mask, stats

        missing_cols = [c for c in self.stratify_by if c not in matrix.sample_metadata.columns]
        if missing_cols:
            raise ValueError(f"Stratification columns not found in metadata: {missing_cols}")

        groups = matrix.sample_metadata[self.stratify_by].astype(str).agg('.'.join, axis=1)
        unique_groups = groups.unique()
        logger.info(f"Identified {len(unique_groups)} groups for stratification: {list(unique_groups)}")

        keep_mask = np.zeros(matrix.n_features, dtype=bool)
        stratum_stats: Dict[str, Dict[str, int]] = {}

        for group in unique_groups:
            group_samples_mask = (groups == group).values
            n_samples = int(group_samples_mask.sum())

            if n_samples < self.min_samples:
                logger.info(f"Skipping small group '{group}' (n={n_samples})")
                continue

            group_pass_mask = expressed[:, group_samples_mask].sum(axis=1) >= self.min_samples
            keep_mask |= group_pass_mask

            n_passed_in_group = int(group_pass_mask.sum())
            stratum_stats[group] = {
                "passed": n_passed_in_group,
                "failed": matrix.n_features - n_passed_in_group,
                "n_samples": n_samples,
            }
            logger.info(f"  Group '{group}' (n={n_samples}): {n_passed_in_group} genes passed")

        return keep_mask, stratum_stats


class ExpressionByDesignFilter(_ExpressionFilter):
    """
    Keep genes with enough reads in enough samples for the experimental design.

    The edgeR filterByExpr rule. The minimum sample size is the size of the
    smallest group (or all samples without groups); above large_n it is
    relaxed to large_n + (n - large_n) × min_prop. A gene passes when at least
    that many samples have CPM >= min_count / median(lib size) × 1e6 and its
    total count across all samples is at least min_total_count.

    Params:
        group: Metadata column(s) defining the groups
        min_count: Minimum count required in the median-sized library
        min_total_count: Minimum total count across samples
        large_n: Group size above which the requirement is relaxed
        min_prop: Fraction of samples beyond large_n that must pass
    """

    def __init__(
        self,
        group: Optional[Union[str, Sequence[str]]] = None,
        min_count: float = 10,
        min_total_count: float = 15,
        large_n: int = 10,
        min_prop: float = 0.7,
    ):
        if isinstance(group, str):
            group = [group]
        super().__init__(
            name="ExpressionByDesignFilter",
            params={
                "group": list(group) if group else None,
                "min_count": min_count,
                "min_total_count": min_total_count,
                "large_n": large_n,
                "min_prop": min_prop,
            }
        )
        self.group = list(group or [])
        self.min_count = min_count
        self.min_total_count = min_total_count
        self.large_n = large_n
        self.min_prop = min_prop

    def min_sample_size(self, matrix: CountMatrix) -> float:
        if self.group:
            missing_cols = [c for c in self.group if c not in matrix.sample_metadata.columns]
            if missing_cols:
                raise ValueError(f"Group columns not found in metadata: {missing_cols}")
            labels = matrix.sample_metadata[self.group].astype(str).agg('.'.join, axis=1)
            size = float(labels.value_counts().min())
        else:
            size = float(matrix.n_samples)

        if size > self.large_n:
            size = self.large_n + (size - self.large_n) * self.min_prop
        return size

    def _compute_keep_mask(self, matrix: CountMatrix) -> tuple[np.ndarray, Dict[str, Dict[str, int]]]:
        tol = 1e-14
        lib_sizes = matrix.effective_lib_sizes
        min_size = self.min_sample_size(matrix)

        median_lib = float(np.median(lib_sizes))
        if median_lib <= 0:
            raise ValueError("Median library size is zero")
        cpm_cutoff = self.min_count / median_lib * 1e6

        with np.errstate(divide="ignore", invalid="ignore"):
            cpm = matrix.data / lib_sizes[None, :] * 1e6

        keep_cpm = (cpm >= cpm_cutoff).sum(axis=1) >= (min_size - tol)
        keep_total = matrix.data.sum(axis=1) >= (self.min_total_count - tol)
        keep_mask = keep_cpm & keep_total

        logger.info(
            f"filterByExpr: CPM cutoff {cpm_cutoff:.3f} in >= {min_size:.1f} samples, "
            f"total count >= {self.min_total_count}"
        )
        stats = {
            "all": {
                "passed": int(keep_mask.sum()),
                "failed": int((~keep_mask).sum()),
                "n_samples": int(matrix.n_samples),
            }
        }
        return keep_mask, stats

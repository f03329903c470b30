"""
Library-size normalization for RNA-seq counts.

Implements the edgeR-style scaling approaches:
- TMM (trimmed mean of M-values): robust composition bias correction
- Upper quartile: scale by the 75th percentile of each library
- None: all factors equal to one

and the counts-per-million transformations used throughout the analysis.

The fundamental assumption underlying TMM is that most genes are not
differentially expressed between any two samples, so a trimmed, precision
weighted mean of the log expression ratios estimates the composition bias
between libraries.

References:
    - Robinson & Oshlack (2010) Genome Biology 11:R25 (TMM)
    - Bullard et al. (2010) BMC Bioinformatics 11:94 (upper quartile)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from numpy.typing import NDArray
from scipy.stats import rankdata

from compatde.core.countmatrix import CountMatrix
from compatde.core.transform import Transform

logger = logging.getLogger(__name__)


class NormalizationMethod(Enum):
    """Available normalization methods."""

    TMM = "TMM"
    UPPER_QUARTILE = "upperquartile"
    NONE = "none"

    @classmethod
    def parse(cls, value: str | NormalizationMethod) -> NormalizationMethod:
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(
            f"Unknown normalization method '{value}'. "
            f"Choose from: {', '.join(m.value for m in cls)}"
        )


@dataclass(frozen=True)
class NormalizationResult:
    """Result of a normalization factor computation.

    Attributes:
        norm_factors: Per-sample factors, scaled to geometric mean one
        method: Method used
        ref_column: Index of the TMM reference sample (None otherwise)
        diagnostics: Additional diagnostic information
    """

    norm_factors: NDArray[np.float64]
    method: str
    ref_column: int | None = None
    diagnostics: dict = field(default_factory=dict)


def cpm(
    counts: NDArray[np.float64],
    lib_sizes: NDArray[np.float64] | None = None,
    norm_factors: NDArray[np.float64] | None = None,
    log: bool = False,
    prior_count: float = 2.0,
) -> NDArray[np.float64]:
    """
    Counts per million, optionally on the log2 scale (edgeR cpm()).

    On the log scale the prior count is scaled by relative library size and
    the library sizes are augmented by twice the scaled prior, so that genes
    with zero counts get a finite value that does not depend on depth.

    Args:
        counts: 2D array (n_genes, n_samples)
        lib_sizes: Library sizes (default: column sums)
        norm_factors: Normalization factors (default: ones)
        log: Return log2-CPM
        prior_count: Average count added to each observation when log=True

    Returns:
        Array with the same shape as counts
    """
    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim != 2:
        raise ValueError(f"Expected 2D array, got {counts.ndim}D")

    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)
    lib = np.asarray(lib_sizes, dtype=np.float64)
    if norm_factors is not None:
        lib = lib * np.asarray(norm_factors, dtype=np.float64)

    if log:
        prior_scaled = lib / np.mean(lib) * prior_count
        lib_aug = (lib + 2.0 * prior_scaled) * 1e-6
        return np.log2((counts + prior_scaled[np.newaxis, :]) / lib_aug[np.newaxis, :])

    with np.errstate(divide="ignore", invalid="ignore"):
        return counts / lib[np.newaxis, :] * 1e6


def log_cpm(matrix: CountMatrix, prior_count: float = 2.0) -> NDArray[np.float64]:
    """Log2-CPM of a CountMatrix using its normalization factors."""
    return cpm(
        matrix.data,
        lib_sizes=matrix.lib_sizes,
        norm_factors=matrix.norm_factors,
        log=True,
        prior_count=prior_count,
    )


def _upper_quantile_ratio(counts: NDArray[np.float64], lib_sizes: NDArray[np.float64], p: float) -> NDArray[np.float64]:
    """p-quantile of each library divided by its size."""
    quantiles = np.quantile(counts, p, axis=0)
    if np.min(quantiles) == 0:
        logger.warning("One or more library quantiles are zero")
    return quantiles / lib_sizes


def _tmm_factor(
    obs: NDArray[np.float64],
    ref: NDArray[np.float64],
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
    do_weighting: bool,
    a_cutoff: float,
) -> float:
    """TMM scaling factor of one library against the reference library."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        # Asymptotic variance of the log ratio (delta method, binomial)
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r = log_r[finite]
    abs_e = abs_e[finite]
    v = v[finite]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r, method="average")
    rank_e = rankdata(abs_e, method="average")
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    with np.errstate(divide="ignore", invalid="ignore"):
        if do_weighting:
            f = np.nansum(log_r[keep] / v[keep]) / np.nansum(1.0 / v[keep])
        else:
            f = np.mean(log_r[keep]) if keep.any() else np.nan

    if not np.isfinite(f):
        f = 0.0

    return float(2.0 ** f)


def calc_norm_factors(
    counts: NDArray[np.float64],
    method: str | NormalizationMethod = NormalizationMethod.TMM,
    lib_sizes: NDArray[np.float64] | None = None,
    ref_column: int | None = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    p: float = 0.75,
) -> NormalizationResult:
    """
    Compute library-size normalization factors (edgeR calcNormFactors).

    Args:
        counts: 2D array (n_genes, n_samples) of raw counts
        method: "TMM", "upperquartile" or "none"
        lib_sizes: Library sizes (default: column sums)
        ref_column: Reference library for TMM (default: the library whose
            upper-quartile ratio is closest to the mean)
        logratio_trim: Fraction of M-values trimmed from each side
        sum_trim: Fraction of A-values trimmed from each side
        do_weighting: Use precision weights for the trimmed mean
        a_cutoff: Minimum A-value for genes entering the trimmed mean
        p: Quantile for the upper-quartile method and reference choice

    Returns:
        NormalizationResult; factors multiply to one

    Raises:
        ValueError: On non-2D input, negative or non-finite counts, or
            libraries with zero total count
    """
    method = NormalizationMethod.parse(method)
    counts = np.asarray(counts, dtype=np.float64)

    if counts.ndim != 2:
        raise ValueError(f"Expected 2D array, got {counts.ndim}D")
    if not np.all(np.isfinite(counts)) or np.any(counts < 0):
        raise ValueError("Counts must be finite and non-negative")

    n_samples = counts.shape[1]

    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)
    if np.any(lib_sizes <= 0):
        zero = np.flatnonzero(lib_sizes <= 0).tolist()
        raise ValueError(f"Libraries with zero total count cannot be normalized: columns {zero}")

    # Genes with zero counts in every library carry no information
    all_zero = ~(counts > 0).any(axis=1)
    x = counts[~all_zero, :]

    if x.shape[0] == 0 or n_samples == 1:
        method = NormalizationMethod.NONE

    ref = None
    diagnostics: dict = {"n_genes_used": int(x.shape[0])}

    if method is NormalizationMethod.NONE:
        factors = np.ones(n_samples)
    elif method is NormalizationMethod.UPPER_QUARTILE:
        factors = _upper_quantile_ratio(x, lib_sizes, p)
    else:
        if ref_column is None:
            f75 = _upper_quantile_ratio(x, lib_sizes, p)
            if np.median(f75) < 1e-20:
                ref = int(np.argmax(np.sqrt(x).sum(axis=0)))
            else:
                ref = int(np.argmin(np.abs(f75 - np.mean(f75))))
        else:
            if not 0 <= ref_column < n_samples:
                raise ValueError(f"ref_column {ref_column} out of range for {n_samples} samples")
            ref = int(ref_column)

        factors = np.array([
            _tmm_factor(
                obs=x[:, j],
                ref=x[:, ref],
                lib_obs=lib_sizes[j],
                lib_ref=lib_sizes[ref],
                logratio_trim=logratio_trim,
                sum_trim=sum_trim,
                do_weighting=do_weighting,
                a_cutoff=a_cutoff,
            )
            for j in range(n_samples)
        ])
        diagnostics["ref_column"] = ref

    # Factors multiply to one
    factors = factors / np.exp(np.mean(np.log(factors)))

    return NormalizationResult(
        norm_factors=factors,
        method=method.value,
        ref_column=ref,
        diagnostics=diagnostics,
    )


class TMMNormalization(Transform):
    """
    Attach library-size normalization factors to a CountMatrix.

    Counts are left untouched; downstream steps (CPM, voom, MDS) use the
    effective library sizes.

    Examples:
        >>> normalized = TMMNormalization()(filtered)
        >>> normalized.norm_factors
        array([0.98, 1.03, ...])
    """

    def __init__(self, method: str = "TMM", **kwargs):
        method_enum = NormalizationMethod.parse(method)
        super().__init__(
            name="TMMNormalization",
            params={"method": method_enum.value, **kwargs},
        )
        self.method = method_enum
        self.kwargs = kwargs
        self.last_result: NormalizationResult | None = None

    def apply(self, matrix: CountMatrix) -> CountMatrix:
        result = calc_norm_factors(matrix.data, method=self.method, **self.kwargs)
        self.last_result = result
        logger.info(
            f"Normalization ({result.method}): factors range "
            f"{result.norm_factors.min():.3f}-{result.norm_factors.max():.3f}"
            + (f", reference sample {matrix.sample_ids[result.ref_column]}"
               if result.ref_column is not None else "")
        )
        return matrix.with_norm_factors(result.norm_factors)

    def validate(self, matrix: CountMatrix) -> list[str]:
        errors = super().validate(matrix)
        if np.any(matrix.data < 0):
            errors.append("Matrix contains negative values (expected counts)")
        if np.any(matrix.lib_sizes <= 0):
            errors.append("Matrix contains libraries with zero total count")
        return errors

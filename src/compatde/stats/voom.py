"""
voom: precision weights for RNA-seq log-counts.

Log-CPM values of counts have a variance that depends strongly on the count
size. voom estimates that mean-variance relationship with a lowess trend of
the square-root residual standard deviation against average log-count, then
predicts a precision weight for every observation from its fitted count, so
that the weighted linear model treats low-count observations as noisier.

Reference:
    Law et al. (2014) Genome Biology 15:R29
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from statsmodels.nonparametric.smoothers_lowess import lowess

from compatde.core.countmatrix import CountMatrix
from compatde.stats.design_matrix import GroupDesign
from compatde.stats.linear_model import lm_fit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoomTrend:
    """Points and fitted line of the mean-variance trend.

    sx is the average log2 count, sy the square root of the residual
    standard deviation; (line_x, line_y) is the lowess curve.
    """

    sx: NDArray[np.float64]
    sy: NDArray[np.float64]
    line_x: NDArray[np.float64]
    line_y: NDArray[np.float64]

    def predict(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """Linear interpolation of the trend, constant beyond its range."""
        return np.interp(x, self.line_x, self.line_y)


@dataclass(frozen=True)
class VoomResult:
    """log-CPM values with observation-level precision weights.

    Attributes:
        E: log2-CPM (n_genes, n_samples)
        weights: precision weights, same shape as E
        design: design used to estimate the trend
        lib_sizes: effective library sizes used for E
        trend: mean-variance trend
        feature_ids: gene identifiers
        sample_ids: sample identifiers
    """

    E: NDArray[np.float64]
    weights: NDArray[np.float64]
    design: GroupDesign
    lib_sizes: NDArray[np.float64]
    trend: VoomTrend
    feature_ids: pd.Index
    sample_ids: pd.Index

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.E, index=self.feature_ids, columns=self.sample_ids)


def _lowess_line(x: NDArray[np.float64], y: NDArray[np.float64], span: float) -> tuple[NDArray, NDArray]:
    """Lowess fit collapsed to unique x values (tied x get the mean fit)."""
    delta = 0.01 * float(np.ptp(x))
    fitted = lowess(y, x, frac=span, it=3, delta=delta, return_sorted=True)
    line = pd.DataFrame(fitted, columns=["x", "y"]).groupby("x", sort=True)["y"].mean()
    return line.index.to_numpy(dtype=np.float64), line.to_numpy(dtype=np.float64)


def voom(
    matrix: CountMatrix,
    design: GroupDesign,
    span: float = 0.5,
    lib_sizes: NDArray[np.float64] | None = None,
) -> VoomResult:
    """
    Transform counts to log-CPM and estimate precision weights.

    Algorithm:
        1. E = log2((counts + 0.5) / (lib + 1) × 1e6)
        2. Unweighted per-gene linear fit of E on the design
        3. sx = Amean + mean(log2(lib + 1)) - log2(1e6),  sy = sqrt(sigma)
        4. Lowess of sy on sx over genes with any non-zero count
        5. Fitted log-counts from the fitted values; weight = 1 / trend(fit)^4

    Args:
        matrix: Count matrix (norm factors are used for the library sizes)
        design: Design for the samples of the matrix
        span: Lowess smoothing fraction
        lib_sizes: Library sizes (default: effective library sizes of matrix)

    Returns:
        VoomResult

    Raises:
        ValueError: If the design has no residual df, or fewer than three
            genes have non-zero counts
    """
    if not 0 < span <= 1:
        raise ValueError(f"span must be in (0, 1], got {span}")
    if design.n_samples != matrix.n_samples:
        raise ValueError(
            f"Design has {design.n_samples} rows but matrix has {matrix.n_samples} samples"
        )
    if design.df_residual < 1:
        raise ValueError("voom needs residual degrees of freedom (replicated groups)")

    counts = matrix.data
    if lib_sizes is None:
        lib_sizes = matrix.effective_lib_sizes
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)

    E = np.log2((counts + 0.5) / (lib_sizes + 1.0)[np.newaxis, :] * 1e6)

    fit = lm_fit(E, design, feature_ids=matrix.feature_ids)

    sx = fit.Amean + np.mean(np.log2(lib_sizes + 1.0)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma)

    usable = (counts.sum(axis=1) > 0) & np.isfinite(sy)
    if usable.sum() < 3:
        raise ValueError(
            f"Need at least 3 genes with non-zero counts to estimate the trend, got {int(usable.sum())}"
        )
    logger.debug(f"voom trend estimated from {int(usable.sum())} of {matrix.n_features} genes")

    line_x, line_y = _lowess_line(sx[usable], sy[usable], span)
    trend = VoomTrend(sx=sx[usable], sy=sy[usable], line_x=line_x, line_y=line_y)

    fitted_values = fit.fitted_values()
    fitted_cpm = 2.0 ** fitted_values
    fitted_count = 1e-6 * fitted_cpm * (lib_sizes + 1.0)[np.newaxis, :]
    fitted_logcount = np.log2(fitted_count)

    weights = 1.0 / trend.predict(fitted_logcount) ** 4

    logger.info(
        f"voom: {matrix.n_features} genes x {matrix.n_samples} samples, "
        f"weights {weights.min():.3g}-{weights.max():.3g}"
    )

    return VoomResult(
        E=E,
        weights=weights,
        design=design,
        lib_sizes=lib_sizes,
        trend=trend,
        feature_ids=matrix.feature_ids,
        sample_ids=matrix.sample_ids,
    )

"""
Multidimensional scaling of samples on log-expression.

Distances follow the "leading log-fold-change" definition: the distance
between two samples is the root-mean-square of the largest squared
log2-fold-changes between them. Coordinates come from classical (Torgerson)
MDS of the distance matrix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

GENE_SELECTIONS = ("pairwise", "common")


@dataclass(frozen=True)
class MDSResult:
    """Sample coordinates from classical MDS.

    Attributes:
        coords: DataFrame (samples × 2), columns named after the dimensions
        eigenvalues: All eigenvalues of the double-centered matrix, descending
        var_explained: Eigenvalues as a fraction of the positive total
        distance: Leading log-fold-change distances (samples × samples)
        dim: Dimensions shown in coords (1-based)
        top: Number of genes used per distance
        gene_selection: "pairwise" or "common"
    """

    coords: pd.DataFrame
    eigenvalues: NDArray[np.float64]
    var_explained: NDArray[np.float64]
    distance: pd.DataFrame
    dim: tuple[int, int]
    top: int
    gene_selection: str

    def axis_label(self, axis: int) -> str:
        d = self.dim[axis]
        return f"Leading logFC dim {d} ({100 * self.var_explained[d - 1]:.0f}%)"


def leading_logfc_distance(
    log_expr: NDArray[np.float64],
    top: int = 500,
    gene_selection: str = "pairwise",
) -> NDArray[np.float64]:
    """
    Pairwise leading log-fold-change distances between the columns.

    Args:
        log_expr: log2 expression (n_genes, n_samples), finite rows only
        top: Number of genes entering each distance
        gene_selection: "pairwise" picks the top genes separately for every
            pair; "common" uses the same most variable genes for all pairs

    Returns:
        Symmetric (n_samples, n_samples) distance matrix with zero diagonal
    """
    n_genes, n_samples = log_expr.shape
    dist = np.zeros((n_samples, n_samples))

    if gene_selection == "common":
        centered = log_expr - log_expr.mean(axis=1, keepdims=True)
        spread = np.mean(centered ** 2, axis=1)
        keep = np.argsort(-spread, kind="stable")[:top]
        x = log_expr[keep]
        for i in range(1, n_samples):
            d2 = (x[:, :i] - x[:, [i]]) ** 2
            dist[i, :i] = np.sqrt(d2.mean(axis=0))
    else:
        kth = n_genes - top
        for i in range(1, n_samples):
            for j in range(i):
                d2 = (log_expr[:, i] - log_expr[:, j]) ** 2
                dist[i, j] = np.sqrt(np.mean(np.partition(d2, kth)[kth:]))

    return dist + dist.T


def classical_mds(dist: NDArray[np.float64]) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Classical MDS: eigen decomposition of the double-centered squared distances.

    Returns:
        (coordinates for every dimension, eigenvalues), both in descending
        eigenvalue order. Dimensions with negative eigenvalues get zero
        coordinates.
    """
    n = dist.shape[0]
    J = np.eye(n) - np.ones((n, n)) / n
    B = -0.5 * J @ (dist ** 2) @ J
    eigvals, eigvecs = np.linalg.eigh(B)
    order = np.argsort(eigvals)[::-1]
    eigvals = eigvals[order]
    eigvecs = eigvecs[:, order]
    coords = eigvecs * np.sqrt(np.clip(eigvals, 0.0, None))
    return coords, eigvals


def plot_mds_coordinates(
    log_expr: pd.DataFrame | NDArray[np.float64],
    top: int = 500,
    gene_selection: str = "pairwise",
    dim: tuple[int, int] = (1, 2),
    sample_ids: list[str] | pd.Index | None = None,
) -> MDSResult:
    """
    Compute MDS coordinates of the samples (limma plotMDS, without plotting).

    Args:
        log_expr: log2 expression, genes × samples (e.g. log-CPM)
        top: Genes used per distance (capped at the number of genes)
        gene_selection: "pairwise" or "common"
        dim: Pair of 1-based dimensions to report
        sample_ids: Column names when log_expr is an array

    Returns:
        MDSResult

    Raises:
        ValueError: Fewer than 3 samples, top < 2, unknown gene selection or
            a dimension beyond the number of samples
    """
    if isinstance(log_expr, pd.DataFrame):
        sample_ids = log_expr.columns
        values = log_expr.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(log_expr, dtype=np.float64)
        if sample_ids is None:
            sample_ids = [f"sample{i + 1}" for i in range(values.shape[1])]
    sample_ids = pd.Index(sample_ids)

    if gene_selection not in GENE_SELECTIONS:
        raise ValueError(f"gene_selection must be one of {GENE_SELECTIONS}, got '{gene_selection}'")
    n_samples = values.shape[1]
    if n_samples < 3:
        raise ValueError(f"MDS needs at least 3 samples, got {n_samples}")
    if top < 2:
        raise ValueError(f"top must be at least 2, got {top}")
    if len(dim) != 2 or min(dim) < 1 or max(dim) > n_samples or dim[0] == dim[1]:
        raise ValueError(f"dim must be two distinct dimensions in 1..{n_samples}, got {dim}")

    finite = np.all(np.isfinite(values), axis=1)
    if not finite.all():
        logger.debug(f"MDS: dropping {int((~finite).sum())} rows with non-finite values")
    values = values[finite]
    if values.shape[0] < 2:
        raise ValueError("MDS needs at least 2 genes with finite values")

    top = min(top, values.shape[0])
    dist = leading_logfc_distance(values, top=top, gene_selection=gene_selection)
    coords, eigvals = classical_mds(dist)

    positive = eigvals[eigvals > 0].sum()
    var_explained = np.clip(eigvals, 0.0, None) / positive if positive > 0 else np.zeros_like(eigvals)

    cols = [d - 1 for d in dim]
    coords_df = pd.DataFrame(
        coords[:, cols],
        index=sample_ids,
        columns=[f"dim{d}" for d in dim],
    )

    logger.info(
        f"MDS ({gene_selection}, top={top}): dim{dim[0]} {100 * var_explained[cols[0]]:.1f}%, "
        f"dim{dim[1]} {100 * var_explained[cols[1]]:.1f}%"
    )

    return MDSResult(
        coords=coords_df,
        eigenvalues=eigvals,
        var_explained=var_explained,
        distance=pd.DataFrame(dist, index=sample_ids, columns=sample_ids),
        dim=(int(dim[0]), int(dim[1])),
        top=top,
        gene_selection=gene_selection,
    )

"""
Per-gene linear models with empirical Bayes moderated statistics.

Implements the limma workflow on log-expression values:

    lm_fit        weighted/ordinary least squares for every gene
    contrasts_fit re-express the coefficients as contrasts of interest
    e_bayes       shrink gene-wise variances toward a common prior
    top_table     ranked table of genes for one or several contrasts
    decide_tests  up / down / not significant calls per contrast

Statistical Framework:
    For gene g with log-expression y_g and precision weights w_g:
        y_g = X β_g + ε_g,   Var(ε_gi) = σ_g² / w_gi
    Sample variances s_g² are assumed to follow a scaled chi-square around
    a prior s₀² with d₀ prior degrees of freedom; the posterior variance
        s̃_g² = (d₀ s₀² + d_g s_g²) / (d₀ + d_g)
    replaces s_g² in the t-statistic, which then has d₀ + d_g df.

References:
    - Smyth (2004) Stat Appl Genet Mol Biol 3:Article3
    - Phipson et al. (2016) Ann Appl Stat 10(2):946-963
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

from compatde.stats.design_matrix import GroupDesign
from compatde.stats.multitest import p_adjust

logger = logging.getLogger(__name__)


@dataclass
class LinearModelFit:
    """Gene-wise linear model fit, optionally moderated.

    Attributes:
        coefficients: (n_genes, n_coefs) estimated coefficients or contrasts
        stdev_unscaled: (n_genes, n_coefs) unscaled standard errors
        sigma: (n_genes,) residual standard deviations
        df_residual: (n_genes,) residual degrees of freedom
        Amean: (n_genes,) average log-expression
        cov_coefficients: (n_coefs, n_coefs) unscaled covariance of the
            coefficients for an unweighted fit
        coef_names: Coefficient (or contrast) names
        feature_ids: Gene identifiers
        design: Design matrix used for the fit
        contrasts: Contrast matrix applied by contrasts_fit(), if any

    Filled in by e_bayes():
        df_prior, s2_prior, s2_post, t, df_total, p_value, lods,
        var_prior, F, F_p_value
    """

    coefficients: NDArray[np.float64]
    stdev_unscaled: NDArray[np.float64]
    sigma: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    Amean: NDArray[np.float64]
    cov_coefficients: NDArray[np.float64]
    coef_names: list[str]
    feature_ids: pd.Index
    design: NDArray[np.float64] | None = None
    contrasts: pd.DataFrame | None = None

    df_prior: float | None = None
    s2_prior: float | None = None
    s2_post: NDArray[np.float64] | None = None
    t: NDArray[np.float64] | None = None
    df_total: NDArray[np.float64] | None = None
    p_value: NDArray[np.float64] | None = None
    lods: NDArray[np.float64] | None = None
    var_prior: NDArray[np.float64] | None = None
    F: NDArray[np.float64] | None = None
    F_p_value: NDArray[np.float64] | None = None

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]

    @property
    def is_moderated(self) -> bool:
        return self.t is not None

    def coef_index(self, coef: int | str) -> int:
        if isinstance(coef, str):
            if coef not in self.coef_names:
                raise ValueError(f"Unknown coefficient '{coef}'. Available: {self.coef_names}")
            return self.coef_names.index(coef)
        if not 0 <= coef < len(self.coef_names):
            raise ValueError(f"Coefficient index {coef} out of range")
        return int(coef)

    def fitted_values(self) -> NDArray[np.float64]:
        """Fitted log-expression (n_genes, n_samples); needs the design."""
        if self.design is None or self.contrasts is not None:
            raise ValueError("Fitted values need the original (non-contrast) fit")
        return self.coefficients @ self.design.T


def _as_design(design: GroupDesign | NDArray | pd.DataFrame) -> tuple[NDArray[np.float64], list[str]]:
    if isinstance(design, GroupDesign):
        return design.X, list(design.col_names)
    if isinstance(design, pd.DataFrame):
        return design.to_numpy(dtype=np.float64), [str(c) for c in design.columns]
    X = np.asarray(design, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"design must be 2D, got shape {X.shape}")
    return X, [f"x{i}" for i in range(X.shape[1])]


def lm_fit(
    E: NDArray[np.float64] | pd.DataFrame,
    design: GroupDesign | NDArray | pd.DataFrame,
    weights: NDArray[np.float64] | None = None,
    feature_ids: Sequence[str] | pd.Index | None = None,
) -> LinearModelFit:
    """
    Fit a linear model to every gene (limma lmFit).

    Genes with complete, finite data are fitted together in one batched
    solve. Genes with missing values are fitted on their finite observations;
    if those do not identify every coefficient the gene gets NaN estimates.

    Args:
        E: Log-expression (n_genes, n_samples)
        design: Design matrix (n_samples, n_coefs)
        weights: Precision weights, same shape as E (e.g. from voom)
        feature_ids: Gene identifiers (taken from E if it is a DataFrame)

    Returns:
        LinearModelFit

    Raises:
        ValueError: On shape mismatch, non-positive weights or a
            rank-deficient design
    """
    if isinstance(E, pd.DataFrame):
        if feature_ids is None:
            feature_ids = E.index
        E = E.to_numpy(dtype=np.float64)
    E = np.asarray(E, dtype=np.float64)
    X, coef_names = _as_design(design)

    if E.ndim != 2:
        raise ValueError(f"Expected 2D expression matrix, got {E.ndim}D")
    n_genes, n_samples = E.shape
    if X.shape[0] != n_samples:
        raise ValueError(
            f"design has {X.shape[0]} rows but expression has {n_samples} samples"
        )
    n_coefs = X.shape[1]
    if np.linalg.matrix_rank(X) < n_coefs:
        raise ValueError(f"Design matrix is rank-deficient. Columns: {coef_names}")

    if feature_ids is None:
        feature_ids = pd.RangeIndex(n_genes)
    feature_ids = pd.Index(feature_ids)

    if weights is not None:
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape != E.shape:
            raise ValueError(f"weights shape {weights.shape} must match expression {E.shape}")
        if np.any(weights[np.isfinite(weights)] <= 0):
            raise ValueError("Precision weights must be positive")

    coefficients = np.full((n_genes, n_coefs), np.nan)
    stdev_unscaled = np.full((n_genes, n_coefs), np.nan)
    sigma = np.full(n_genes, np.nan)
    df_residual = np.zeros(n_genes)

    complete = np.all(np.isfinite(E), axis=1)
    if weights is not None:
        complete &= np.all(np.isfinite(weights), axis=1)

    idx = np.flatnonzero(complete)
    if idx.size:
        Y = E[idx]
        if weights is None:
            XtX_inv = np.linalg.inv(X.T @ X)
            beta = Y @ X @ XtX_inv
            resid = Y - beta @ X.T
            rss = np.sum(resid ** 2, axis=1)
            se = np.broadcast_to(np.sqrt(np.diag(XtX_inv)), beta.shape)
        else:
            W = weights[idx]
            XtWX = np.einsum("np,gn,nq->gpq", X, W, X)
            XtWy = np.einsum("np,gn,gn->gp", X, W, Y)
            XtWX_inv = np.linalg.inv(XtWX)
            beta = np.einsum("gpq,gq->gp", XtWX_inv, XtWy)
            resid = Y - beta @ X.T
            rss = np.sum(W * resid ** 2, axis=1)
            se = np.sqrt(np.diagonal(XtWX_inv, axis1=1, axis2=2))

        df = n_samples - n_coefs
        coefficients[idx] = beta
        stdev_unscaled[idx] = se
        df_residual[idx] = df
        if df > 0:
            sigma[idx] = np.sqrt(rss / df)

    for g in np.flatnonzero(~complete):
        obs = np.isfinite(E[g])
        if weights is not None:
            obs &= np.isfinite(weights[g])
        Xg = X[obs]
        if Xg.shape[0] == 0 or np.linalg.matrix_rank(Xg) < n_coefs:
            continue
        w = weights[g, obs] if weights is not None else np.ones(obs.sum())
        XtWX_inv = np.linalg.inv(Xg.T @ (w[:, None] * Xg))
        beta = XtWX_inv @ Xg.T @ (w * E[g, obs])
        resid = E[g, obs] - Xg @ beta
        df = Xg.shape[0] - n_coefs
        coefficients[g] = beta
        stdev_unscaled[g] = np.sqrt(np.diag(XtWX_inv))
        df_residual[g] = df
        if df > 0:
            sigma[g] = np.sqrt(np.sum(w * resid ** 2) / df)

    if (~complete).any():
        logger.debug(f"{int((~complete).sum())} genes fitted on partial observations")

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        Amean = np.nanmean(E, axis=1)

    return LinearModelFit(
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        sigma=sigma,
        df_residual=df_residual,
        Amean=Amean,
        cov_coefficients=np.linalg.inv(X.T @ X),
        coef_names=coef_names,
        feature_ids=feature_ids,
        design=X,
    )


def _cov2cor(cov: NDArray[np.float64]) -> NDArray[np.float64]:
    d = np.sqrt(np.diag(cov))
    return cov / np.outer(d, d)


def contrasts_fit(
    fit: LinearModelFit,
    contrasts: pd.DataFrame | NDArray[np.float64],
) -> LinearModelFit:
    """
    Re-express a fit in terms of contrasts of its coefficients.

    Args:
        fit: Result of lm_fit()
        contrasts: (n_coefs, n_contrasts) matrix. A DataFrame's index must
            name the fit coefficients (reordered as needed); its columns
            name the contrasts.

    Returns:
        New LinearModelFit whose coefficients are the contrasts; moderated
        statistics are cleared (run e_bayes() again).

    Raises:
        ValueError: If the contrast rows do not match the coefficients
    """
    if isinstance(contrasts, pd.DataFrame):
        rows = [str(r) for r in contrasts.index]
        if set(rows) != set(fit.coef_names):
            raise ValueError(
                f"Contrast rows {rows} do not match fit coefficients {fit.coef_names}"
            )
        C_df = contrasts.copy()
        C_df.index = rows
        C_df = C_df.loc[fit.coef_names]
        C = C_df.to_numpy(dtype=np.float64)
        names = [str(c) for c in contrasts.columns]
    else:
        C = np.asarray(contrasts, dtype=np.float64)
        if C.ndim == 1:
            C = C[:, None]
        if C.shape[0] != len(fit.coef_names):
            raise ValueError(
                f"Contrast matrix has {C.shape[0]} rows; fit has {len(fit.coef_names)} coefficients"
            )
        names = [f"contrast{i + 1}" for i in range(C.shape[1])]
        C_df = pd.DataFrame(C, index=fit.coef_names, columns=names)

    coefficients = fit.coefficients @ C
    cov = fit.cov_coefficients
    cormatrix = _cov2cor(cov)
    off_diag = cormatrix[~np.eye(cormatrix.shape[0], dtype=bool)]
    orthogonal = off_diag.size == 0 or np.all(np.abs(off_diag) < 1e-14)

    if orthogonal:
        stdev_unscaled = np.sqrt(fit.stdev_unscaled ** 2 @ C ** 2)
    else:
        R = np.linalg.cholesky(cormatrix).T
        # Per gene: R @ diag(stdev_g) @ C
        RUC = np.einsum("pq,gq,qk->gpk", R, fit.stdev_unscaled, C)
        stdev_unscaled = np.sqrt(np.sum(RUC ** 2, axis=1))

    return replace(
        fit,
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        cov_coefficients=C.T @ cov @ C,
        coef_names=names,
        contrasts=C_df,
        df_prior=None, s2_prior=None, s2_post=None, t=None, df_total=None,
        p_value=None, lods=None, var_prior=None, F=None, F_p_value=None,
    )


# =============================================================================
# Empirical Bayes
# =============================================================================

def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Inverse of the trigamma function by Newton's method (limma trigammaInverse).

    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    starting from y = 0.5 + 1/x.
    """
    if x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + dif
        if -dif / y < tol:
            break
    else:
        warnings.warn("trigamma_inverse: iteration limit exceeded")
    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: NDArray[np.float64] | float,
) -> tuple[float, float]:
    """
    Estimate prior d₀ and s₀² by the method of moments (limma fitFDist).

    Algorithm:
        1. z = log(s²), zero variances floored at 1e-5 × median
        2. e = z - digamma(df/2) + log(df/2)
        3. evar = var(e) - mean(trigamma(df/2))
        4. d₀ = 2 × trigamma⁻¹(evar), s₀² = exp(mean(e) + digamma(d₀/2) - log(d₀/2))
        5. evar <= 0 means no extra variability: d₀ = ∞, s₀² = exp(mean(e))

    Args:
        sigma2: Gene-wise residual variances
        df: Residual df (scalar or per gene)

    Returns:
        (d0, s0_sq)
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    ok = np.isfinite(sigma2) & (df > 1e-15)
    x = np.maximum(sigma2[ok], 0.0)
    d = df[ok]

    if x.size == 0:
        return np.nan, np.nan
    if x.size == 1:
        return 0.0, float(x[0])

    # Zero variances are offset to 1e-5 x the median before taking logs
    m = float(np.median(x))
    if m == 0:
        warnings.warn("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    elif np.any(x == 0):
        warnings.warn("Zero sample variances detected, have been offset away from zero")
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1)) - float(np.mean(polygamma(1, d / 2.0)))

    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        d0 = np.inf
        s0_sq = float(np.exp(emean))

    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: NDArray[np.float64],
    d0: float,
    s0_sq: float,
) -> NDArray[np.float64]:
    """
    Posterior variances (limma squeezeVar).

        s²_post = (d₀ s₀² + df s²) / (d₀ + df)

    Genes with no residual df get the prior variance.
    """
    sigma2 = np.where(df > 0, sigma2, 0.0)
    if np.isinf(d0):
        return np.full_like(sigma2, s0_sq)
    return (d0 * s0_sq + df * sigma2) / (d0 + df)


def _tmixture_vector(
    tstat: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    df: NDArray[np.float64],
    proportion: float,
    v0_lim: tuple[float, float] | None,
) -> float:
    """Prior variance of non-zero coefficients from the top t-statistics."""
    ok = np.isfinite(tstat)
    tstat = np.abs(tstat[ok])
    stdev_unscaled = stdev_unscaled[ok]
    df = df[ok].astype(np.float64)

    n_genes = tstat.size
    n_target = int(np.ceil(proportion / 2.0 * n_genes))
    if n_target < 1:
        return np.nan

    p = max(n_target / n_genes, proportion)
    max_df = np.max(df)
    lower = df < max_df
    if lower.any():
        tail_p = scipy_stats.t.sf(tstat[lower], df[lower])
        tstat[lower] = scipy_stats.t.isf(tail_p, max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind="stable")[:n_target]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2
    r = np.arange(1, n_target + 1)
    p0 = 2.0 * scipy_stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / n_genes - (1.0 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = ptarget > p0
    if pos.any():
        qtarget = scipy_stats.t.isf(ptarget[pos] / 2.0, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1.0)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


def _f_statistic(
    t: NDArray[np.float64],
    cov_coefficients: NDArray[np.float64],
) -> tuple[NDArray[np.float64], int]:
    """Moderated F from the t-statistics and their correlation."""
    n_tests = t.shape[1]
    if n_tests == 1:
        return t[:, 0] ** 2, 1

    cor = _cov2cor(cov_coefficients)
    eigvals, eigvecs = np.linalg.eigh(cor)
    order = np.argsort(eigvals)[::-1]
    eigvals = eigvals[order]
    eigvecs = eigvecs[:, order]
    r = int(np.sum(eigvals / eigvals[0] > 1e-8))
    Q = eigvecs[:, :r] / np.sqrt(eigvals[:r]) / np.sqrt(r)
    F = np.sum((t @ Q) ** 2, axis=1)
    return F, r


def e_bayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    stdev_coef_lim: tuple[float, float] = (0.1, 4.0),
) -> LinearModelFit:
    """
    Empirical Bayes moderation of the standard errors (limma eBayes).

    Args:
        fit: Result of lm_fit() or contrasts_fit()
        proportion: Assumed proportion of differentially expressed genes
            (used for the B-statistic)
        stdev_coef_lim: Limits on the standard deviation of non-zero
            coefficients, relative to the prior standard deviation

    Returns:
        New LinearModelFit with moderated t, p-values, B-statistics and F

    Raises:
        ValueError: If no gene has residual degrees of freedom
    """
    if not 0 < proportion < 1:
        raise ValueError(f"proportion must be in (0, 1), got {proportion}")

    df_residual = fit.df_residual
    if not np.any(df_residual > 0):
        raise ValueError("No residual degrees of freedom: e_bayes needs replicated groups")

    sigma2 = fit.sigma ** 2
    d0, s0_sq = fit_f_dist(sigma2, df_residual)
    if not np.isfinite(s0_sq):
        raise ValueError("Could not estimate the prior variance (all variances missing)")
    if np.isinf(d0):
        logger.info("Prior df is infinite: gene-wise variances are fully shrunk to the prior")

    s2_post = squeeze_var(sigma2, df_residual, d0, s0_sq)

    with np.errstate(divide="ignore", invalid="ignore"):
        t = fit.coefficients / fit.stdev_unscaled / np.sqrt(s2_post)[:, None]

    df_pooled = float(np.sum(df_residual))
    df_total = np.minimum(df_residual + d0, df_pooled)
    p_value = 2.0 * scipy_stats.t.sf(np.abs(t), df_total[:, None])

    # B-statistic: log-odds of differential expression
    var_prior_lim = (stdev_coef_lim[0] ** 2 / s0_sq, stdev_coef_lim[1] ** 2 / s0_sq)
    var_prior = np.array([
        _tmixture_vector(t[:, j], fit.stdev_unscaled[:, j], df_total, proportion, var_prior_lim)
        for j in range(t.shape[1])
    ])
    if np.any(np.isnan(var_prior)):
        var_prior[np.isnan(var_prior)] = 1.0 / s0_sq
        warnings.warn("Estimation of var.prior failed - set to default value")

    with np.errstate(divide="ignore", invalid="ignore"):
        r = (fit.stdev_unscaled ** 2 + var_prior[None, :]) / fit.stdev_unscaled ** 2
        t2 = t ** 2
        dft = df_total[:, None]
        if d0 > 1e6:
            kernel = t2 * (1.0 - 1.0 / r) / 2.0
        else:
            kernel = (1.0 + dft) / 2.0 * np.log((t2 + dft) / (t2 / r + dft))
        lods = np.log(proportion / (1.0 - proportion)) - np.log(r) / 2.0 + kernel

    F, df1 = _f_statistic(t, fit.cov_coefficients)
    F_p_value = scipy_stats.f.sf(F, df1, df_total)

    logger.info(f"Empirical Bayes: prior df = {d0:.2f}, prior variance = {s0_sq:.4f}")

    return replace(
        fit,
        df_prior=float(d0),
        s2_prior=float(s0_sq),
        s2_post=s2_post,
        t=t,
        df_total=df_total,
        p_value=p_value,
        lods=lods,
        var_prior=var_prior,
        F=F,
        F_p_value=F_p_value,
    )


# =============================================================================
# Result tables
# =============================================================================

def _require_moderated(fit: LinearModelFit) -> None:
    if not fit.is_moderated:
        raise ValueError("Fit has no moderated statistics: run e_bayes() first")


def top_table(
    fit: LinearModelFit,
    coef: int | str | Sequence[int | str] | None = None,
    number: int | None = None,
    adjust_method: str = "BH",
    sort_by: str = "p",
    p_value: float = 1.0,
    lfc: float = 0.0,
) -> pd.DataFrame:
    """
    Table of top-ranked genes (limma topTable).

    For a single coefficient the columns are
    logFC, AveExpr, t, P.Value, adj.P.Val, B.
    For several coefficients the columns are one estimate per coefficient,
    AveExpr, F, P.Value, adj.P.Val (moderated F-test).

    Args:
        fit: Moderated fit from e_bayes()
        coef: Coefficient(s) by name or index. None means all; a fit with
            one coefficient gives the single-coefficient table.
        number: Maximum number of genes (None = all)
        adjust_method: Multiple testing adjustment (see p_adjust)
        sort_by: "p", "B", "t", "logFC", "AveExpr", "F" or "none"
        p_value: Cutoff on adjusted p-values
        lfc: Minimum absolute log2 fold change

    Returns:
        DataFrame indexed by gene ID
    """
    _require_moderated(fit)

    if coef is None:
        coefs = list(range(len(fit.coef_names)))
    elif isinstance(coef, (int, str)):
        coefs = [coef]
    else:
        coefs = list(coef)
    idx = [fit.coef_index(c) for c in coefs]

    if len(idx) == 1:
        j = idx[0]
        table = pd.DataFrame(
            {
                "logFC": fit.coefficients[:, j],
                "AveExpr": fit.Amean,
                "t": fit.t[:, j],
                "P.Value": fit.p_value[:, j],
                "adj.P.Val": p_adjust(fit.p_value[:, j], method=adjust_method),
                "B": fit.lods[:, j],
            },
            index=fit.feature_ids,
        )
        keep = table["logFC"].abs() >= lfc
    else:
        sub_cov = fit.cov_coefficients[np.ix_(idx, idx)]
        F, df1 = _f_statistic(fit.t[:, idx], sub_cov)
        F_p = scipy_stats.f.sf(F, df1, fit.df_total)
        table = pd.DataFrame(
            fit.coefficients[:, idx],
            columns=[fit.coef_names[j] for j in idx],
            index=fit.feature_ids,
        )
        table["AveExpr"] = fit.Amean
        table["F"] = F
        table["P.Value"] = F_p
        table["adj.P.Val"] = p_adjust(F_p, method=adjust_method)
        keep = (table[[fit.coef_names[j] for j in idx]].abs() >= lfc).any(axis=1)

    keep &= table["adj.P.Val"].fillna(1.0) <= p_value
    table = table[keep]

    sort_keys = {
        "B": ("B", False),
        "p": ("P.Value", True),
        "P": ("P.Value", True),
        "t": ("t", False),
        "F": ("F", False),
        "AveExpr": ("AveExpr", False),
    }
    if sort_by == "logFC":
        if "logFC" not in table.columns:
            raise ValueError("sort_by='logFC' needs a single coefficient")
        table = table.iloc[np.argsort(-table["logFC"].abs().to_numpy(), kind="stable")]
    elif sort_by == "t":
        if "t" not in table.columns:
            raise ValueError("sort_by='t' needs a single coefficient")
        table = table.iloc[np.argsort(-table["t"].abs().to_numpy(), kind="stable")]
    elif sort_by != "none":
        if sort_by not in sort_keys or sort_keys[sort_by][0] not in table.columns:
            raise ValueError(f"Cannot sort by '{sort_by}' for this table")
        column, ascending = sort_keys[sort_by]
        table = table.sort_values(column, ascending=ascending, kind="mergesort", na_position="last")

    if number is not None:
        table = table.head(number)
    return table


def decide_tests(
    fit: LinearModelFit,
    adjust_method: str = "BH",
    p_value: float = 0.05,
    lfc: float = 0.0,
) -> pd.DataFrame:
    """
    Classify each gene as up (1), down (-1) or not significant (0) per contrast.

    P-values are adjusted separately for each contrast ("separate" method).

    Returns:
        DataFrame of ints (genes × contrasts)
    """
    _require_moderated(fit)

    adjusted = np.column_stack([
        p_adjust(fit.p_value[:, j], method=adjust_method)
        for j in range(fit.p_value.shape[1])
    ])
    significant = np.nan_to_num(adjusted, nan=1.0) < p_value
    if lfc > 0:
        significant &= np.abs(np.nan_to_num(fit.coefficients)) >= lfc

    calls = np.sign(np.nan_to_num(fit.t)) * significant
    return pd.DataFrame(calls.astype(int), index=fit.feature_ids, columns=fit.coef_names)


def summarize_decisions(decisions: pd.DataFrame) -> pd.DataFrame:
    """Count Down / NotSig / Up genes per contrast."""
    return pd.DataFrame(
        {
            col: {
                "Down": int((decisions[col] == -1).sum()),
                "NotSig": int((decisions[col] == 0).sum()),
                "Up": int((decisions[col] == 1).sum()),
            }
            for col in decisions.columns
        }
    ).loc[["Down", "NotSig", "Up"]]

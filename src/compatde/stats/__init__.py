"""
Statistical methods for differential expression of count data.

Key Components:
    - calc_norm_factors / TMMNormalization: library-size normalization
    - cpm / log_cpm: counts per million
    - build_group_design / make_contrasts: design and contrast matrices
    - voom: precision weights from the mean-variance trend
    - lm_fit / contrasts_fit / e_bayes: moderated linear models
    - top_table / decide_tests: result tables
    - plot_mds_coordinates: leading log-fold-change MDS

Examples:
    >>> from compatde.stats import build_group_design, make_contrasts, voom
    >>> from compatde.stats import lm_fit, contrasts_fit, e_bayes, top_table
    >>> design = build_group_design(groups)
    >>> v = voom(matrix, design)
    >>> fit = lm_fit(v.E, design, weights=v.weights, feature_ids=v.feature_ids)
    >>> fit = e_bayes(contrasts_fit(fit, make_contrasts(["B - A"], design.col_names)))
    >>> top_table(fit, coef=0, number=10)
"""

from compatde.stats.normalization import (
    NormalizationMethod,
    NormalizationResult,
    TMMNormalization,
    calc_norm_factors,
    cpm,
    log_cpm,
)
from compatde.stats.design_matrix import (
    GroupDesign,
    build_factor_design,
    build_group_design,
    make_contrasts,
    make_group_factor,
    parse_contrast,
)
from compatde.stats.linear_model import (
    LinearModelFit,
    contrasts_fit,
    decide_tests,
    e_bayes,
    fit_f_dist,
    lm_fit,
    squeeze_var,
    summarize_decisions,
    top_table,
    trigamma_inverse,
)
from compatde.stats.voom import VoomResult, VoomTrend, voom
from compatde.stats.multitest import ADJUST_METHODS, p_adjust
from compatde.stats.mds import MDSResult, classical_mds, leading_logfc_distance, plot_mds_coordinates

__all__ = [
    # Normalization
    'NormalizationMethod',
    'NormalizationResult',
    'TMMNormalization',
    'calc_norm_factors',
    'cpm',
    'log_cpm',
    # Design
    'GroupDesign',
    'build_factor_design',
    'build_group_design',
    'make_contrasts',
    'make_group_factor',
    'parse_contrast',
    # Linear models
    'LinearModelFit',
    'contrasts_fit',
    'decide_tests',
    'e_bayes',
    'fit_f_dist',
    'lm_fit',
    'squeeze_var',
    'summarize_decisions',
    'top_table',
    'trigamma_inverse',
    # voom
    'VoomResult',
    'VoomTrend',
    'voom',
    # Multiple testing
    'ADJUST_METHODS',
    'p_adjust',
    # MDS
    'MDSResult',
    'classical_mds',
    'leading_logfc_distance',
    'plot_mds_coordinates',
]

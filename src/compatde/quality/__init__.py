"""
Count preparation and gene filtering.

Components:
    RoundCounts: Round estimated counts to integers
    CpmFilter: Keep genes with CPM above a cutoff in enough samples
    ExpressionByDesignFilter: edgeR filterByExpr rule based on group sizes

Examples:
    >>> from compatde.quality import RoundCounts, CpmFilter
    >>> filtered = CpmFilter(min_cpm=0.5, min_samples=12)(RoundCounts()(matrix))
"""

from compatde.quality.filtering import (
    CpmFilter,
    ExpressionByDesignFilter,
    ExpressionFilterResult,
    RoundCounts,
)

__all__ = [
    'RoundCounts',
    'CpmFilter',
    'ExpressionByDesignFilter',
    'ExpressionFilterResult',
]

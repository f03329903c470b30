"""
Multiple testing correction.

Thin wrapper over statsmodels' multipletests that tolerates missing p-values
(genes that could not be tested keep NaN and do not count as tests).
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from statsmodels.stats.multitest import multipletests

ADJUST_METHODS = {
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "BY": "fdr_by",
    "holm": "holm",
    "bonferroni": "bonferroni",
    "none": None,
}


def p_adjust(
    pvalues: NDArray[np.float64],
    method: str = "BH",
) -> NDArray[np.float64]:
    """
    Adjust p-values for multiple testing.

    Args:
        pvalues: Array of raw p-values (NaN allowed).
        method:
            - "BH" / "fdr": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (FDR under dependence)
            - "holm": Holm step-down (controls FWER)
            - "bonferroni": Bonferroni (controls FWER)
            - "none": no adjustment

    Returns:
        Array of adjusted p-values, NaN where the input was NaN.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)

    if method == "none":
        return pvalues.copy()
    if method not in ADJUST_METHODS:
        raise ValueError(
            f"Unknown adjustment method '{method}'. "
            f"Choose from: {', '.join(ADJUST_METHODS)}"
        )

    valid_mask = ~np.isnan(pvalues)
    adjusted = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adjusted

    _, adjusted[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        method=ADJUST_METHODS[method],
    )

    return adjusted

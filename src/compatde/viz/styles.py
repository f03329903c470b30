"""
Colors, markers and matplotlib/seaborn settings for the analysis figures.

Factor levels of the pollination experiment keep the same color in every
figure (compatible blue, incompatible orange, pollinated teal, unpollinated
violet); other levels such as developmental stages are drawn from a seaborn
palette in order of appearance. Up- and down-regulated genes are red and blue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

import matplotlib.pyplot as plt
import seaborn as sns

MARKERS = ["o", "s", "^", "D", "v", "P", "X", "<", ">", "*"]


@dataclass(frozen=True)
class Palette:
    """Fixed colors for known factor levels and gene calls; `categorical` names a seaborn palette."""
    compatible: str = "#2563eb"
    incompatible: str = "#f97316"
    pollinated: str = "#0d9488"
    unpollinated: str = "#7c3aed"
    up: str = "#dc2626"
    down: str = "#2563eb"
    neutral: str = "#9ca3af"
    trend: str = "#dc2626"
    highlight: str = "#059669"
    categorical: str = "Set2"

    @property
    def condition(self) -> dict[str, str]:
        return {
            "compatible": self.compatible,
            "incompatible": self.incompatible,
            "pollinated": self.pollinated,
            "unpollinated": self.unpollinated,
        }

    def for_groups(self, groups: Sequence[str]) -> dict[str, str]:
        """
        Map factor levels to colors.

        Matching against the known levels ignores case; the remaining levels
        take categorical colors in the order given, cycling after eight.
        """
        known = self.condition
        fallback = iter(sns.color_palette(self.categorical, 8).as_hex() * (len(groups) // 8 + 1))
        return {
            group: known[str(group).lower()] if str(group).lower() in known else next(fallback)
            for group in groups
        }


PALETTES = {
    "default": Palette(),
    "colorblind": Palette(
        compatible="#0077bb",
        incompatible="#ee7733",
        pollinated="#009988",
        unpollinated="#aa3377",
        up="#cc3311",
        down="#0077bb",
        neutral="#bbbbbb",
        trend="#cc3311",
        highlight="#009988",
        categorical="colorblind",
    ),
    "print": Palette(
        compatible="#1a1a1a",
        incompatible="#666666",
        pollinated="#333333",
        unpollinated="#4d4d4d",
        up="#000000",
        down="#666666",
        neutral="#cccccc",
        trend="#000000",
        highlight="#000000",
        categorical="Greys",
    ),
}

# style -> (seaborn context, base font size, savefig dpi, line width)
STYLE_PRESETS = {
    "paper": ("paper", 10, 300, 1.0),
    "notebook": ("notebook", 11, 150, 1.5),
    "presentation": ("talk", 14, 150, 2.0),
}

_INK = "#333333"


def configure_style(
    style: Literal["paper", "presentation", "notebook"] = "paper",
    palette: str | Palette = "default",
    font_scale: float = 1.0
) -> Palette:
    """
    Apply the seaborn theme and rcParams for a target medium.

    Args:
        style: "paper" (300 dpi, small fonts), "notebook" or "presentation"
            (large fonts, thick lines)
        palette: Name in PALETTES or a Palette instance
        font_scale: Multiplier for every font size

    Returns:
        The Palette to draw with

    Raises:
        ValueError: Unknown style or palette name
    """
    if style not in STYLE_PRESETS:
        raise ValueError(f"Unknown style '{style}'. Choose from: {', '.join(STYLE_PRESETS)}")
    if isinstance(palette, str):
        if palette not in PALETTES:
            raise ValueError(f"Unknown palette '{palette}'. Choose from: {', '.join(PALETTES)}")
        palette = PALETTES[palette]

    context, base, dpi, linewidth = STYLE_PRESETS[style]
    size = base * font_scale

    sns.set_theme(style="whitegrid", context=context, font_scale=font_scale)
    plt.rcParams.update({
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.edgecolor": _INK,
        "axes.labelcolor": _INK,
        "text.color": _INK,
        "xtick.color": _INK,
        "ytick.color": _INK,
        "axes.spines.top": False,
        "axes.spines.right": False,
        "legend.frameon": False,
        "font.size": size,
        "axes.titlesize": size + 1,
        "axes.labelsize": size,
        "xtick.labelsize": size - 1,
        "ytick.labelsize": size - 1,
        "legend.fontsize": size - 1,
        "figure.dpi": 100,
        "savefig.dpi": dpi,
        "lines.linewidth": linewidth,
        "axes.linewidth": 0.8 * linewidth,
    })

    return palette


def markers_for(levels: Sequence[str]) -> dict[str, str]:
    """Assign a distinct marker to each level (cycling when exhausted)."""
    return {level: MARKERS[i % len(MARKERS)] for i, level in enumerate(levels)}

"""
Figure containers shared by the plotting code.

Every plot method returns a Figure rather than drawing to the current pyplot
state, so the analysis can decide where (and whether) to write it. A
comparison collects its figures in a FigureCollection and writes them in one
call as <output>/<comparison>/<key>.<format>.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator, Literal, Optional

import matplotlib.figure
import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

OutputFormat = Literal["png", "pdf", "svg"]
SUPPORTED_FORMATS = ("png", "pdf", "svg")


def resolve_format(path: Path, format: Optional[str] = None) -> str:
    """Output format from an explicit value or the file suffix."""
    fmt = (format or path.suffix.lstrip(".")).lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(
            f"Cannot write figure '{path.name}' as '{fmt or '(no suffix)'}'. "
            f"Supported formats: {', '.join(SUPPORTED_FORMATS)}"
        )
    return fmt


@dataclass
class Figure:
    """
    A rendered matplotlib figure plus what it shows.

    Attributes:
        fig: The matplotlib figure
        title: Short title (also used in log messages)
        description: One-line description of the plotted quantities
        metadata: Plot parameters and counts (e.g. contrast, n_genes)
    """
    fig: matplotlib.figure.Figure
    title: str
    description: str
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.metadata.setdefault("created_at", datetime.now().isoformat(timespec="seconds"))

    def save(
        self,
        path: Path | str,
        format: Optional[OutputFormat] = None,
        dpi: int = 300,
        **savefig_kwargs,
    ) -> Path:
        """
        Write the figure, creating parent directories.

        The format comes from `format` or, when omitted, from the file suffix;
        anything other than png/pdf/svg raises ValueError.
        """
        path = Path(path)
        fmt = resolve_format(path, format)
        path.parent.mkdir(parents=True, exist_ok=True)

        options = {"dpi": dpi, "bbox_inches": "tight", "facecolor": "white"}
        options.update(savefig_kwargs)
        self.fig.savefig(path, format=fmt, **options)
        logger.debug(f"Saved {self.title} -> {path}")
        return path

    def close(self):
        plt.close(self.fig)


class FigureCollection:
    """
    Figures of one comparison keyed by output file stem.

    Keys keep insertion order, which is also the order files are written in.

    Example:
        >>> collection = FigureCollection()
        >>> collection.add("pollination.volcano", plotter.plot_volcano(table))
        >>> collection.save_all(Path("results/stage1"), format="pdf")
    """

    def __init__(self):
        self._figures: dict[str, Figure] = {}

    def add(self, key: str, figure: Figure) -> "FigureCollection":
        if key in self._figures:
            self._figures[key].close()
        self._figures[key] = figure
        return self

    def get(self, key: str) -> Optional[Figure]:
        return self._figures.get(key)

    def __getitem__(self, key: str) -> Figure:
        return self._figures[key]

    def __len__(self) -> int:
        return len(self._figures)

    def __iter__(self) -> Iterator[tuple[str, Figure]]:
        return iter(list(self._figures.items()))

    def save_all(
        self,
        output_dir: Path | str,
        format: OutputFormat = "png",
        dpi: int = 300,
    ) -> list[Path]:
        """Write every figure as <output_dir>/<key>.<format>; returns the paths."""
        output_dir = Path(output_dir)
        return [
            figure.save(output_dir / f"{key}.{format}", format=format, dpi=dpi)
            for key, figure in self
        ]

    def close_all(self):
        """Close every figure and empty the collection."""
        for figure in self._figures.values():
            figure.close()
        self._figures.clear()

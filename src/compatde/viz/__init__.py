"""
Visualization for the differential expression analysis.

Static matplotlib/seaborn figures: sample MDS, voom mean-variance trend,
mean-difference plots, volcano plots and p-value histograms.

Examples
--------
>>> from compatde.viz import DifferentialPlotter, FigureCollection
>>>
>>> plotter = DifferentialPlotter()
>>> collection = FigureCollection()
>>> collection.add("mds", plotter.plot_mds(mds_result, metadata, color_by="compatibility"))
>>> collection.save_all(Path("figures/"), format="pdf")
"""

from compatde.viz.core import Figure, FigureCollection
from compatde.viz.styles import Palette, PALETTES, configure_style
from compatde.viz.differential import DifferentialPlotter

__all__ = [
    # Core
    "Figure",
    "FigureCollection",
    # Styles
    "Palette",
    "PALETTES",
    "configure_style",
    # Plots
    "DifferentialPlotter",
]

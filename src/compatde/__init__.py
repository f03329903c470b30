"""
compatde - Differential expression for pollination compatibility experiments

Loads an RNA-seq count matrix with per-sample compatibility, pollen and stage
annotations, filters and TMM-normalizes it, fits voom/limma-style linear
models and tests contrasts between experimental groups.
"""

__version__ = "0.1.0"

from compatde.core.countmatrix import CountMatrix
from compatde.core.transform import Transform

__all__ = [
    "CountMatrix",
    "Transform",
]

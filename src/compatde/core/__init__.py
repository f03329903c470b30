"""
Core data structures for the differential expression analysis.

1. CountMatrix: Count table with sample annotations and normalization factors
2. Transform: Abstract base class for immutable matrix steps
"""

from compatde.core.countmatrix import CountMatrix
from compatde.core.transform import Transform

__all__ = [
    'CountMatrix',
    'Transform',
]

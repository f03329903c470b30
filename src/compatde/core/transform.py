"""
Base class for immutable count-matrix steps.

Each step of the analysis (rounding, filtering, normalization) takes a
CountMatrix and returns a new one. Steps record their name and parameters so
the run summary can state exactly what was done to the data.

Examples:
    >>> from compatde.core.transform import Transform
    >>>
    >>> class Log2Transform(Transform):
    ...     def __init__(self, pseudocount: float = 1.0):
    ...         super().__init__(name="Log2Transform", params={"pseudocount": pseudocount})
    ...         self.pseudocount = pseudocount
    ...
    ...     def apply(self, matrix):
    ...         import numpy as np
    ...         return matrix.with_data(np.log2(matrix.data + self.pseudocount))
    >>>
    >>> logged = Log2Transform()(matrix)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from compatde.core.countmatrix import CountMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all matrix steps.

    Attributes:
        name: Human-readable step name (e.g., "CpmFilter")
        params: JSON-serializable parameters, written to the run summary
        timestamp: When this step instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: CountMatrix) -> CountMatrix:
        """
        Execute the step and return a new matrix.

        Must never modify the input matrix.

        Raises:
            ValueError: If the step cannot be applied
        """

    def validate(self, matrix: CountMatrix) -> list[str]:
        """
        Check preconditions before applying the step.

        Subclasses override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")
        elif not np.isfinite(matrix.data).all():
            n_bad = int((~np.isfinite(matrix.data)).sum())
            errors.append(f"Counts contain {n_bad} NaN or infinite values")

        return errors

    def __call__(self, matrix: CountMatrix) -> CountMatrix:
        """Validate, then apply."""
        errors = self.validate(matrix)
        if errors:
            raise ValueError(f"{self.name} cannot be applied: " + "; ".join(errors))
        return self.apply(matrix)

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"

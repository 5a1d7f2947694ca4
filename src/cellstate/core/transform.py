"""
Base transformation framework for immutable matrix operations.

Every value-changing or subsetting stage of the pipeline (cell filtering,
log-normalization, covariate regression, scaling) is a Transform: a pure
function from one ExpressionMatrix to a new one. The input is never modified.

Biological Context:
    Single-cell preprocessing is a fixed sequence of transformations:
    1. Quality control (drop empty cells, rare genes)
    2. Library-size normalization and log transform
    3. Covariate regression (total counts, mitochondrial fraction)
    4. Per-gene standardization

    Each step must be:
    - Reproducible (same input + params → same output)
    - Auditable (parameters recorded in the matrix lineage)
    - Guarded (preconditions checked before any work is done)

Examples:
    >>> from cellstate.core.transform import Transform
    >>>
    >>> class Log2Transform(Transform):
    ...     def __init__(self, pseudocount: float = 1.0):
    ...         super().__init__(name="Log2Transform", params={"pseudocount": pseudocount})
    ...         self.pseudocount = pseudocount
    ...
    ...     def apply(self, matrix):
    ...         import numpy as np
    ...         return matrix.derive(np.log2(matrix.data + self.pseudocount), step=repr(self))
    >>>
    >>> transformed = Log2Transform().run(matrix)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING
from datetime import datetime

from cellstate.exceptions import InvalidInputError

if TYPE_CHECKING:
    from cellstate.core.matrix import ExpressionMatrix

logger = logging.getLogger(__name__)

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all matrix transformations.

    Subclasses implement apply() and extend validate(). Callers use run(),
    which validates first and raises InvalidInputError listing every violated
    precondition, so a stage either returns a complete matrix or fails.

    Attributes:
        name: Human-readable transformation name (e.g., "LogNormalize")
        params: Parameters used for this transformation (JSON-serializable)
        timestamp: When this transform instance was created (for audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        """
        Execute transformation and return a new matrix.

        Must never modify the input. Implementations build the result with
        matrix.derive(), matrix.select_cells() or matrix.select_genes() so the
        lineage is recorded.
        """
        pass

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        """
        Check preconditions before applying the transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def run(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        """
        Validate, then apply.

        Raises:
            InvalidInputError: If validate() reports any problem
        """
        errors = self.validate(matrix)
        if errors:
            raise InvalidInputError(f"{self.name}: " + "; ".join(errors))
        logger.info(f"Applying {self!r} to {matrix.n_genes} genes × {matrix.n_cells} cells")
        return self.apply(matrix)

    def __repr__(self) -> str:
        """
        String representation for logging and lineage.

        Returns:
            String like "LogNormalize(target_sum=10000.0)"
        """
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"

"""
Processing flags for tracking what has been done to an expression matrix.

Single-cell pipelines apply a fixed sequence of value-changing steps
(log-normalization, covariate regression, scaling). Several of them are not
idempotent: log-normalizing an already log-normalized matrix silently
compresses the data a second time. Each ExpressionMatrix therefore carries
one ProcessingFlag value describing the steps already applied, and stages
check it before running.

Engineering Design:
    IntFlag enables cheap composable checks:
    - Multiple flags per matrix: LOG_NORMALIZED | SCALED
    - Fast bitwise checks: if matrix.flags & ProcessingFlag.SCALED
    - Flags propagate unchanged through subsetting

Examples:
    >>> from cellstate.core.flags import ProcessingFlag
    >>>
    >>> flags = ProcessingFlag.LOG_NORMALIZED | ProcessingFlag.SCALED
    >>> if flags & ProcessingFlag.LOG_NORMALIZED:
    ...     print("already normalized")
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['ProcessingFlag']


class ProcessingFlag(IntFlag):
    """
    Bitwise flags for matrix-level processing provenance.

    Attributes:
        RAW: Untouched counts as loaded (0)
        LOG_NORMALIZED: Library-size scaled to a target sum and log1p transformed (1)
        COVARIATES_REGRESSED: Per-gene OLS residuals against cell covariates (2)
        SCALED: Per-gene standardized and clipped (4)
        BATCH_ALIGNED: Derived from batch-aligned coordinates (8)
    """

    RAW = 0
    """Raw non-negative counts; no transformation applied."""

    LOG_NORMALIZED = 1
    """
    Counts scaled per cell to a common total and log1p transformed.
    Applying this step twice is rejected.
    """

    COVARIATES_REGRESSED = 2
    """Technical covariates (total counts, mitochondrial fraction) regressed out."""

    SCALED = 4
    """Each gene centered to zero mean and unit variance across cells."""

    BATCH_ALIGNED = 8
    """Values derived from batch-aligned canonical coordinates."""

"""
Error taxonomy for cellstate.

Every analysis stage either returns a fully valid result or raises one of the
errors below. Nothing is recovered silently and no stage retries on its own;
retrying (e.g. clustering with another seed) is the caller's decision.

Warning convention:
    warnings.warn(ConvergenceWarning) -- user-facing (iteration cap reached)
    logger.warning() -- operator-facing (dropped genes, fallbacks)
"""

from __future__ import annotations

__all__ = [
    'CellStateError',
    'InvalidInputError',
    'ConfigurationError',
    'DisconnectedGraphError',
    'DegenerateKernelError',
    'ConvergenceWarning',
]


class CellStateError(Exception):
    """Base class for all cellstate errors."""
    pass


class InvalidInputError(CellStateError, ValueError):
    """Raised for malformed or degenerate input (zero-total cell, mismatched ids)."""
    pass


class ConfigurationError(CellStateError, ValueError):
    """Raised for out-of-range or mutually inconsistent parameters."""
    pass


class DisconnectedGraphError(CellStateError):
    """Raised when a neighbor graph has no edges at all."""
    pass


class DegenerateKernelError(CellStateError):
    """Raised when diffusion affinities collapse to zero."""
    pass


class ConvergenceWarning(UserWarning):
    """
    Optimization reached its iteration cap without meeting tolerance.

    The result is still returned; the warning flags it as possibly unconverged.
    """
    pass

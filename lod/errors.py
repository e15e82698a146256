"""Exceptions raised at the boundaries of the LOD engine.

Locally recoverable fitting problems (too few distinct timestamps, a zero
time span, a numerically unstable solve) are never raised; they are
recorded on the node as a `FitKind`.
"""
from __future__ import annotations


class LodError(Exception):
    """Base class for LOD engine errors."""


class InvalidRangeError(LodError, ValueError):
    """The requested index range is empty, inverted or out of bounds."""


class InvalidArgumentError(LodError, ValueError):
    """A build or query parameter is outside its permitted domain."""


class BuildCancelledError(LodError):
    """A tree build was cancelled through its cancel event."""


__all__ = ["LodError", "InvalidRangeError", "InvalidArgumentError", "BuildCancelledError"]

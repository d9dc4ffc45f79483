"""
Exception types raised by the memory controller.
Storage driver errors are not wrapped; they reach the caller as raised.
"""
from __future__ import annotations


class TierMemError(Exception):
    """Base class for memory controller errors."""


class InvalidQueryError(TierMemError, ValueError):
    """A retrieval request is malformed and was rejected before any I/O."""


class AffectConfigError(TierMemError, ValueError):
    """A baseline, trait or coefficient is outside its legal range."""


class VectorIndexError(TierMemError):
    """The vector index is unavailable, corrupt, or could not be written."""

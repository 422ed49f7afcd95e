"""
recollect.errors

Exception types raised while building or resolving assertions.
"""
from __future__ import annotations


class RecollectError(RuntimeError):
    pass


class PatternError(RecollectError):
    """The captured value has no literal form that can be written back."""


class CallSiteError(RecollectError):
    """The auto_assert call could not be located in its source file."""

# tapegrad/errors.py
"""Structured error types for tracing, differentiation and replay."""

from __future__ import annotations


class TapeGradError(Exception):
    """Base class for tapegrad errors."""


class TraceError(TapeGradError):
    """A traced function raised while an operation was being recorded."""


class ReplayError(TapeGradError):
    """An operation raised while a cached tape was re-executed."""


class MissingRuleError(TapeGradError, KeyError):
    """No VJP rule is registered for (function, argument position)."""

    def __init__(self, fn, argnum: int):
        self.fn = fn
        self.argnum = argnum
        super().__init__(fn, argnum)

    def __str__(self) -> str:
        name = getattr(self.fn, "__name__", repr(self.fn))
        return f"no VJP rule registered for {name} at argument position {self.argnum}"


class UnpackError(TapeGradError):
    """A composite argument was unpacked twice onto the same tape."""


class TapeMismatchError(TapeGradError):
    """Variables owned by different tapes were combined in one operation."""


class ShapeMismatchWarning(UserWarning):
    """A derivative's shape differs from the shape of its variable."""

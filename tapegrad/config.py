# tapegrad/config.py
"""
Configuration shared by tracing, differentiation and the trace cache.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Optional

import numpy as np

MODES = ("cached", "retrace")


@dataclass(frozen=True)
class GradConfig:
    """
    Attributes
    ----------
    mode : str
        "cached" reuses tapes per argument signature, "retrace" always builds
        a fresh tape.
    seed_dtype : numpy dtype
        Type of the scalar 1 seeded at the output. 32-bit is enough because
        64-bit arguments upcast it through arithmetic.
    dtype : numpy dtype
        Floating type python scalars and sequences are converted to when they
        enter a tape as inputs.
    check_shapes : bool
        Warn when a derivative's shape differs from its variable's shape.
    cache_maxsize : Optional[int]
        Upper bound on cached tapes per cache; None keeps every entry.
    """
    mode: str = "cached"
    seed_dtype: Any = np.float32
    dtype: Any = np.float64
    check_shapes: bool = True
    cache_maxsize: Optional[int] = None

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.cache_maxsize is not None and self.cache_maxsize < 1:
            raise ValueError("cache_maxsize must be a positive integer or None")


_default = GradConfig()


def default_config() -> GradConfig:
    """Return the configuration used when none is passed explicitly."""
    return _default


@contextmanager
def use_config(config: Optional[GradConfig] = None, **overrides):
    """
    Temporarily replace the default configuration:
        with use_config(mode="retrace"):
            val, g = grad(f, x)
    """
    global _default
    prev = _default
    try:
        _default = replace(config or prev, **overrides)
        yield _default
    finally:
        _default = prev

# tapegrad/device.py
"""
Execution context attached to every tape.

The context decides how raw values entering a tape are represented. Only a
numpy CPU context exists; the tape treats it as an opaque token.
"""

from __future__ import annotations
import numbers
from typing import Any, Iterable

import numpy as np


class CPUContext:
    """numpy-backed context; python scalars and sequences become `dtype` values."""

    name = "cpu"

    def __init__(self, dtype=np.float64):
        self.dtype = np.dtype(dtype)

    def promote(self, val: Any) -> Any:
        if isinstance(val, (bool, np.bool_)):
            return val
        if isinstance(val, np.ndarray):
            return val
        if isinstance(val, (list, tuple)):
            return np.asarray(val, dtype=self.dtype)
        if isinstance(val, numbers.Real) and not isinstance(val, np.floating):
            return self.dtype.type(val)
        return val

    def __eq__(self, other):
        return isinstance(other, CPUContext) and other.dtype == self.dtype

    def __hash__(self):
        return hash((self.name, self.dtype))

    def __repr__(self):
        return f"CPUContext({self.dtype})"


def guess_context(args: Iterable[Any], dtype=np.float64) -> CPUContext:
    """
    Pick an execution context from the call arguments. Every supported value
    lives in host memory; the context dtype follows floating array arguments
    (widest wins) and falls back to `dtype` when there are none.
    """
    float_dtypes = [a.dtype for a in args
                    if isinstance(a, np.ndarray) and np.issubdtype(a.dtype, np.floating)]
    if float_dtypes:
        return CPUContext(np.result_type(*float_dtypes))
    return CPUContext(dtype)

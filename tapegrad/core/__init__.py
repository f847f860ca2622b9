# tapegrad/core/__init__.py

"""
Core public API of the tape.

Exports:
    Var           : Tape-owned value cell; numpy operations on it are recorded.
    Tape          : Ordered operations, derivative map and composite-field map.
    Input, Constant, Call, Bcast, Assign : the operation variants.
    record        : Append an operation, computing its value eagerly.
    differentiate : Run the reverse pass once over a traced tape.
    grad          : Trace (or replay) f and return (value, GradResult).
"""

from .var import Var, getvalue
from .ops import (
    Operation, Input, Constant, Call, Bcast, Assign,
    record, execute, constant, bcast,
)
from .tape import Tape, unpack, is_composite
from .engine import differentiate, check_deriv_sizes, getderiv, setderiv
from .grad import (
    GradResult, GradCache, grad, evaluate, trace, play, update,
    get_default_cache, use_cache,
)

__all__ = [
    "Var", "getvalue",
    "Operation", "Input", "Constant", "Call", "Bcast", "Assign",
    "record", "execute", "constant", "bcast",
    "Tape", "unpack", "is_composite",
    "differentiate", "check_deriv_sizes", "getderiv", "setderiv",
    "GradResult", "GradCache", "grad", "evaluate", "trace", "play", "update",
    "get_default_cache", "use_cache",
]

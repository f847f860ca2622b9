# tapegrad/rules/registry.py
"""
Registry of vector-Jacobian-product rules.

A rule has the signature

    rule(dy, argnum, op) -> dx

where `dy` is the Var holding d(result)/d(op.var), `argnum` the argument
position being differentiated and `op` the Call/Bcast operation. Rules build
`dx` with ordinary numpy operations on Vars, so the derivative computation is
recorded on the same tape and is refreshed whenever the tape is replayed.
A rule may also return a literal; the reverse pass records it as a Constant.
"""

from __future__ import annotations
from typing import Callable, Dict, Hashable, Tuple

import numpy as np

from ..core.ops import record, Call
from ..core.var import Var, getvalue
from ..errors import MissingRuleError


class VJPRegistry:
    """Open lookup table (function, argument position) -> rule."""

    def __init__(self):
        self._rules: Dict[Tuple[Hashable, int], Callable] = {}

    def register(self, fn, *argnums: int):
        """
        Decorator registering a rule for `fn` at each of `argnums`:

            @registry.register(np.multiply, 0, 1)
            def _mul(dy, argnum, op): ...
        """
        def decorator(rule):
            for i in argnums:
                self._rules[(fn, i)] = rule
            return rule
        return decorator

    def lookup(self, fn, argnum: int) -> Callable:
        try:
            return self._rules[(fn, argnum)]
        except KeyError:
            raise MissingRuleError(fn, argnum) from None

    def __contains__(self, key) -> bool:
        return key in self._rules

    def __len__(self):
        return len(self._rules)

    def copy(self) -> "VJPRegistry":
        new = VJPRegistry()
        new._rules = dict(self._rules)
        return new


default_registry = VJPRegistry()
register = default_registry.register


# ---------------------------------------------------------------------------
# helpers shared by rule modules

def _sum_to(val, shape):
    val = np.asarray(val)
    # collapse leading axes added by broadcasting
    while val.ndim > len(shape):
        val = val.sum(axis=0)
    if val.ndim == len(shape):
        axes = tuple(i for i, n in enumerate(shape) if n == 1 and val.shape[i] != 1)
        if axes:
            val = val.sum(axis=axes, keepdims=True)
    if val.shape != shape:
        # dx narrower than the argument: every element receives it
        val = np.broadcast_to(val, shape).copy()
    return val


def sum_to_shape(dx, shape):
    """
    Undo numpy broadcasting: reduce `dx` to `shape` by summing the expanded
    axes. Shapes are fixed per traced signature, so nothing is recorded when
    they already agree.
    """
    if np.shape(getvalue(dx)) == tuple(shape):
        return dx
    if not isinstance(dx, Var):
        return _sum_to(dx, tuple(shape))
    return record(dx.tape, Call, _sum_to, (dx,), {"shape": tuple(shape)})


def arg_shape(op, argnum: int):
    return np.shape(getvalue(op.args[argnum]))


def ones_like_arg(op, argnum: int):
    val = getvalue(op.args[argnum])
    return np.ones(np.shape(val), dtype=np.result_type(val, np.float32))

# tapegrad/core/var.py
from __future__ import annotations
import operator
from typing import Any

import numpy as np

from ..errors import TapeMismatchError

# Shape queries answer from the current value instead of recording an op
_PASSTHROUGH_FUNCTIONS = {np.shape, np.ndim, np.size, np.result_type}


class Var:
    """
    Tape-owned value cell.

    Attributes
    ----------
    tape : Tape
        The tape this variable belongs to. A Var is never shared across tapes.
    id : int
        1-based position of the operation that produced this variable in
        `tape.ops`. Stable for the lifetime of the variable; 0 until the
        producing operation is appended.
    val : Any
        Current value (numpy scalar, ndarray or any payload). Overwritten every
        time the producing operation is executed, on first trace and on replay.

    Arithmetic, comparisons and numpy functions applied to a Var are recorded
    on its tape as Call (0-d operands) or Bcast (array operands) operations.
    """

    __array_priority__ = 1000  # ensures NumPy ufuncs prefer Var.__array_ufunc__

    def __init__(self, tape, val: Any, id: int = 0):
        self.tape = tape
        self.id = id
        self.val = val

    def __repr__(self):
        return f"Var(%{self.id}, {self.val!r})"

    # ------------------------------------------------------------------ #
    # value inspection (never recorded)
    @property
    def shape(self):
        return np.shape(self.val)

    @property
    def ndim(self):
        return np.ndim(self.val)

    @property
    def size(self):
        return np.size(self.val)

    def __len__(self):
        return len(self.val)

    def __float__(self):
        return float(self.val)

    def __bool__(self):
        # Branching on a value fixes the traced path for this signature
        return bool(self.val)

    # ------------------------------------------------------------------ #
    # numpy protocols
    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        if method != "__call__" or kwargs:
            return NotImplemented
        from .ops import record_elementwise
        return record_elementwise(ufunc, inputs)

    def __array_function__(self, func, types, args, kwargs):
        if func in _PASSTHROUGH_FUNCTIONS:
            return func(*[getvalue(a) for a in args],
                        **{k: getvalue(v) for k, v in kwargs.items()})
        if (any(_holds_var(a) for a in args)
                or any(isinstance(v, Var) or _holds_var(v) for v in kwargs.values())):
            return NotImplemented
        from .ops import record, Call
        return record(common_tape(args), Call, func, tuple(args), dict(kwargs))

    # ------------------------------------------------------------------ #
    # operators
    def __add__(self, other):
        return np.add(self, other)

    def __radd__(self, other):
        return np.add(other, self)

    def __sub__(self, other):
        return np.subtract(self, other)

    def __rsub__(self, other):
        return np.subtract(other, self)

    def __mul__(self, other):
        return np.multiply(self, other)

    def __rmul__(self, other):
        return np.multiply(other, self)

    def __truediv__(self, other):
        return np.true_divide(self, other)

    def __rtruediv__(self, other):
        return np.true_divide(other, self)

    def __pow__(self, other):
        return np.power(self, other)

    def __rpow__(self, other):
        return np.power(other, self)

    def __matmul__(self, other):
        return np.matmul(self, other)

    def __rmatmul__(self, other):
        return np.matmul(other, self)

    def __neg__(self):
        return np.negative(self)

    def __pos__(self):
        return self

    def __abs__(self):
        return np.absolute(self)

    def __lt__(self, other):
        return np.less(self, other)

    def __le__(self, other):
        return np.less_equal(self, other)

    def __gt__(self, other):
        return np.greater(self, other)

    def __ge__(self, other):
        return np.greater_equal(self, other)

    def __getitem__(self, index):
        from .ops import record, Call
        return record(self.tape, Call, operator.getitem, (self, index))

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]

    # numpy-style conveniences
    @property
    def T(self):
        return np.transpose(self)

    def sum(self, axis=None):
        return np.sum(self, axis=axis)

    def mean(self, axis=None):
        return np.mean(self, axis=axis)

    def reshape(self, *shape):
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        return np.reshape(self, shape)


def getvalue(x: Any) -> Any:
    """Return the current value of a Var; pass through literals unchanged."""
    return x.val if isinstance(x, Var) else x


def common_tape(args):
    """Return the single tape shared by every Var in `args`."""
    tape = None
    for a in args:
        if isinstance(a, Var):
            if tape is None:
                tape = a.tape
            elif a.tape is not tape:
                raise TapeMismatchError(
                    f"variable %{a.id} belongs to a different tape than its operands")
    if tape is None:
        raise TypeError("at least one argument must be a traced Var")
    return tape


def _holds_var(x: Any) -> bool:
    """True if a Var is nested inside a list/tuple/dict (not recordable)."""
    if isinstance(x, (list, tuple)):
        return any(isinstance(e, Var) or _holds_var(e) for e in x)
    if isinstance(x, dict):
        return any(isinstance(e, Var) or _holds_var(e) for e in x.values())
    return False

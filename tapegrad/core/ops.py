# tapegrad/core/ops.py
"""
Operations recorded on a Tape.

The instruction set is closed: Input, Constant, Call, Bcast and Assign. Each
operation owns the Var it produces and knows how to re-execute itself, so a
tape can be replayed in order with fresh input values without appending
anything.

    record(tape, Input, 3.0, argid=0)
    record(tape, Constant, 2.0)
    record(tape, Call, np.sum, (x,), {"axis": 0})
    record(tape, Bcast, np.multiply, (x, y))
    record(tape, Assign, x)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from ..errors import TraceError, TapeMismatchError
from .var import Var, getvalue, common_tape


@dataclass(eq=False, repr=False)
class Operation:
    var: Var

    def execute(self, tape) -> Var:
        raise NotImplementedError


@dataclass(eq=False, repr=False)
class Input(Operation):
    """Traced call argument, or a numeric leaf of a composite argument."""
    argid: int = -1
    field_path: Optional[Tuple[str, ...]] = None

    def execute(self, tape) -> Var:
        # the replay driver writes the new value before execution
        return self.var

    def __repr__(self):
        where = f"{self.argid}" if self.field_path is None else \
            f"{self.argid}.{'.'.join(self.field_path)}"
        return f"Input(%{self.var.id} <- arg {where})"


@dataclass(eq=False, repr=False)
class Constant(Operation):
    value: Any = None

    def execute(self, tape) -> Var:
        self.var.val = self.value
        return self.var

    def __repr__(self):
        return f"Constant(%{self.var.id} = {self.value!r})"


@dataclass(eq=False, repr=False)
class Call(Operation):
    """Method call: var = fn(*args, **kwargs) on whole values."""
    fn: Callable = None
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def execute(self, tape) -> Var:
        self.var.val = self.fn(*map(getvalue, self.args), **self.kwargs)
        return self.var

    def __repr__(self):
        kw = "" if not self.kwargs else \
            "; " + ", ".join(f"{k}={v!r}" for k, v in self.kwargs.items())
        return f"Call(%{self.var.id} = {_fn_name(self.fn)}({_args_str(self.args)}{kw}))"


@dataclass(eq=False, repr=False)
class Bcast(Operation):
    """Elementwise call under numpy broadcasting: var = fn(*args) elementwise."""
    fn: Callable = None
    args: Tuple[Any, ...] = ()

    def execute(self, tape) -> Var:
        self.var.val = broadcast_apply(self.fn, map(getvalue, self.args))
        return self.var

    def __repr__(self):
        return f"Bcast(%{self.var.id} = {_fn_name(self.fn)}.({_args_str(self.args)}))"


@dataclass(eq=False, repr=False)
class Assign(Operation):
    """Copy of `src` under a new, independent identity."""
    src: Var = None

    def execute(self, tape) -> Var:
        self.var.val = _copy(self.src.val)
        return self.var

    def __repr__(self):
        return f"Assign(%{self.var.id} = %{self.src.id})"


# ---------------------------------------------------------------------------
# recording

def _record_input(tape, val, *, argid: int = -1, field_path=None) -> Var:
    var = Var(tape, tape.context.promote(val))
    return tape.push(Input(var, argid, field_path))


def _record_constant(tape, val) -> Var:
    return tape.push(Constant(Var(tape, val), val))


def _record_call(tape, fn, args, kwargs=None) -> Var:
    args = tuple(args)
    kwargs = dict(kwargs or {})
    _check_owner(tape, args)
    try:
        val = fn(*map(getvalue, args), **kwargs)
    except Exception as err:
        raise TraceError(f"{_fn_name(fn)} failed while recording: {err}") from err
    return tape.push(Call(Var(tape, val), fn, args, kwargs))


def _record_bcast(tape, fn, args) -> Var:
    args = tuple(args)
    _check_owner(tape, args)
    try:
        val = broadcast_apply(fn, map(getvalue, args))
    except Exception as err:
        raise TraceError(f"{_fn_name(fn)} failed while recording: {err}") from err
    return tape.push(Bcast(Var(tape, val), fn, args))


def _record_assign(tape, src) -> Var:
    _check_owner(tape, (src,))
    return tape.push(Assign(Var(tape, _copy(src.val)), src))


_RECORDERS = {
    Input: _record_input,
    Constant: _record_constant,
    Call: _record_call,
    Bcast: _record_bcast,
    Assign: _record_assign,
}


def record(tape, kind, *args, **kwargs) -> Var:
    """
    Compute the forward value of a new operation of type `kind`, append it to
    the tape and return its Var (id = new length of the tape).

    If the wrapped function raises, TraceError is raised and nothing is
    appended.
    """
    try:
        recorder = _RECORDERS[kind]
    except KeyError:
        raise TypeError(f"cannot record operation of kind {kind!r}") from None
    return recorder(tape, *args, **kwargs)


def execute(tape, op: Operation) -> Var:
    """Re-execute `op` in place, refreshing its Var's value."""
    return op.execute(tape)


def record_elementwise(fn, args) -> Var:
    """
    Record a numpy ufunc applied to traced operands: Call when every operand
    is 0-d or the ufunc has a core signature (matmul), Bcast otherwise.
    """
    tape = common_tape(args)
    whole = getattr(fn, "signature", None) is not None
    kind = Call if whole or all(np.ndim(getvalue(a)) == 0 for a in args) else Bcast
    return record(tape, kind, fn, tuple(args))


def constant(tape, x) -> Var:
    """Return `x` if it is already a Var, otherwise record it as a Constant."""
    return x if isinstance(x, Var) else record(tape, Constant, x)


def bcast(fn, *args) -> Var:
    """Apply a scalar function elementwise to traced operands."""
    return record(common_tape(args), Bcast, fn, args)


def broadcast_apply(fn, vals):
    vals = list(vals)
    if isinstance(fn, np.ufunc):
        return fn(*vals)
    return np.vectorize(fn)(*vals)


# ---------------------------------------------------------------------------
# helpers

def _check_owner(tape, args):
    for a in args:
        if isinstance(a, Var) and a.tape is not tape:
            raise TapeMismatchError(
                f"variable %{a.id} belongs to a different tape than the operation")


def _copy(val):
    return val.copy() if isinstance(val, np.ndarray) else val


def _fn_name(fn) -> str:
    return getattr(fn, "__name__", repr(fn))


def _args_str(args) -> str:
    return ", ".join(f"%{a.id}" if isinstance(a, Var) else repr(a) for a in args)

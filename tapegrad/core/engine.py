# tapegrad/core/engine.py
"""
Reverse pass over a recorded tape.

Derivatives are themselves recorded on the tape: every VJP rule builds its
result out of Call/Bcast/Constant operations, so replaying the tape in order
refreshes both the forward value and every gradient.
"""
from __future__ import annotations
import logging
import warnings
from typing import Optional

import numpy as np

from ..config import GradConfig, default_config
from ..errors import ShapeMismatchWarning
from .ops import Constant, Call, Bcast, Assign, record, constant
from .tape import Tape, is_trackable
from .var import Var

logger = logging.getLogger(__name__)


def getderiv(tape: Tape, var) -> Var:
    """Return the Var holding the derivative of the result w.r.t. `var`."""
    id = var.id if isinstance(var, Var) else var
    return tape[tape.derivs[id]].var


def setderiv(tape: Tape, var: Var, grad_var: Var) -> None:
    tape.derivs[var.id] = grad_var.id


def _accumulate(tape: Tape, x: Var, dx: Var) -> None:
    # multiply-used variable: total derivative is the sum of all contributions
    if x.id in tape.derivs:
        dx = record(tape, Call, np.add, (dx, getderiv(tape, x)))
    setderiv(tape, x, dx)


def _astype(val, dtype):
    return np.asarray(val, dtype=dtype)[()]


def _widen(tape: Tape, x: Var, dx: Var) -> Var:
    # a derivative is at least as precise as the variable it belongs to
    want = np.asarray(x.val).dtype
    have = np.asarray(dx.val).dtype
    if not (np.issubdtype(want, np.inexact) and np.issubdtype(have, np.number)):
        return dx
    target = np.promote_types(have, want)
    if target == have:
        return dx
    return record(tape, Call, _astype, (dx,), {"dtype": target})


def rev_step(op, i: int, registry, dy: Optional[Var] = None) -> None:
    """Propagate the derivative of `op`'s output to its i-th argument."""
    tape = op.var.tape
    x = op.args[i]
    if dy is None:
        dy = _widen(tape, op.var, getderiv(tape, op.var))
    rule = registry.lookup(op.fn, i)
    dx = constant(tape, rule(dy, i, op))
    _accumulate(tape, x, dx)


def _is_tracked(tape: Tape, arg) -> bool:
    # literals and Constants never need upstream derivatives
    return isinstance(arg, Var) and not isinstance(tape[arg.id], Constant)


def differentiate(tape: Tape, registry=None, config: Optional[GradConfig] = None) -> Tape:
    """
    Run the reverse pass once over a freshly traced tape.

    1. Seed: record Constant(1) (32-bit by default; wider values upcast it)
       as the derivative of the result with respect to itself.
    2. Walk every operation recorded before the seed in reverse order. For
       each Call/Bcast whose output received a derivative, and each argument
       that is a tracked non-constant Var, call the VJP rule and accumulate.
       The incoming derivative is first widened to the precision of the
       op's output, so a 32-bit seed never narrows float64 gradients.
       Assign forwards its derivative to its source unchanged.
    3. Plain numeric inputs the result does not depend on get an explicit
       zero derivative.

    Raises MissingRuleError if an operation on the derivative path has no
    registered rule; the tape must then be discarded.
    """
    if registry is None:
        from ..rules import default_registry as registry
    config = config or default_config()

    if not tape.ops:
        raise ValueError("cannot differentiate an empty tape")
    z = tape.result if tape.resultid is not None else tape.ops[-1].var
    seed = record(tape, Constant, config.seed_dtype(1.0))
    tape.seedid = seed.id
    tape.derivs[z.id] = seed.id

    for op in reversed(tape.ops[:seed.id - 1]):
        if op.var.id not in tape.derivs:
            continue  # does not reach the result
        if isinstance(op, (Call, Bcast)):
            tracked = [i for i, arg in enumerate(op.args) if _is_tracked(tape, arg)]
            if not tracked:
                continue
            dy = _widen(tape, op.var, getderiv(tape, op.var))
            for i in tracked:
                rev_step(op, i, registry, dy)
        elif isinstance(op, Assign) and _is_tracked(tape, op.src):
            _accumulate(tape, op.src, getderiv(tape, op.var))

    for op in list(tape.inputs()):
        if op.field_path is None and op.var.id not in tape.derivs \
                and is_trackable(op.var.val):
            setderiv(tape, op.var, record(tape, Constant, np.zeros_like(op.var.val)))

    logger.debug("reverse pass: %d forward ops, %d ops after differentiation",
                 seed.id - 1, len(tape))
    return tape


def check_deriv_sizes(tape: Tape) -> int:
    """
    For each variable with a derivative on this tape check that the derivative
    has the same shape as the variable. Mismatches are reported with
    ShapeMismatchWarning; returns how many were found.
    """
    mismatches = 0
    for var_id, grad_var_id in tape.derivs.items():
        var_shape = np.shape(tape[var_id].var.val)
        grad_shape = np.shape(tape[grad_var_id].var.val)
        if var_shape != grad_shape:
            mismatches += 1
            warnings.warn(
                f"Gradient %{grad_var_id} has shape {grad_shape}, "
                f"but original variable %{var_id} has shape {var_shape}",
                ShapeMismatchWarning, stacklevel=2)
    return mismatches

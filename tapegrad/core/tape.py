# tapegrad/core/tape.py
from __future__ import annotations
import copy
import numbers
import types
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

from ..device import CPUContext
from ..errors import UnpackError
from .ops import Input, record
from .var import Var


class Tape:
    """
    Linear recording of one traced execution.

    Attributes
    ----------
    ops : List[Operation]
        Operations in data-dependency order. Append-only while tracing; replay
        only refreshes values. `ops[i]` produces the Var with id i + 1.
    derivs : Dict[int, int]
        var id -> id of the Var holding d(result)/d(var). Filled by the
        reverse pass.
    sfields : Dict[int, Dict[Tuple[str, ...], int]]
        argid -> {field path -> var id} for composite arguments.
    resultid : Optional[int]
        Id of the traced function's output.
    seedid : Optional[int]
        Id of the Constant seeded by the reverse pass (d(result)/d(result)).
    context : CPUContext
        Execution context threaded through value creation.
    """

    def __init__(self, context: Optional[CPUContext] = None):
        self.ops: List = []
        self.derivs: Dict[int, int] = {}
        self.sfields: Dict[int, Dict[Tuple[str, ...], int]] = {}
        self.resultid: Optional[int] = None
        self.seedid: Optional[int] = None
        self.context = context or CPUContext()

    def push(self, op) -> Var:
        """Append `op` and give its Var the new length of the tape as id."""
        self.ops.append(op)
        op.var.id = len(self.ops)
        return op.var

    def __getitem__(self, id: int):
        if id < 1:
            raise IndexError(f"tape ids start at 1, got {id}")
        return self.ops[id - 1]

    def __len__(self):
        return len(self.ops)

    def __iter__(self) -> Iterator:
        return iter(self.ops)

    def __repr__(self):
        return f"Tape({len(self.ops)} ops)"

    def inputs(self) -> Iterator:
        return (op for op in self.ops if isinstance(op, Input))

    @property
    def result(self) -> Var:
        return self[self.resultid].var

    def dump(self) -> str:
        """One operation per line, in tape order."""
        return "\n".join(repr(op) for op in self.ops)


# ---------------------------------------------------------------------------
# composite arguments

def is_composite(x: Any) -> bool:
    """
    Composite arguments are objects carrying attributes (dataclasses or plain
    classes). Numbers, arrays, containers, callables, classes and modules are
    not.
    """
    if isinstance(x, (Var, np.ndarray, numbers.Number, str, bytes,
                      list, tuple, dict, set, type, types.ModuleType)):
        return False
    if callable(x):
        return False
    return hasattr(x, "__dict__")


def is_trackable(x: Any) -> bool:
    """Numeric leaves recorded as Inputs: non-bool reals and numeric arrays."""
    if isinstance(x, (bool, np.bool_)):
        return False
    if isinstance(x, np.ndarray):
        return np.issubdtype(x.dtype, np.number)
    return isinstance(x, numbers.Real)


def unpack(tape: Tape, value: Any, argid: int, field_path: Tuple[str, ...] = ()):
    """
    Record every numeric field of composite `value` as an Input and return a
    shadow copy whose numeric fields hold the new Vars. The caller's object is
    left untouched. Nested composites are unpacked recursively with extended
    field paths; flags and non-numeric fields are copied over as they are.

    The mapping field path -> var id is stored in `tape.sfields[argid]`.
    """
    if not field_path:
        if argid in tape.sfields:
            raise UnpackError(f"argument {argid} is already unpacked on this tape")
        tape.sfields[argid] = {}
    shadow = copy.copy(value)
    for name, field in list(vars(value).items()):
        path = field_path + (name,)
        if isinstance(field, Var):
            raise UnpackError(
                f"field {'.'.join(path)} of argument {argid} already holds a traced value")
        if is_trackable(field):
            var = record(tape, Input, field, argid=argid, field_path=path)
            setattr(shadow, name, var)
            tape.sfields[argid][path] = var.id
        elif is_composite(field):
            setattr(shadow, name, unpack(tape, field, argid, path))
    return shadow


def get_field(value: Any, path: Tuple[str, ...]) -> Any:
    for name in path:
        value = getattr(value, name)
    return value


def set_field(value: Any, path: Tuple[str, ...], new) -> None:
    setattr(get_field(value, path[:-1]), path[-1], new)

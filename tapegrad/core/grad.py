# tapegrad/core/grad.py
#-----------------------------------------------------------------------------
# Top-level entry: trace f over tracked arguments, differentiate the tape,
# cache it per argument signature and replay it on later calls.
#-----------------------------------------------------------------------------
from __future__ import annotations
import logging
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, Union

import numpy as np

from ..config import GradConfig, default_config
from ..device import guess_context
from ..errors import ReplayError
from .engine import differentiate, check_deriv_sizes
from .ops import Input, record, constant
from .tape import Tape, unpack, is_composite, is_trackable, get_field, set_field
from .var import Var

logger = logging.getLogger(__name__)

FieldPath = Tuple[str, ...]


# ------------------------------- grad result -------------------------------- #
class GradResult:
    """
    Gradients of a traced function, indexed by argument position.

      - g[i] for a numeric argument: value of the same shape as the argument
      - g[i] for a composite argument: {field path: value}, only for fields
        that received a derivative
      - g[i, path] for one field of a composite argument; `path` is a tuple of
        attribute names or a dotted string ("inner.x")

    Values are read from the tape on every access, so after a replay they
    reflect the latest call. The view never modifies the tape.
    """

    def __init__(self, tape: Tape):
        self.tape = tape
        self.gvars: Dict[int, Union[int, Dict[FieldPath, int]]] = {}
        # composite arguments: not all fields may have derivatives
        for argid, dct in tape.sfields.items():
            self.gvars[argid] = {path: tape.derivs[var_id]
                                 for path, var_id in dct.items()
                                 if var_id in tape.derivs}
        for op in tape.inputs():
            if op.argid not in tape.sfields and op.var.id in tape.derivs:
                self.gvars[op.argid] = tape.derivs[op.var.id]

    def __getitem__(self, key):
        if isinstance(key, tuple):
            argid, path = key
            gvar = self.gvars[argid]
            if not isinstance(gvar, dict):
                raise TypeError(f"argument {argid} is not a composite argument")
            return self.tape[gvar[_as_path(path)]].var.val
        gvar = self.gvars[key]
        if isinstance(gvar, dict):
            return {path: self.tape[id].var.val for path, id in gvar.items()}
        return self.tape[gvar].var.val

    def __contains__(self, argid) -> bool:
        return argid in self.gvars

    def __iter__(self):
        return iter(sorted(self.gvars))

    def __len__(self):
        return len(self.gvars)

    def keys(self):
        return sorted(self.gvars)

    def items(self):
        return [(argid, self[argid]) for argid in self.keys()]

    def __repr__(self):
        return f"GradResult({len(self.gvars)})"


def _as_path(path) -> FieldPath:
    if isinstance(path, str):
        return tuple(path.split("."))
    return tuple(path)


# -------------------------------- trace cache -------------------------------- #
class GradCache:
    """
    Differentiated tapes keyed by (function, argument signature).

    The signature of an argument is its type for composite arguments, its
    shape for numeric ones, and the value itself for any other hashable
    argument (such arguments are baked into the trace).

    Replay mutates the cached tape in place; a cache must not be used from
    several threads at once.

    maxsize : Optional[int]
        Evict the least recently used tape once more than `maxsize` are held.
        None keeps every entry.
    """

    def __init__(self, maxsize: Optional[int] = None):
        self.maxsize = maxsize
        self._tapes: "OrderedDict[Hashable, Tape]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(f: Callable, args) -> Hashable:
        return (f, tuple(_signature(a) for a in args))

    def get(self, key) -> Optional[Tape]:
        tape = self._tapes.get(key)
        if tape is None:
            self.misses += 1
            return None
        self.hits += 1
        self._tapes.move_to_end(key)
        return tape

    def put(self, key, tape: Tape) -> None:
        self._tapes[key] = tape
        self._tapes.move_to_end(key)
        if self.maxsize is not None:
            while len(self._tapes) > self.maxsize:
                evicted, _ = self._tapes.popitem(last=False)
                logger.debug("evicted cached tape for %s", _describe(evicted))

    def clear(self) -> None:
        self._tapes.clear()
        self.hits = self.misses = 0

    def __contains__(self, key) -> bool:
        return key in self._tapes

    def __len__(self):
        return len(self._tapes)

    def __repr__(self):
        return f"GradCache({len(self._tapes)} tapes, hits={self.hits}, misses={self.misses})"


def _is_numeric_arg(arg) -> bool:
    if isinstance(arg, (list, tuple)):
        # only sequences that form a numeric array are tracked; others are literals
        try:
            dtype = np.asarray(arg).dtype
        except ValueError:
            return False
        return np.issubdtype(dtype, np.number)
    return is_trackable(arg)


def _signature(arg):
    if is_composite(arg):
        return type(arg)
    if _is_numeric_arg(arg):
        return np.shape(arg)
    try:
        hash(arg)
    except TypeError:
        return type(arg)
    return ("literal", arg)


def _describe(key) -> str:
    f, sig = key
    return f"{getattr(f, '__name__', repr(f))}{sig}"


_default_cache = GradCache()


def get_default_cache() -> GradCache:
    return _default_cache


@contextmanager
def use_cache(cache: Optional[GradCache] = None):
    """
    Temporarily route cached grad() calls to another (by default fresh) cache:
        with use_cache() as cache:
            grad(f, x)
    """
    global _default_cache
    prev = _default_cache
    try:
        _default_cache = cache if cache is not None else GradCache(default_config().cache_maxsize)
        yield _default_cache
    finally:
        _default_cache = prev


# ------------------------------ trace & replay ------------------------------- #
def make_tracked_args(tape: Tape, args) -> list:
    """
    Wrap call arguments: numeric ones become Inputs, composite ones are
    unpacked field by field into shadow copies, anything else passes through
    untracked.
    """
    targs = []
    for argid, arg in enumerate(args):
        if is_composite(arg):
            targ = unpack(tape, arg, argid)
        elif _is_numeric_arg(arg):
            targ = record(tape, Input, arg, argid=argid)
        else:
            targ = arg
        targs.append(targ)
    return targs


def trace(f: Callable, *args, config: Optional[GradConfig] = None) -> Tape:
    """Run `f` over tracked arguments and return the forward tape."""
    config = config or default_config()
    tape = Tape(guess_context(args, config.dtype))
    targs = make_tracked_args(tape, args)
    tres = f(*targs)
    if not isinstance(tres, Var):
        # output independent of the arguments
        tres = constant(tape, tres)
    tape.resultid = tres.id
    return tape


def play(tape: Tape, *args) -> Any:
    """
    Replay a tape with new argument values: overwrite every Input from the
    matching argument (by position, and field path for composite arguments),
    then re-execute all operations in order. Returns the new result value.
    """
    for op in tape.inputs():
        if op.argid >= len(args):
            continue
        arg = args[op.argid]
        val = arg if op.field_path is None else get_field(arg, op.field_path)
        op.var.val = tape.context.promote(val)
    for op in tape.ops:
        try:
            op.execute(tape)
        except Exception as err:
            raise ReplayError(f"replay failed at {op!r}: {err}") from err
    return tape.result.val


def _grad(f: Callable, args, registry=None, config: Optional[GradConfig] = None):
    config = config or default_config()
    tape = trace(f, *args, config=config)
    differentiate(tape, registry, config)
    if config.check_shapes:
        check_deriv_sizes(tape)
    return tape.result.val, GradResult(tape)


def grad(f: Callable, *args,
         mode: Optional[str] = None,
         static: Optional[bool] = None,
         cache: Optional[GradCache] = None,
         registry=None,
         compile: Optional[Callable[[Tape], Tape]] = None,
         config: Optional[GradConfig] = None):
    """
    Find gradient of `f` w.r.t. its arguments.
    Example:

        val, g = grad(np.sum, np.random.rand(3))

    where:
      - val is the value of `f` at this point
      - g is a GradResult, indexed by argument position:
          - for arrays: arrays of the same shape
          - for reals: reals
          - for composite objects: {(field, path): value} dicts

    mode="cached" (default) reuses the tape traced for the first call with
    the same signature: only the forward replay runs, the derivative structure
    is fixed at first trace. This is only correct if the operations `f`
    performs depend on argument shapes/types, not on their values.
    mode="retrace" (or static=False) traces and differentiates every call.

    `compile` receives a freshly differentiated tape once per cache miss and
    returns the tape to store; identity by default.

    All gradients can be applied to the original arguments with `update()`.
    """
    config = config or default_config()
    if static is not None:
        mode = "cached" if static else "retrace"
    mode = mode or config.mode
    if mode == "retrace":
        return _grad(f, args, registry, config)
    if mode != "cached":
        raise ValueError(f"unknown mode {mode!r}; expected 'cached' or 'retrace'")

    cache = cache if cache is not None else get_default_cache()
    # key consists of function and type of argument (for composites) or its shape
    key = cache.key(f, args)
    tape = cache.get(key)
    if tape is not None:
        logger.debug("cache hit for %s, replaying %d ops", _describe(key), len(tape))
        val = play(tape, *args)
        return val, GradResult(tape)

    logger.debug("cache miss for %s, tracing", _describe(key))
    val, g = _grad(f, args, registry, config)
    tape = compile(g.tape) if compile is not None else g.tape
    cache.put(key, tape)
    return val, GradResult(tape)


evaluate = grad


# --------------------------------- updates ----------------------------------- #
def update(arg, gradient, step: float = 1.0):
    """
    Apply a gradient to the original argument: x <- x - step * g.

    Arrays are updated in place, composite arguments field by field (in place
    as well); scalars are immutable, so the new value is returned.
    """
    if isinstance(gradient, dict):
        for path, g in gradient.items():
            set_field(arg, path, _step(get_field(arg, path), g, step))
        return arg
    return _step(arg, gradient, step)


def _step(x, g, step):
    if isinstance(x, np.ndarray):
        x -= step * np.asarray(g, dtype=x.dtype)
        return x
    return x - step * g

# tapegrad/rules/reductions.py
"""
VJP rules for whole-value Calls: reductions, products, reshaping and
indexing.
"""
import operator

import numpy as np

from ..core.ops import record, Call
from ..core.var import getvalue
from .registry import register, arg_shape, ones_like_arg, sum_to_shape


def _reduction_axes(op):
    axis = op.kwargs.get("axis", op.args[1] if len(op.args) > 1 else None)
    if axis is None:
        return None
    ndim = len(arg_shape(op, 0))
    axes = (axis,) if np.isscalar(axis) else tuple(axis)
    return tuple(a % ndim for a in axes)


def _restore_axes(dy, op):
    """Re-insert the axes removed by a reduction so dy broadcasts against x."""
    axes = _reduction_axes(op)
    if axes is None or op.kwargs.get("keepdims", False):
        return dy
    return np.expand_dims(dy, axes)


def _reduced_count(op):
    shape = arg_shape(op, 0)
    axes = _reduction_axes(op)
    if axes is None:
        return int(np.prod(shape))
    return int(np.prod([shape[a] for a in axes]))


@register(np.sum, 0)
def _sum(dy, argnum, op):
    return _restore_axes(dy, op) * ones_like_arg(op, 0)


@register(np.mean, 0)
def _mean(dy, argnum, op):
    return _restore_axes(dy, op) * ones_like_arg(op, 0) / _reduced_count(op)


def _matmul_vjp(dy, argnum, a, b):
    a_nd, b_nd = np.ndim(getvalue(a)), np.ndim(getvalue(b))
    if a_nd == 1 and b_nd == 1:
        return dy * (b if argnum == 0 else a)
    if argnum == 0:
        if b_nd == 1:
            return np.outer(dy, b)
        if a_nd == 1:
            return np.matmul(b, dy)
        return np.matmul(dy, np.transpose(b))
    if a_nd == 1:
        return np.outer(a, dy)
    return np.matmul(np.transpose(a), dy)


@register(np.matmul, 0, 1)
def _matmul(dy, argnum, op):
    a, b = op.args
    return _matmul_vjp(dy, argnum, a, b)


@register(np.dot, 0, 1)
def _dot(dy, argnum, op):
    a, b = op.args
    if np.ndim(getvalue(a)) == 0 or np.ndim(getvalue(b)) == 0:
        return sum_to_shape(dy * op.args[1 - argnum], arg_shape(op, argnum))
    return _matmul_vjp(dy, argnum, a, b)


@register(np.transpose, 0)
def _transpose(dy, argnum, op):
    axes = op.kwargs.get("axes")
    if axes is None and len(op.args) > 1:
        axes = op.args[1]
    if axes is None:
        return np.transpose(dy)
    return np.transpose(dy, axes=tuple(np.argsort(axes)))


def _reshape_back(dy, argnum, op):
    return np.reshape(dy, arg_shape(op, 0))


for _fn in (np.reshape, np.expand_dims, np.squeeze, np.ravel):
    register(_fn, 0)(_reshape_back)


def _scatter(dy, index, shape, dtype):
    out = np.zeros(shape, dtype=np.promote_types(np.asarray(dy).dtype, dtype))
    np.add.at(out, index, dy)
    return out


@register(operator.getitem, 0)
def _getitem(dy, argnum, op):
    dtype = np.promote_types(np.asarray(getvalue(op.args[0])).dtype, np.float32)
    return record(dy.tape, Call, _scatter, (dy,),
                  {"index": op.args[1], "shape": arg_shape(op, 0), "dtype": dtype})

# tapegrad/rules/arithmetic.py
"""
VJP rules for the arithmetic ufuncs Var operators are routed through.

Each rule reduces its contribution back to the argument's shape, so the same
rule serves scalar Calls and broadcasting Bcasts.
"""
import numpy as np

from .registry import register, sum_to_shape, arg_shape


def _unbroadcast(dx, op, argnum):
    return sum_to_shape(dx, arg_shape(op, argnum))


@register(np.add, 0, 1)
def _add(dy, argnum, op):
    return _unbroadcast(dy, op, argnum)


@register(np.subtract, 0, 1)
def _sub(dy, argnum, op):
    return _unbroadcast(dy if argnum == 0 else -dy, op, argnum)


@register(np.multiply, 0, 1)
def _mul(dy, argnum, op):
    other = op.args[1 - argnum]
    return _unbroadcast(dy * other, op, argnum)


@register(np.true_divide, 0, 1)
def _div(dy, argnum, op):
    x, y = op.args
    if argnum == 0:
        return _unbroadcast(dy / y, op, 0)
    # d(x/y)/dy = -x / y^2
    return _unbroadcast(-dy * x / (y * y), op, 1)


@register(np.negative, 0)
def _neg(dy, argnum, op):
    return -dy


@register(np.power, 0, 1)
def _pow(dy, argnum, op):
    x, p = op.args
    if argnum == 0:
        # d(x^p)/dx = p * x^(p-1)
        return _unbroadcast(dy * p * x ** (p - 1), op, 0)
    # d(x^p)/dp = x^p * log(x)
    return _unbroadcast(dy * op.var * np.log(x), op, 1)


@register(np.square, 0)
def _square(dy, argnum, op):
    return dy * 2.0 * op.args[0]


@register(np.absolute, 0)
def _abs(dy, argnum, op):
    return dy * np.sign(op.args[0])


@register(np.maximum, 0, 1)
def _maximum(dy, argnum, op):
    x, y = op.args
    mask = np.greater_equal(x, y) if argnum == 0 else np.less(x, y)
    return _unbroadcast(dy * mask, op, argnum)


@register(np.minimum, 0, 1)
def _minimum(dy, argnum, op):
    x, y = op.args
    mask = np.less_equal(x, y) if argnum == 0 else np.greater(x, y)
    return _unbroadcast(dy * mask, op, argnum)

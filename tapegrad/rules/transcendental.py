# tapegrad/rules/transcendental.py
import numpy as np

from .registry import register


@register(np.exp, 0)
def _exp(dy, argnum, op):
    return dy * op.var


@register(np.log, 0)
def _log(dy, argnum, op):
    return dy / op.args[0]


@register(np.sqrt, 0)
def _sqrt(dy, argnum, op):
    return dy * 0.5 / op.var


@register(np.sin, 0)
def _sin(dy, argnum, op):
    return dy * np.cos(op.args[0])


@register(np.cos, 0)
def _cos(dy, argnum, op):
    return -dy * np.sin(op.args[0])


@register(np.tanh, 0)
def _tanh(dy, argnum, op):
    return dy * (1.0 - op.var * op.var)

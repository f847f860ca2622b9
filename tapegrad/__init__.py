# tapegrad/__init__.py
# Reverse-mode differentiation over cached, replayable tapes

from .core import (
    Var, Tape, GradResult, GradCache,
    Input, Constant, Call, Bcast, Assign,
    record, constant, bcast, differentiate,
    grad, evaluate, trace, play, update, use_cache,
)
from .rules import VJPRegistry, default_registry, register, erf, norm_cdf
from .config import GradConfig, default_config, use_config
from .device import CPUContext
from .errors import (
    TapeGradError, TraceError, ReplayError, MissingRuleError,
    UnpackError, TapeMismatchError, ShapeMismatchWarning,
)

__all__ = [
    # Core
    'Var', 'Tape', 'GradResult', 'GradCache',
    'Input', 'Constant', 'Call', 'Bcast', 'Assign',
    'record', 'constant', 'bcast', 'differentiate',
    # Entry points
    'grad', 'evaluate', 'trace', 'play', 'update', 'use_cache',
    # Rules
    'VJPRegistry', 'default_registry', 'register', 'erf', 'norm_cdf',
    # Config
    'GradConfig', 'default_config', 'use_config', 'CPUContext',
    # Errors
    'TapeGradError', 'TraceError', 'ReplayError', 'MissingRuleError',
    'UnpackError', 'TapeMismatchError', 'ShapeMismatchWarning',
]

"""
End-to-end gradients, reverse-pass properties, trace cache and replay.
"""
import math
from dataclasses import dataclass, field

import numpy as np
import pytest

import tapegrad
from tapegrad import (
    grad, evaluate, trace, play, update, bcast, record, differentiate,
    Tape, Input, Constant, Call, GradCache, GradConfig, VJPRegistry,
    default_registry, use_cache, use_config,
    MissingRuleError, ReplayError, ShapeMismatchWarning,
)
from tapegrad.core import getderiv


@pytest.fixture
def cache():
    return GradCache()


# ------------------------------ scenarios ---------------------------------- #
def test_sum_of_list(cache):
    val, g = evaluate(np.sum, [1.0, 2.0, 3.0], cache=cache)
    assert val == 6.0
    np.testing.assert_allclose(g[0], [1.0, 1.0, 1.0])


def test_builtin_sum(cache):
    val, g = grad(sum, np.array([1.0, 2.0, 3.0]), cache=cache)
    assert val == 6.0
    np.testing.assert_allclose(g[0], [1.0, 1.0, 1.0])


def test_product_of_scalars(cache):
    val, g = grad(lambda x, y: x * y, 3.0, 4.0, cache=cache)
    assert val == 12.0
    assert g[0] == 4.0
    assert g[1] == 3.0
    assert len(g) == 2
    assert g.keys() == [0, 1]
    assert repr(g) == "GradResult(2)"


def test_elementwise_composition(cache):
    x = np.array([0.5, 1.0, 2.0])
    f = lambda x: np.sum(np.exp(x) * np.sin(x) / x)
    val, g = grad(f, x, cache=cache)
    expected = (np.exp(x) * np.sin(x) + np.exp(x) * np.cos(x)) / x - np.exp(x) * np.sin(x) / x ** 2
    np.testing.assert_allclose(val, f(x))
    np.testing.assert_allclose(g[0], expected, rtol=1e-10)


# ------------------------- reverse-pass properties -------------------------- #
def test_seed_is_one():
    tape = trace(lambda x: x * 2.0, 3.0)
    differentiate(tape)
    seed = getderiv(tape, tape.result)
    assert seed.val == 1
    assert seed.val.dtype == np.float32
    assert isinstance(tape[seed.id], Constant)
    assert tape.seedid == seed.id


@pytest.mark.parametrize("f, x, expected", [
    (lambda x: x / 10.0, 3.0, 0.1),
    (lambda x: 0.1 * x, 3.0, 0.1),
    (lambda x: x[0] * 0.1, np.array([3.0, 4.0]), [0.1, 0.0]),
    (lambda x: np.sum(x / 10.0), np.array([3.0, 4.0]), [0.1, 0.1]),
], ids=["div", "rmul", "getitem", "array_div"])
def test_float64_gradients_keep_full_precision(f, x, expected):
    # 0.1 is not representable in 32 bits; compare exactly at 64 bits
    _, g = grad(f, x, mode="retrace")
    gx = np.asarray(g[0])
    assert gx.dtype == np.float64
    assert gx.tolist() == expected


def test_precision_survives_replay(cache):
    f = lambda x: np.sum(x * 0.1)
    grad(f, np.array([1.0, 2.0]), cache=cache)
    _, g = grad(f, np.array([5.0, 6.0]), cache=cache)
    assert g[0].dtype == np.float64
    assert g[0].tolist() == [0.1, 0.1]


def test_multiply_used_variable_accumulates(cache):
    _, g = grad(lambda x: 3.0 * x + 5.0 * x, 2.0, cache=cache)
    assert g[0] == 8.0

    _, g = grad(lambda x: x * x + np.sin(x), 0.3, mode="retrace")
    np.testing.assert_allclose(g[0], 2 * 0.3 + np.cos(0.3))


def test_accumulation_is_recorded_as_add():
    tape = trace(lambda x: x * 2.0 + x * 3.0, 1.0)
    n = len(tape)
    differentiate(tape)
    adds = [op for op in tape.ops[n:] if isinstance(op, Call) and op.fn is np.add]
    assert len(adds) == 1
    x = tape[1].var
    assert tape.derivs[x.id] == adds[0].var.id


class _CountingRegistry(VJPRegistry):
    def __init__(self):
        super().__init__()
        self._rules = dict(default_registry._rules)
        self.seen = []

    def lookup(self, fn, argnum):
        self.seen.append((fn, argnum))
        return super().lookup(fn, argnum)


def test_constants_are_never_differentiated():
    tape = Tape()
    x = record(tape, Input, 2.0, argid=0)
    c = record(tape, Constant, 3.0)
    y = x * c
    tape.resultid = y.id
    registry = _CountingRegistry()
    differentiate(tape, registry)
    assert registry.seen == [(np.multiply, 0)]
    assert c.id not in tape.derivs
    assert getderiv(tape, x).val == 3.0


def test_unreachable_ops_are_skipped():
    def f(x):
        _ = bcast(math.atan, x)  # no rule registered, but unused
        return np.sum(x * x)

    val, g = grad(f, np.array([1.0, 2.0]), mode="retrace")
    assert val == 5.0
    np.testing.assert_allclose(g[0], [2.0, 4.0])


def test_unused_plain_argument_gets_zero_gradient(cache):
    _, g = grad(lambda x, y: x * 2.0, 1.0, np.ones(3), cache=cache)
    assert g[0] == 2.0
    np.testing.assert_allclose(g[1], np.zeros(3))


def test_assign_forwards_derivative():
    def f(x):
        y = record(x.tape, tapegrad.Assign, x)
        return np.sum(y * y)

    _, g = grad(f, np.array([1.0, 3.0]), mode="retrace")
    np.testing.assert_allclose(g[0], [2.0, 6.0])


def test_missing_rule_is_fatal_and_not_cached(cache):
    def f(x):
        return np.sum(bcast(math.atan, x))

    with pytest.raises(MissingRuleError) as exc:
        grad(f, np.array([1.0, 2.0]), cache=cache)
    assert exc.value.argnum == 0
    assert len(cache) == 0


def test_numpy_functions_without_rules_fail_on_the_derivative_path():
    x = np.array([1.0, 2.0])
    tape = trace(np.cumsum, x)
    op = tape[tape.resultid]
    assert isinstance(op, Call) and op.fn is np.cumsum
    np.testing.assert_allclose(tape.result.val, [1.0, 3.0])

    with pytest.raises(MissingRuleError) as exc:
        grad(lambda x: np.sum(np.cumsum(x)), x, mode="retrace")
    assert exc.value.fn is np.cumsum

    # Vars nested in containers are not dispatched
    with pytest.raises(TypeError):
        trace(lambda x: np.concatenate([x, x]), x)


def test_custom_rule_for_bcast():
    registry = default_registry.copy()

    @registry.register(math.atan, 0)
    def _atan(dy, argnum, op):
        return dy / (1.0 + op.args[0] * op.args[0])

    x = np.array([0.0, 1.0, 2.0])
    val, g = grad(lambda x: np.sum(bcast(math.atan, x)), x,
                  registry=registry, mode="retrace")
    np.testing.assert_allclose(val, np.sum(np.arctan(x)))
    np.testing.assert_allclose(g[0], 1.0 / (1.0 + x * x))
    assert (math.atan, 0) not in default_registry


def test_non_scalar_output_warns_about_seed_shape():
    with pytest.warns(ShapeMismatchWarning):
        val, g = grad(lambda x: x * 2.0, np.ones(3), mode="retrace")
    np.testing.assert_allclose(val, [2.0, 2.0, 2.0])
    np.testing.assert_allclose(g[0], [2.0, 2.0, 2.0])


def test_shape_check_can_be_disabled(recwarn):
    grad(lambda x: x * 2.0, np.ones(3), mode="retrace",
         config=GradConfig(check_shapes=False))
    assert not [w for w in recwarn if issubclass(w.category, ShapeMismatchWarning)]


# ------------------------------ composites --------------------------------- #
@dataclass
class Inner:
    x: float = 0.5
    label: str = "inner"


@dataclass
class Params:
    a: float = 2.0
    b: np.ndarray = field(default_factory=lambda: np.array([1.0, 2.0]))
    enabled: bool = True
    inner: Inner = field(default_factory=Inner)


def test_composite_round_trip(cache):
    p = Params()
    val, g = grad(lambda p: p.a * np.sum(p.b), p, cache=cache)
    assert val == 6.0
    fields = g[0]
    assert set(fields) == {("a",), ("b",)}
    assert fields[("a",)] == 3.0
    np.testing.assert_allclose(fields[("b",)], [2.0, 2.0])
    assert g[0, "a"] == 3.0
    np.testing.assert_allclose(g[0, ("b",)], [2.0, 2.0])
    # caller's object is not rewritten
    assert isinstance(p.a, float) and isinstance(p.b, np.ndarray)


def test_nested_composite_and_mixed_arguments(cache):
    def f(p, scale):
        return scale * p.a * p.inner.x if p.enabled else scale

    val, g = grad(f, Params(), 3.0, cache=cache)
    assert val == 3.0
    assert g[0, "inner.x"] == 6.0
    assert g[0, "a"] == 1.5
    assert g[1] == 1.0
    with pytest.raises(TypeError):
        g[1, "a"]


def test_composite_replay_uses_new_field_values(cache):
    f = lambda p: p.a * np.sum(p.b)
    grad(f, Params(), cache=cache)
    q = Params(a=4.0, b=np.array([1.0, 1.0]))
    val, g = grad(f, q, cache=cache)
    assert cache.hits == 1
    assert val == 8.0
    assert g[0, "a"] == 2.0
    np.testing.assert_allclose(g[0, "b"], [4.0, 4.0])


# --------------------------- cache and replay ------------------------------- #
def _model(x, y):
    return np.sum(np.tanh(x) * y) + np.sum(x ** 2)


def test_replay_matches_fresh_trace(cache):
    rng = np.random.default_rng(0)
    a = (rng.normal(size=4), rng.normal(size=4))
    b = (rng.normal(size=4), rng.normal(size=4))

    grad(_model, *a, cache=cache)
    val, g = grad(_model, *b, cache=cache)
    assert cache.hits == 1 and len(cache) == 1

    val_fresh, g_fresh = grad(_model, *b, mode="retrace")
    np.testing.assert_allclose(val, val_fresh, rtol=0, atol=0)
    np.testing.assert_allclose(g[0], g_fresh[0], rtol=0, atol=0)
    np.testing.assert_allclose(g[1], g_fresh[1], rtol=0, atol=0)


def test_replay_does_not_grow_or_redifferentiate(cache):
    grad(_model, np.ones(3), np.ones(3), cache=cache)
    (tape,) = cache._tapes.values()
    n, derivs = len(tape), dict(tape.derivs)
    grad(_model, np.zeros(3), np.full(3, 2.0), cache=cache)
    assert len(tape) == n
    assert tape.derivs == derivs


def test_different_shape_traces_fresh(cache):
    val3, g3 = grad(np.sum, np.ones(3), cache=cache)
    val4, g4 = grad(np.sum, np.ones(4), cache=cache)
    assert len(cache) == 2
    assert cache.hits == 0
    assert val4 == 4.0
    assert g4[0].shape == (4,)


def test_literal_arguments_are_part_of_the_key(cache):
    def f(x, how):
        return x * 2.0 if how == "double" else x * 3.0

    _, g = grad(f, 1.0, "double", cache=cache)
    assert g[0] == 2.0
    _, g = grad(f, 1.0, "triple", cache=cache)
    assert g[0] == 3.0
    assert len(cache) == 2
    assert 1 not in g


def test_string_sequences_pass_through_as_literals(cache):
    def f(x, names):
        return x * float(len(names))

    val, g = grad(f, 3.0, ("a", "b"), cache=cache)
    assert val == 6.0
    assert g[0] == 2.0
    assert 1 not in g
    _, g = grad(f, 3.0, ("a", "b", "c"), cache=cache)
    assert g[0] == 3.0
    assert len(cache) == 2

    # numeric sequences are still tracked
    _, g = grad(lambda xs: np.sum(xs * xs), (1.0, 2.0), cache=cache)
    np.testing.assert_allclose(g[0], [2.0, 4.0])


def test_compile_hook_runs_once_per_miss(cache):
    calls = []

    def compile(tape):
        calls.append(tape)
        return tape

    grad(_model, np.ones(2), np.ones(2), cache=cache, compile=compile)
    grad(_model, np.zeros(2), np.ones(2), cache=cache, compile=compile)
    assert len(calls) == 1
    key = GradCache.key(_model, (np.ones(2), np.ones(2)))
    assert cache.get(key) is calls[0]


def test_retrace_mode_bypasses_cache(cache):
    grad(np.sum, np.ones(2), mode="retrace", cache=cache)
    grad(np.sum, np.ones(2), static=False, cache=cache)
    assert len(cache) == 0
    with pytest.raises(ValueError):
        grad(np.sum, np.ones(2), mode="sometimes")


def test_lru_eviction():
    cache = GradCache(maxsize=1)
    grad(np.sum, np.ones(2), cache=cache)
    grad(np.sum, np.ones(3), cache=cache)
    assert len(cache) == 1
    assert GradCache.key(np.sum, (np.ones(3),)) in cache
    assert GradCache.key(np.sum, (np.ones(2),)) not in cache
    cache.clear()
    assert len(cache) == 0


def test_default_cache_is_scoped():
    with use_cache() as scoped:
        grad(np.sum, np.ones(5))
        assert len(scoped) == 1
    assert tapegrad.core.get_default_cache() is not scoped


def test_use_config_switches_mode():
    with use_cache() as scoped, use_config(mode="retrace"):
        grad(np.sum, np.ones(2))
        assert len(scoped) == 0
    with pytest.raises(ValueError):
        GradConfig(mode="bogus")


def test_seed_dtype_from_config():
    tape = trace(lambda x: x + 1.0, 1.0)
    differentiate(tape, config=GradConfig(seed_dtype=np.float64))
    assert tape[tape.seedid].var.val.dtype == np.float64


def test_replay_failure_raises_replay_error(cache):
    registry = default_registry.copy()
    registry.register(math.sqrt, 0)(lambda dy, i, op: dy * 0.5 / op.var)
    f = lambda x: np.sum(bcast(math.sqrt, x))
    grad(f, np.array([1.0, 4.0]), cache=cache, registry=registry)
    with pytest.raises(ReplayError):
        grad(f, np.array([-1.0, 4.0]), cache=cache, registry=registry)


def test_play_returns_new_result():
    tape = trace(lambda x, y: x * y, 2.0, 5.0)
    differentiate(tape)
    assert play(tape, 3.0, 7.0) == 21.0


# ------------------------------- updates ------------------------------------ #
def test_update_applies_gradients():
    x = np.array([1.0, 2.0])
    _, g = grad(lambda x: np.sum(x * x), x, mode="retrace")
    out = update(x, g[0], step=0.5)
    assert out is x
    np.testing.assert_allclose(x, [0.0, 0.0])

    assert update(3.0, 1.0, step=2.0) == 1.0

    p = Params()
    _, g = grad(lambda p: p.a * np.sum(p.b), p, mode="retrace")
    update(p, g[0], step=0.1)
    assert p.a == pytest.approx(2.0 - 0.3)
    np.testing.assert_allclose(p.b, [0.8, 1.8])

from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
import pytest

from lazynet.graph import builders
from lazynet.graph.ir import Graph
from lazynet.ops.math import BUILTINS, default_registry
from lazynet.runtime.executor import Net

EPS = 1e-6


def _numeric_grad(net: Net, name: str, loss: str) -> np.ndarray:
    base = np.array(net.get_value(name), dtype=np.float64)
    grad = np.zeros_like(base)
    for idx in np.ndindex(base.shape):
        for sign in (1.0, -1.0):
            shifted = base.copy()
            shifted[idx] += sign * EPS
            net.set_value(name, shifted)
            net.eval(mode="forward")
            grad[idx] += sign * float(net.get_value(loss))
    net.set_value(name, base)
    return grad / (2 * EPS)


def _check_gradients(
    build: Callable[..., object], shapes: Sequence[tuple], *, signed: bool = False
) -> None:
    rng = np.random.default_rng(0)
    graph = Graph()
    params = []
    for i, shape in enumerate(shapes):
        value = rng.uniform(0.5, 2.0, size=shape)
        if signed:
            value *= rng.choice([-1.0, 1.0], size=shape)
        params.append(graph.param(value, f"p{i}"))
    loss = (build(*params) ** 2).sum()
    loss.name = "loss"

    net = Net(loss)
    net.eval()
    analytic = {p.name: np.array(net.get_der(p.name)) for p in params}
    for p in params:
        np.testing.assert_allclose(
            analytic[p.name], _numeric_grad(net, p.name, "loss"), rtol=1e-5, atol=1e-6
        )


@pytest.mark.parametrize(
    "build, shapes, signed",
    [
        (lambda a, b: a + b, [(2, 3), (3,)], True),
        (lambda a, b: a - b, [(2, 3), (1, 3)], True),
        (lambda a, b: a * b, [(2, 3), (2, 1)], True),
        (lambda a, b: a / b, [(2, 3), (2, 3)], False),
        (lambda a: a ** 3, [(4,)], True),
        (lambda a: -a, [(4,)], True),
        (lambda a, b: a @ b, [(2, 3), (3, 4)], True),
        (lambda a, b: a @ b, [(4, 3), (3,)], True),
        (lambda a, b: a @ b, [(3,), (3, 2)], True),
        (lambda a, b: a @ b, [(3,), (3,)], True),
        (lambda a, b: a @ b, [(2, 4, 3), (3, 2)], True),
        (lambda a: a.T, [(2, 3)], True),
        (lambda a: a.reshape(3, 2), [(2, 3)], True),
        (lambda a: a[1:, 0], [(3, 2)], True),
        (lambda a: a.sum(axis=1, keepdims=True), [(2, 3)], True),
        (lambda a: a.mean(axis=0), [(2, 3)], True),
        (lambda a: builders.exp(a), [(3,)], True),
        (lambda a: builders.log(a), [(3,)], False),
        (lambda a: builders.sqrt(a), [(3,)], False),
        (lambda a: builders.abs(a), [(3,)], True),
        (lambda a: builders.tanh(a), [(3,)], True),
        (lambda a: builders.sigmoid(a), [(3,)], True),
        (lambda a: builders.relu(a), [(3,)], True),
    ],
)
def test_builtin_gradients_match_finite_differences(build, shapes, signed) -> None:
    _check_gradients(build, shapes, signed=signed)


def test_scalar_param_broadcast_against_array() -> None:
    graph = Graph()
    x = graph.input("x")
    s = graph.param(2.0, "s")
    out = (x * s).sum()
    out.name = "out"

    net = Net(out)
    net.eval({"x": np.arange(4.0)})
    assert net.get_der("s") == pytest.approx(6.0)


def test_pow_exponent_gets_no_derivative() -> None:
    graph = Graph()
    base = graph.param(2.0, "base")
    exponent = graph.param(3.0, "exponent")
    out = base ** exponent
    out.name = "out"

    net = Net(out)
    net.eval()
    assert net.get_value("out") == pytest.approx(8.0)
    assert net.get_der("base") == pytest.approx(12.0)
    assert net.get_der("exponent") == 0


def test_default_registry_is_a_fresh_copy() -> None:
    first = default_registry()
    second = default_registry()
    first.register("extra", lambda v: v)
    assert "extra" in first
    assert "extra" not in second
    assert "extra" not in BUILTINS
    assert {"add", "matmul", "relu", "getitem"} <= set(BUILTINS)


def test_kernels_accept_torch_tensors() -> None:
    torch = pytest.importorskip("torch")
    graph = Graph()
    x = graph.input("x")
    w = graph.param(torch.tensor([1.0, -2.0, 3.0]), "w")
    out = builders.tanh(x * w)
    out.name = "out"

    net = Net(out)
    net.eval({"x": torch.tensor([0.5, 0.5, 0.5])})
    expected = torch.tanh(torch.tensor([0.5, -1.0, 1.5]))
    assert torch.allclose(net.get_value("out"), expected)
    assert torch.allclose(net.get_der("w"), 0.5 * (1 - expected ** 2))

from __future__ import annotations

import numpy as np
import pytest

from lazynet.errors import (
    ConfigurationError,
    EvaluationStateError,
    MissingInputError,
    OperationError,
    StructuralError,
    UnknownVariableError,
)
from lazynet.graph.ir import Graph
from lazynet.runtime.executor import ExecutionCallbacks, Net, compile_net
from lazynet.utils.config import NetConfig


def _scenario_a(**net_kwargs):
    graph = Graph()
    a = graph.input("a")
    w = graph.param(2.0, "w")
    y = a * w
    y.name = "y"
    loss = (y - 3) ** 2
    loss.name = "loss"
    return graph, Net(loss, **net_kwargs)


def test_scalar_regression_values_and_derivatives() -> None:
    _, net = _scenario_a(keep=["y"])
    net.eval({"a": 5})

    assert net.get_value("y") == pytest.approx(10.0)
    assert net.get_value("loss") == pytest.approx(49.0)
    assert net.get_der("y") == pytest.approx(14.0)
    assert net.get_der("w") == pytest.approx(70.0)
    assert net.get_der("a") == 0


def test_shared_param_derivatives_are_summed() -> None:
    graph = Graph()
    w = graph.param(1.5, "w")
    y1 = w * 2
    y2 = w * 3
    loss = y1 + y2
    loss.name = "loss"

    net = Net(loss)
    net.eval()
    assert net.get_der("w") == pytest.approx(5.0)


def test_same_node_in_both_positions_accumulates() -> None:
    graph = Graph()
    x = graph.param(3.0, "x")
    out = x * x
    out.name = "out"

    net = Net(out)
    net.eval()
    assert net.get_value("out") == pytest.approx(9.0)
    assert net.get_der("x") == pytest.approx(6.0)


def test_array_graph_with_broadcasting() -> None:
    graph = Graph()
    x = graph.input("x")
    w = graph.param(np.array([[1.0, -1.0], [2.0, 0.5]]), "w")
    b = graph.param(np.zeros(2), "b")
    out = ((x @ w + b) ** 2).sum()
    out.name = "out"

    data = np.array([[1.0, 2.0], [3.0, 4.0], [-1.0, 0.0]])
    net = Net(out)
    net.eval({"x": data})

    pre = data @ net.get_value("w")
    np.testing.assert_allclose(net.get_value("out"), (pre ** 2).sum())
    np.testing.assert_allclose(net.get_der("w"), data.T @ (2 * pre))
    np.testing.assert_allclose(net.get_der("b"), (2 * pre).sum(axis=0))


def test_repeated_evaluations_are_independent() -> None:
    _, net = _scenario_a()
    net.eval({"a": 5})
    first = (net.get_value("loss"), net.get_der("w"))

    net.eval({"a": 1})
    assert net.get_value("loss") == pytest.approx(1.0)
    assert net.get_der("w") == pytest.approx(-2.0)

    net.eval({"a": 5})
    assert (net.get_value("loss"), net.get_der("w")) == first
    assert net.get_value("w") == 2.0


def test_forward_mode_skips_backward() -> None:
    _, net = _scenario_a()
    net.eval({"a": 5}, mode="forward")
    assert net.get_value("loss") == pytest.approx(49.0)
    assert net.get_der("w") == 0
    with pytest.raises(EvaluationStateError):
        net.backward()


def test_split_forward_and_backward() -> None:
    _, net = _scenario_a()
    net.forward({"a": 5})
    assert net.get_der("w") == 0
    net.backward()
    assert net.get_der("w") == pytest.approx(70.0)
    with pytest.raises(EvaluationStateError):
        net.backward()


def test_backward_without_forward_raises() -> None:
    _, net = _scenario_a()
    with pytest.raises(EvaluationStateError):
        net.backward()


def test_unknown_mode_raises() -> None:
    _, net = _scenario_a()
    with pytest.raises(ValueError):
        net.eval({"a": 5}, mode="training")


def test_missing_input_raises_and_names_it() -> None:
    _, net = _scenario_a()
    with pytest.raises(MissingInputError, match="a"):
        net.eval()
    with pytest.raises(MissingInputError):
        net.eval({"a": None})
    assert net.dirty


def test_bindings_are_consumed_by_each_evaluation() -> None:
    _, net = _scenario_a()
    net.set_inputs(a=5)
    net.eval()
    with pytest.raises(MissingInputError):
        net.eval()


def test_set_value_on_input_stages_binding() -> None:
    _, net = _scenario_a()
    net.set_value("a", 2)
    net.eval(mode="forward")
    assert net.get_value("loss") == pytest.approx(1.0)


def test_unknown_variables_raise() -> None:
    _, net = _scenario_a()
    with pytest.raises(UnknownVariableError):
        net.get_value("nope")
    with pytest.raises(UnknownVariableError):
        net.get_der(99)
    with pytest.raises(UnknownVariableError):
        net.set_inputs(nope=1)
    with pytest.raises(UnknownVariableError):
        net.set_inputs(w=1.0)
    with pytest.raises(KeyError):
        net.get_var_index("nope")


def test_keep_unknown_name_fails_compilation() -> None:
    graph = Graph()
    x = graph.input("x")
    with pytest.raises(UnknownVariableError):
        Net(x + 1, keep=["missing"])


def test_compile_rejects_bad_terminals() -> None:
    with pytest.raises(ConfigurationError):
        Net([])
    with pytest.raises(ConfigurationError):
        Net(5)
    x = Graph().input("x")
    y = Graph().input("y")
    with pytest.raises(ConfigurationError):
        Net(x + 1, y + 1)


def test_gradient_path_needs_backward_mode() -> None:
    graph = Graph()
    graph.registry.register("floor", np.floor)
    w = graph.param(1.5, "w")
    x = graph.input("x")

    with pytest.raises(ConfigurationError, match="floor"):
        Net(graph.apply("floor", w))
    net = Net(graph.apply("floor", x))
    net.eval({"x": 2.5}, mode="forward")
    assert net.outputs == {"floor2": 2.0}


def test_released_intermediates_read_as_empty() -> None:
    _, net = _scenario_a()
    net.eval({"a": 5})
    assert net.get_value("y") is None
    assert net.get_der("y") == 0
    assert net.get_value("loss") == pytest.approx(49.0)


def test_conserve_memory_disabled_keeps_everything() -> None:
    _, net = _scenario_a(config=NetConfig(conserve_memory=False))
    net.eval({"a": 5})
    assert net.get_value("y") == pytest.approx(10.0)
    assert net.get_der("y") == pytest.approx(14.0)


def test_kernel_exception_propagates_unchanged() -> None:
    graph = Graph()

    def explode(v):
        if v < 0:
            raise ValueError("negative input")
        return v

    graph.registry.register("checked", explode, lambda v, dy: (dy,))
    x = graph.input("x")
    out = graph.apply("checked", x, name="out")
    net = Net(out)

    with pytest.raises(ValueError, match="negative input"):
        net.eval({"x": -1.0}, mode="forward")
    assert net.dirty

    net.eval({"x": 4.0}, mode="forward")
    assert not net.dirty
    assert net.get_value("out") == 4.0


def test_wrong_output_arity_raises_operation_error() -> None:
    graph = Graph()
    graph.registry.register("pair", lambda v: v, num_outputs=2)
    x = graph.input("x")
    first, second = graph.apply("pair", x)
    net = Net(first + second)

    with pytest.raises(OperationError):
        net.eval({"x": 1.0}, mode="forward")
    assert net.dirty


def test_multi_output_operation() -> None:
    graph = Graph()
    graph.registry.register(
        "split2",
        lambda v: (v * 2, v * 3),
        lambda v, dy: (dy[0] * 2 + dy[1] * 3,),
        num_outputs=2,
    )
    w = graph.param(2.0, "w")
    a, b = graph.apply("split2", w)
    loss = a + b * b
    loss.name = "loss"

    net = Net(loss)
    net.eval()
    assert net.get_value("loss") == pytest.approx(40.0)
    assert net.get_der("w") == pytest.approx(38.0)


def test_unused_output_contributes_zero() -> None:
    graph = Graph()
    graph.registry.register(
        "split2",
        lambda v: (v * 2, v * 3),
        lambda v, dy: (dy[0] * 2 + dy[1] * 3,),
        num_outputs=2,
    )
    w = graph.param(2.0, "w")
    _, b = graph.apply("split2", w)
    out = b * 1
    out.name = "out"

    net = Net(out)
    net.eval()
    assert net.get_der("w") == pytest.approx(3.0)


def test_keyword_node_is_forward_only_dependency() -> None:
    graph = Graph()
    graph.registry.register(
        "scale",
        lambda v, *, factor: v * factor,
        lambda v, dy, *, factor: (dy * factor,),
    )
    w = graph.param(2.0, "w")
    factor = graph.param(5.0, "factor")
    out = graph.apply("scale", w, factor=factor, name="out")

    net = Net(out)
    net.eval()
    assert net.get_value("out") == pytest.approx(10.0)
    assert net.get_der("w") == pytest.approx(5.0)
    assert net.get_der("factor") == 0


def test_input_flagged_for_gradient() -> None:
    graph = Graph()
    x = graph.input("x", requires_gradient=True)
    out = x * x * 2
    out.name = "out"

    net = Net(out)
    net.eval({"x": 3.0})
    assert net.get_der("x") == pytest.approx(12.0)


def test_test_mode_uses_test_kernel() -> None:
    graph = Graph()
    graph.registry.register(
        "dropout",
        lambda v: v * 0,
        lambda v, dy: (dy * 0,),
        test=lambda v: v,
    )
    x = graph.input("x")
    out = graph.apply("dropout", x, name="out")
    net = Net(out)

    net.eval({"x": 7.0}, mode="test")
    assert net.get_value("out") == 7.0
    net.eval({"x": 7.0}, mode="forward")
    assert net.get_value("out") == 0.0


def test_accumulate_param_ders() -> None:
    _, net = _scenario_a()
    net.eval({"a": 5})
    net.eval({"a": 5}, accumulate_param_ders=True)
    assert net.get_der("w") == pytest.approx(140.0)
    net.eval({"a": 5})
    assert net.get_der("w") == pytest.approx(70.0)


def test_seed_value_and_mapping() -> None:
    graph = Graph()
    w = graph.param(1.0, "w")
    y1 = w * 2
    y1.name = "y1"
    y2 = w * 3
    y2.name = "y2"
    net = Net(y1, y2)

    net.eval()
    assert net.get_der("w") == pytest.approx(3.0)

    net.eval(seed=2.0)
    assert net.get_der("w") == pytest.approx(6.0)

    net.eval(seed={"y1": 1.0, "y2": 10.0})
    assert net.get_der("w") == pytest.approx(32.0)
    assert net.terminals == ["y1", "y2"]


def test_default_seed_from_config() -> None:
    _, net = _scenario_a(config=NetConfig(default_seed=0.5))
    net.eval({"a": 5})
    assert net.get_der("w") == pytest.approx(35.0)


def test_renamed_node_raises_structural_error() -> None:
    graph, net = _scenario_a()
    graph.find("y").name = "renamed"
    with pytest.raises(StructuralError):
        net.eval({"a": 5})


def test_structure_check_can_be_disabled() -> None:
    graph, net = _scenario_a(config=NetConfig(check_structure=False))
    graph.find("y").name = "renamed"
    net.eval({"a": 5})
    assert net.get_value("loss") == pytest.approx(49.0)


def test_reentrant_evaluation_raises() -> None:
    holder = {}

    def reenter(instr, outputs):
        holder["net"].eval({"a": 1})

    _, net = _scenario_a(callbacks=ExecutionCallbacks(on_forward=reenter))
    holder["net"] = net
    with pytest.raises(EvaluationStateError):
        net.eval({"a": 5})
    assert net.dirty


def test_callbacks_observe_every_step() -> None:
    seen = {"forward": [], "backward": [], "finalize": 0}

    def on_forward(instr, outputs):
        seen["forward"].append(instr.name)

    def on_backward(instr, ders):
        seen["backward"].append(instr.name)

    def finalize():
        seen["finalize"] += 1

    _, net = _scenario_a(
        callbacks=ExecutionCallbacks(on_forward, on_backward, finalize)
    )
    net.eval({"a": 5})

    assert seen["forward"] == net.forward_order
    assert seen["backward"] == net.backward_order
    assert seen["backward"] == list(reversed(seen["forward"]))
    assert seen["finalize"] == 2


def test_params_and_describe() -> None:
    graph = Graph()
    x = graph.input("x")
    w = graph.param(1.0, "w", learning_rate=0.1, weight_decay=0.9, train_method="average")
    out = x * w
    out.name = "out"
    net = compile_net(out)

    (info,) = net.params
    assert info.name == "w"
    assert info.slot == net.get_var_index("w")
    assert (info.learning_rate, info.weight_decay, info.train_method) == (0.1, 0.9, "average")

    net.eval({"x": np.ones(3)})
    rows = {row["name"]: row for row in net.describe()}
    assert rows["w"]["persistent"]
    assert rows["out"]["shape"] == (3,)
    assert rows["x"]["kind"] == "input"
    assert rows["w"]["has_der"]


def test_set_value_on_param_persists() -> None:
    _, net = _scenario_a()
    net.set_value("w", 3.0)
    net.eval({"a": 1})
    assert net.get_value("loss") == pytest.approx(0.0)
    assert net.get_value("w") == 3.0


def test_single_iterable_of_terminals() -> None:
    graph = Graph()
    x = graph.input("x")
    a = x + 1
    b = x * 2
    net = Net([a, b])
    net.eval({"x": 3.0}, mode="forward")
    assert list(net.outputs.values()) == [4.0, 6.0]


def test_forward_mode_matches_normal_mode_values() -> None:
    graph = Graph()
    x = graph.input("x")
    w = graph.param(np.array([[0.5, -1.0], [2.0, 0.25]]), "w")
    hidden = x @ w
    hidden.name = "hidden"
    loss = (hidden ** 2).sum()
    loss.name = "loss"
    data = np.array([[1.0, 2.0], [-3.0, 0.5]])

    net = Net(hidden, loss)
    net.eval({"x": data}, mode="forward")
    forward_only = {k: np.array(v) for k, v in net.outputs.items()}
    net.eval({"x": data})

    for name, value in net.outputs.items():
        np.testing.assert_array_equal(value, forward_only[name])
    np.testing.assert_array_equal(net.get_value("w"), [[0.5, -1.0], [2.0, 0.25]])


def test_unseeded_terminal_contributes_nothing() -> None:
    graph = Graph()
    w = graph.param(np.ones((2, 3)), "w")
    flipped = w.T
    flipped.name = "flipped"
    total = (w * 2).sum()
    total.name = "total"

    net = Net(flipped, total)
    net.eval()
    np.testing.assert_allclose(net.get_der("w"), np.full((2, 3), 2.0))
    assert net.get_der("flipped") == 0


def test_partial_seed_mapping_skips_unseeded_branches() -> None:
    graph = Graph()
    x = graph.input("x")
    w = graph.param(np.array([[1.0, 2.0], [3.0, 4.0]]), "w")
    scores = x @ w
    scores.name = "scores"
    loss = (w ** 2).sum()
    loss.name = "loss"
    seen = []

    net = Net(
        scores,
        loss,
        callbacks=ExecutionCallbacks(on_backward=lambda instr, ders: seen.append(instr.name)),
    )
    net.eval({"x": np.ones((3, 2))}, seed={"loss": 1.0})

    np.testing.assert_allclose(net.get_der("w"), 2 * net.get_value("w"))
    assert "scores" not in seen


def test_forward_rejects_unknown_mode() -> None:
    _, net = _scenario_a()
    with pytest.raises(ValueError, match="training"):
        net.forward({"a": 5}, mode="training")
    assert not net.dirty


def test_test_mode_forward_leaves_no_backward_pending() -> None:
    _, net = _scenario_a()
    net.forward({"a": 5}, mode="test")
    assert net.get_value("loss") == pytest.approx(49.0)
    with pytest.raises(EvaluationStateError):
        net.backward()

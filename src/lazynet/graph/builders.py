"""
Functional construction API.

Every builder records a node instead of computing a value; the owning graph
is taken from the Node operands.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Tuple, Union

from lazynet.errors import ConfigurationError
from lazynet.graph.ir import Graph, Node

Built = Union[Node, Tuple[Node, ...]]


def graph_of(*values: Any, **kwvalues: Any) -> Graph:
    """Graph owning the Node operands; all operands must agree."""
    found: Optional[Graph] = None
    for value in (*values, *kwvalues.values()):
        if not isinstance(value, Node):
            continue
        if found is None:
            found = value.graph
        elif value.graph is not found:
            raise ConfigurationError("Operands belong to different graphs.")
    if found is None:
        raise ConfigurationError(
            "At least one argument must be a Node to infer the owning graph."
        )
    return found


def apply(op: str, *args: Any, **kwargs: Any) -> Built:
    """Record ``op`` applied to ``args`` in the graph of its Node operands."""
    return graph_of(*args, **kwargs).apply(op, *args, **kwargs)


def lazy(kind: str) -> Callable[[Callable[..., Any]], Callable[..., Built]]:
    """
    Turn a plain function into a node builder for an already-registered kind.

    Example::

        graph.registry.register("conv", conv_forward, conv_backward)

        @lazy("conv")
        def conv(x, w, *, stride=1):
            ...

        y = conv(x, w, stride=2)   # a Node, nothing is computed
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Built]:
        def build(*args: Any, **kwargs: Any) -> Built:
            return apply(kind, *args, **kwargs)

        build.__name__ = getattr(fn, "__name__", kind)
        build.__doc__ = fn.__doc__
        return build

    return decorator


def exp(x: Node) -> Node:
    return apply("exp", x)  # type: ignore[return-value]


def log(x: Node) -> Node:
    return apply("log", x)  # type: ignore[return-value]


def sqrt(x: Node) -> Node:
    return apply("sqrt", x)  # type: ignore[return-value]


def abs(x: Node) -> Node:  # noqa: A001
    return apply("abs", x)  # type: ignore[return-value]


def tanh(x: Node) -> Node:
    return apply("tanh", x)  # type: ignore[return-value]


def sigmoid(x: Node) -> Node:
    return apply("sigmoid", x)  # type: ignore[return-value]


def relu(x: Node) -> Node:
    return apply("relu", x)  # type: ignore[return-value]


def sum(x: Node, axis: Any = None, keepdims: bool = False) -> Node:  # noqa: A001
    return x.sum(axis=axis, keepdims=keepdims)


def mean(x: Node, axis: Any = None, keepdims: bool = False) -> Node:
    return x.mean(axis=axis, keepdims=keepdims)


def reshape(x: Node, shape: Any) -> Node:
    return x.reshape(shape)


def transpose(x: Node) -> Node:
    return x.T


def matmul(a: Any, b: Any) -> Node:
    return apply("matmul", a, b)  # type: ignore[return-value]

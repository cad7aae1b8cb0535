from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Iterator, List, Optional, Set, Tuple, Union

import numpy as np

from lazynet.errors import ConfigurationError
from lazynet.ops.math import default_registry
from lazynet.ops.registry import OperationRegistry
from lazynet.utils.arrays import is_torch_tensor

TRAIN_METHODS = ("gradient", "average", "none")
RESERVED_KINDS = ("input", "param", "select")

_SCALARS = (type(None), bool, int, float, complex, str, bytes, slice, type(Ellipsis))


@dataclass(eq=False, repr=False)
class Node:
    """
    One recorded operation call in a graph.

    Nodes are compared by identity only; ``handle`` is the node's index in the
    arena of its owning ``Graph`` and doubles as its construction order.
    """

    graph: "Graph"
    handle: int
    op: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    num_outputs: int = 1
    name: Optional[str] = None
    requires_gradient: bool = False
    device_placement: bool = False

    is_input: ClassVar[bool] = False
    is_param: ClassVar[bool] = False
    is_selector: ClassVar[bool] = False

    # numpy must defer to the reflected operators below
    __array_ufunc__ = None

    @property
    def inputs(self) -> List["Node"]:
        """Node references among the arguments, positional first, in order."""
        refs = [a for a in self.args if isinstance(a, Node)]
        refs.extend(v for v in self.kwargs.values() if isinstance(v, Node))
        return refs

    @property
    def is_leaf(self) -> bool:
        return self.is_input or self.is_param

    def __repr__(self) -> str:
        label = self.name if self.name is not None else "<unnamed>"
        return f"{type(self).__name__}({label}, op={self.op!r}, handle={self.handle})"

    def __iter__(self) -> Iterator[Any]:
        raise TypeError(
            "Nodes are symbolic and cannot be iterated; use num_outputs for multiple outputs."
        )

    # arithmetic
    def __add__(self, other: Any) -> "Node":
        return self.graph.apply("add", self, other)

    def __radd__(self, other: Any) -> "Node":
        return self.graph.apply("add", other, self)

    def __sub__(self, other: Any) -> "Node":
        return self.graph.apply("sub", self, other)

    def __rsub__(self, other: Any) -> "Node":
        return self.graph.apply("sub", other, self)

    def __mul__(self, other: Any) -> "Node":
        return self.graph.apply("mul", self, other)

    def __rmul__(self, other: Any) -> "Node":
        return self.graph.apply("mul", other, self)

    def __truediv__(self, other: Any) -> "Node":
        return self.graph.apply("div", self, other)

    def __rtruediv__(self, other: Any) -> "Node":
        return self.graph.apply("div", other, self)

    def __pow__(self, other: Any) -> "Node":
        return self.graph.apply("pow", self, other)

    def __rpow__(self, other: Any) -> "Node":
        return self.graph.apply("pow", other, self)

    def __matmul__(self, other: Any) -> "Node":
        return self.graph.apply("matmul", self, other)

    def __rmatmul__(self, other: Any) -> "Node":
        return self.graph.apply("matmul", other, self)

    def __neg__(self) -> "Node":
        return self.graph.apply("neg", self)

    def __getitem__(self, index: Any) -> "Node":
        return self.graph.apply("getitem", self, index)

    @property
    def T(self) -> "Node":
        return self.graph.apply("transpose", self)

    def sum(self, axis: Any = None, keepdims: bool = False) -> "Node":
        return self.graph.apply("sum", self, axis=axis, keepdims=keepdims)

    def mean(self, axis: Any = None, keepdims: bool = False) -> "Node":
        return self.graph.apply("mean", self, axis=axis, keepdims=keepdims)

    def reshape(self, *shape: Any) -> "Node":
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        return self.graph.apply("reshape", self, tuple(shape))


@dataclass(eq=False, repr=False)
class Input(Node):
    """Placeholder bound to an external value at every evaluation."""

    is_input: ClassVar[bool] = True


@dataclass(eq=False, repr=False)
class Param(Node):
    """Learnable leaf whose value persists across evaluations."""

    value: Any = None
    learning_rate: float = 1.0
    weight_decay: float = 1.0
    train_method: str = "gradient"

    is_param: ClassVar[bool] = True

    def __post_init__(self) -> None:
        if self.train_method not in TRAIN_METHODS:
            raise ConfigurationError(
                f"Param `{self.name}` has unknown train_method `{self.train_method}`; "
                f"expected one of {TRAIN_METHODS}."
            )


@dataclass(eq=False, repr=False)
class Selector(Node):
    """Alias for output ``index`` of a multi-output operation node."""

    index: int = 0

    is_selector: ClassVar[bool] = True

    @property
    def parent(self) -> Node:
        return self.args[0]


@dataclass(eq=False)
class Graph:
    """
    One graph-construction session.

    Owns the arena of every node created through it, plus the registry used
    to resolve operation kinds. Handles are arena indices, so node identity
    reduces to handle equality.
    """

    nodes: List[Node] = field(default_factory=list)
    registry: OperationRegistry = field(default_factory=default_registry)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def get_node(self, handle: int) -> Node:
        return self.nodes[handle]

    def predecessors(self, handle: int) -> List[Node]:
        seen: Set[int] = set()
        preds: List[Node] = []
        for node in self.get_node(handle).inputs:
            if node.handle not in seen:
                seen.add(node.handle)
                preds.append(node)
        return preds

    def successors(self, handle: int) -> List[Node]:
        return [
            n for n in self.nodes if any(i.handle == handle for i in n.inputs)
        ]

    def names(self) -> Set[str]:
        return {n.name for n in self.nodes if n.name is not None}

    def find(self, name: str) -> Node:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(f"No node named `{name}`.")

    # construction API
    def input(
        self,
        name: Optional[str] = None,
        *,
        requires_gradient: bool = False,
        device_placement: bool = False,
    ) -> Input:
        return self._add(
            Input,
            op="input",
            name=name,
            requires_gradient=requires_gradient,
            device_placement=device_placement,
        )

    def param(
        self,
        value: Any,
        name: Optional[str] = None,
        *,
        learning_rate: float = 1.0,
        weight_decay: float = 1.0,
        train_method: str = "gradient",
        device_placement: bool = False,
    ) -> Param:
        if isinstance(value, Node):
            raise ConfigurationError(
                f"Param value must be concrete data, got {value!r}; a Param cannot "
                "be initialised from another node."
            )
        self._check_argument(value, nested=True)
        return self._add(
            Param,
            op="param",
            name=name,
            requires_gradient=True,
            device_placement=device_placement,
            value=value,
            learning_rate=learning_rate,
            weight_decay=weight_decay,
            train_method=train_method,
        )

    def apply(
        self,
        op: str,
        *args: Any,
        num_outputs: Optional[int] = None,
        name: Optional[str] = None,
        device_placement: bool = False,
        **kwargs: Any,
    ) -> Union[Node, Tuple[Node, ...]]:
        """
        Record a call of operation ``op`` instead of running it.

        Returns the new node, or, when the operation has several outputs, a
        tuple of the node (output 0) followed by one ``Selector`` per extra
        output.
        """
        if op in RESERVED_KINDS:
            raise ConfigurationError(f"`{op}` nodes cannot be created through apply().")
        operation = self.registry.get(op)
        for value in args:
            self._check_argument(value)
        for key, value in kwargs.items():
            self._check_argument(value)
        if num_outputs is None:
            num_outputs = operation.num_outputs
        if num_outputs < 1:
            raise ConfigurationError(f"num_outputs must be positive, got {num_outputs}.")

        node = self._add(
            Node,
            op=op,
            args=tuple(args),
            kwargs=dict(kwargs),
            num_outputs=num_outputs,
            name=name,
            device_placement=device_placement,
        )
        if num_outputs == 1:
            return node
        selectors = [
            self._add(Selector, op="select", args=(node,), index=i)
            for i in range(1, num_outputs)
        ]
        return (node, *selectors)

    def operation(
        self,
        kind: str,
        *,
        backward: Optional[Callable[..., Any]] = None,
        test: Optional[Callable[..., Any]] = None,
        num_outputs: int = 1,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Decorator registering ``forward`` under ``kind`` and returning a
        builder that records calls as nodes of this graph.
        """

        def decorator(forward: Callable[..., Any]) -> Callable[..., Any]:
            self.registry.register(
                kind, forward, backward, num_outputs=num_outputs, test=test
            )

            def build(*args: Any, **kwargs: Any) -> Union[Node, Tuple[Node, ...]]:
                return self.apply(kind, *args, **kwargs)

            build.__name__ = getattr(forward, "__name__", kind)
            build.__doc__ = forward.__doc__
            build.operation = self.registry.get(kind)  # type: ignore[attr-defined]
            return build

        return decorator

    def _add(self, cls: type, **fields: Any) -> Any:
        node = cls(graph=self, handle=len(self.nodes), **fields)
        self.nodes.append(node)
        return node

    def _check_argument(self, value: Any, *, nested: bool = False) -> None:
        if isinstance(value, Node):
            if nested:
                raise ConfigurationError(
                    f"{value!r} is nested inside a container; node references "
                    "must be top-level arguments."
                )
            if value.graph is not self:
                raise ConfigurationError(f"{value!r} belongs to a different graph.")
            return
        if isinstance(value, _SCALARS) or isinstance(value, np.generic):
            return
        if isinstance(value, np.ndarray):
            if value.dtype == object:
                raise ConfigurationError("Object arrays cannot be embedded as constants.")
            return
        if is_torch_tensor(value):
            return
        if isinstance(value, (list, tuple)):
            for item in value:
                self._check_argument(item, nested=True)
            return
        if isinstance(value, dict):
            for item in value.values():
                self._check_argument(item, nested=True)
            return
        raise ConfigurationError(
            f"Unsupported argument of type `{type(value).__name__}`; expected a "
            "Node or a numeric/str constant."
        )

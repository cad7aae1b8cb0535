"""
lazynet

Describe a network as ordinary expressions over symbolic nodes, compile the
graph once, then evaluate it forward and backward many times.
"""

from .errors import (
    ConfigurationError,
    EvaluationStateError,
    LazyNetError,
    MissingInputError,
    OperationError,
    StructuralError,
    UnknownVariableError,
    UnresolvedNameError,
)
from .graph.ir import Graph, Input, Node, Param, Selector
from .graph.builders import apply, lazy
from .graph.naming import NameResolver
from .ops.registry import Operation, OperationRegistry
from .runtime.executor import ExecutionCallbacks, Net, compile_net
from .utils.config import NetConfig

__all__ = [
    "ConfigurationError",
    "EvaluationStateError",
    "LazyNetError",
    "MissingInputError",
    "OperationError",
    "StructuralError",
    "UnknownVariableError",
    "UnresolvedNameError",
    "Graph",
    "Input",
    "Node",
    "Param",
    "Selector",
    "apply",
    "lazy",
    "NameResolver",
    "Operation",
    "OperationRegistry",
    "ExecutionCallbacks",
    "Net",
    "compile_net",
    "NetConfig",
]

"""
Error taxonomy shared by graph construction, compilation and execution.
"""

from __future__ import annotations


class LazyNetError(Exception):
    """Base class for every error raised by lazynet itself."""


class ConfigurationError(LazyNetError, TypeError):
    """A node constructor received an argument it cannot record."""


class UnresolvedNameError(LazyNetError, ValueError):
    """Two reachable nodes ended up with the same name at compile time."""


class MissingInputError(LazyNetError, KeyError):
    """An evaluation started while some Input had no bound value."""


class UnknownVariableError(LazyNetError, KeyError):
    """An accessor was given a name or slot the Net does not know."""


class StructuralError(LazyNetError, RuntimeError):
    """The source graph changed after the Net was compiled."""


class EvaluationStateError(LazyNetError, RuntimeError):
    """The Net was used in a way its evaluation state does not allow."""


class OperationError(LazyNetError, RuntimeError):
    """
    An operation returned the wrong number of outputs. Kernels may raise it
    too; the executor never wraps kernel exceptions, whatever a kernel raises
    reaches the caller unmodified.
    """

"""
Operation registry and the built-in numeric kernels.
"""

from .registry import Operation, OperationRegistry
from .math import BUILTINS, default_registry

__all__ = ["Operation", "OperationRegistry", "BUILTINS", "default_registry"]

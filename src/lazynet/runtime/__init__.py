"""
Runtime support for evaluating compiled schedules.

This layer is responsible for:
- Owning the per-Net variable table.
- Running forward and backward instruction lists with derivative accumulation.
- Reclaiming slot storage once its last consumer has run.
- Placing flagged values on a device.
"""

from .executor import ExecutionCallbacks, Net, ParamInfo, compile_net
from .storage import Variable, VariableTable
from .placement import normalize_device, to_device, to_host
from .profiling import Profiler, ProfileStats

__all__ = [
    "ExecutionCallbacks",
    "Net",
    "ParamInfo",
    "compile_net",
    "Variable",
    "VariableTable",
    "normalize_device",
    "to_device",
    "to_host",
    "Profiler",
    "ProfileStats",
]

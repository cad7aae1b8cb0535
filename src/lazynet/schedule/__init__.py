"""
Compilation of node graphs into executable schedules.

This package turns the graph reachable from one or more terminal nodes into:
- An ordered forward instruction list.
- A pruned backward list covering only gradient-requiring steps.
- A slot table with per-slot liveness and the release plan built from it.
"""

from .compile import Const, Instruction, Schedule, SlotRef, compile_schedule
from .liveness import ReleasePlan, SlotInfo, analyze_liveness, build_release_plan
from .validate import validate_schedule

__all__ = [
    "Const",
    "Instruction",
    "Schedule",
    "SlotRef",
    "compile_schedule",
    "ReleasePlan",
    "SlotInfo",
    "analyze_liveness",
    "build_release_plan",
    "validate_schedule",
]

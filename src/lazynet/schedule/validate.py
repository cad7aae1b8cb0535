"""
Validation of compiled schedules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Set

if TYPE_CHECKING:
    from lazynet.schedule.compile import Schedule


def validate_schedule(schedule: "Schedule") -> None:
    """
    Structural checks on a compiled schedule:
    - every slot read is written earlier (or is a leaf slot)
    - the backward list is the reverse of the gradient-requiring forward steps
    - slot indices and name targets are in range
    - every scheduled node carries a unique name
    """
    _ensure_slots_in_range(schedule)
    _ensure_dependencies_precede(schedule)
    _ensure_backward_matches_forward(schedule)
    _ensure_names_complete(schedule)


def _ensure_slots_in_range(schedule: "Schedule") -> None:
    n = schedule.num_slots
    for position, info in enumerate(schedule.slots):
        if info.index != position:
            raise ValueError(f"Slot `{info.name}` stored at {position} claims index {info.index}.")
    for instr in schedule.forward:
        for slot in (*instr.reads(), *instr.outputs):
            if not 0 <= slot < n:
                raise ValueError(f"Instruction `{instr.name}` references slot {slot} out of range.")
    for name, slot in schedule.names.items():
        if not 0 <= slot < n:
            raise ValueError(f"Name `{name}` maps to slot {slot} out of range.")


def _ensure_dependencies_precede(schedule: "Schedule") -> None:
    available: Set[int] = {s.index for s in schedule.slots if s.kind != "op"}
    for step, instr in enumerate(schedule.forward):
        if instr.index != step:
            raise ValueError(f"Instruction `{instr.name}` is out of position.")
        missing = [slot for slot in instr.reads() if slot not in available]
        if missing:
            raise ValueError(
                f"Instruction `{instr.name}` reads slots {missing} before they are written."
            )
        available.update(instr.outputs)


def _ensure_backward_matches_forward(schedule: "Schedule") -> None:
    expected = [i.index for i in reversed(schedule.forward) if i.requires_gradient]
    actual = [i.index for i in schedule.backward]
    if actual != expected:
        raise ValueError("Backward list is not the reversed gradient-requiring forward list.")


def _ensure_names_complete(schedule: "Schedule") -> None:
    seen: Set[str] = set()
    for node in schedule.nodes:
        if node.name is None:
            raise ValueError(f"{node!r} reached compilation without a name.")
        if node.name in seen:
            raise ValueError(f"Name `{node.name}` is used by more than one node.")
        seen.add(node.name)

"""
Per-slot last-consumer analysis and the release plans derived from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Sequence, Set, Tuple

if TYPE_CHECKING:
    from lazynet.schedule.compile import Instruction


@dataclass(frozen=True)
class SlotInfo:
    """
    Static description of one variable slot.

    ``last_forward_use`` / ``last_backward_use`` are instruction indices into
    the forward and backward lists (``-1`` when never read); ``producer`` and
    ``producer_backward`` locate the instruction writing the slot.
    """

    index: int
    name: str
    handle: int
    kind: str  # "input", "param" or "op"
    output: int = 0
    persistent: bool = False
    retained: bool = False
    requires_gradient: bool = False
    device_placement: bool = False
    last_forward_use: int = -1
    last_backward_use: int = -1
    producer: int = -1
    producer_backward: int = -1

    @property
    def reclaimable(self) -> bool:
        return not (self.persistent or self.retained)


@dataclass
class Liveness:
    last_forward_use: List[int]
    last_backward_use: List[int]
    producer: List[int]
    producer_backward: List[int]


@dataclass
class ReleasePlan:
    """
    Slots whose storage can be dropped right after a given instruction.

    ``forward_only`` applies when no backward pass follows the forward pass;
    ``forward`` applies when one does, since backward steps re-read forward
    values.
    """

    forward_only: List[List[int]] = field(default_factory=list)
    forward: List[List[int]] = field(default_factory=list)
    backward_values: List[List[int]] = field(default_factory=list)
    backward_ders: List[List[int]] = field(default_factory=list)


def analyze_liveness(
    forward: Sequence["Instruction"],
    backward: Sequence["Instruction"],
    num_slots: int,
) -> Liveness:
    last_forward = [-1] * num_slots
    last_backward = [-1] * num_slots
    producer = [-1] * num_slots
    producer_backward = [-1] * num_slots

    for step, instr in enumerate(forward):
        for slot in instr.reads():
            last_forward[slot] = step
        for slot in instr.outputs:
            producer[slot] = step

    for step, instr in enumerate(backward):
        for slot in instr.reads():
            last_backward[slot] = step
        for slot in instr.outputs:
            producer_backward[slot] = step

    return Liveness(
        last_forward_use=last_forward,
        last_backward_use=last_backward,
        producer=producer,
        producer_backward=producer_backward,
    )


def build_release_plan(
    slots: Sequence[SlotInfo], num_forward: int, num_backward: int
) -> ReleasePlan:
    plan = ReleasePlan(
        forward_only=[[] for _ in range(num_forward)],
        forward=[[] for _ in range(num_forward)],
        backward_values=[[] for _ in range(num_backward)],
        backward_ders=[[] for _ in range(num_backward)],
    )
    for info in slots:
        if not info.reclaimable:
            continue
        # an output nobody reads can go as soon as it is written
        last_fwd = info.last_forward_use if info.last_forward_use >= 0 else info.producer
        if last_fwd >= 0:
            plan.forward_only[last_fwd].append(info.index)
            if info.last_backward_use < 0:
                plan.forward[last_fwd].append(info.index)
        if info.last_backward_use >= 0:
            plan.backward_values[info.last_backward_use].append(info.index)
        if info.producer_backward >= 0:
            plan.backward_ders[info.producer_backward].append(info.index)
    return plan


def live_profile(
    plan_steps: Sequence[Sequence[int]],
    produced: Sequence[Sequence[int]],
    initial: Set[int],
) -> Tuple[List[int], Set[int]]:
    """
    Number of live values after each step, given the slots every step
    produces and releases. Also returns the set still live at the end.
    """
    live: Set[int] = set(initial)
    sizes: List[int] = []
    for made, released in zip(produced, plan_steps):
        live.update(made)
        live.difference_update(released)
        sizes.append(len(live))
    return sizes, live

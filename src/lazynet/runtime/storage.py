"""
Variable table: per-slot value and derivative storage for one Net.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from lazynet.schedule.liveness import SlotInfo
from lazynet.utils.arrays import nbytes

ZERO = 0

Order = Tuple[int, int]


@dataclass
class Variable:
    info: SlotInfo
    value: Any = None
    der: Any = ZERO
    # contributions not yet folded into ``der``, keyed by consumer order
    parts: List[Tuple[Order, Any]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def persistent(self) -> bool:
        return self.info.persistent

    @property
    def last_forward_use(self) -> int:
        return self.info.last_forward_use

    @property
    def last_backward_use(self) -> int:
        return self.info.last_backward_use


def _add(total: Any, der: Any) -> Any:
    return der if total is ZERO else total + der


class VariableTable:
    """
    Slot-indexed storage. A value of ``None`` means the slot holds nothing;
    a derivative equal to ``ZERO`` means nothing has been accumulated.

    Ordered contributions are summed in ascending order key (the position of
    the consuming instruction in the forward list, then the argument
    position), whatever order the backward pass produced them in.
    """

    def __init__(self, slots: Sequence[SlotInfo]) -> None:
        self._vars: List[Variable] = [Variable(info=info) for info in slots]

    def __len__(self) -> int:
        return len(self._vars)

    def __getitem__(self, slot: int) -> Variable:
        return self._vars[slot]

    def __iter__(self) -> Iterable[Variable]:
        return iter(self._vars)

    def put(self, slot: int, value: Any) -> None:
        self._vars[slot].value = value

    def get(self, slot: int) -> Any:
        return self._vars[slot].value

    def has(self, slot: int) -> bool:
        return self._vars[slot].value is not None

    def release(self, slot: int) -> None:
        self._vars[slot].value = None

    def get_der(self, slot: int) -> Any:
        var = self._vars[slot]
        if var.parts:
            total = var.der
            for _, der in sorted(var.parts, key=lambda part: part[0]):
                total = _add(total, der)
            var.der = total
            var.parts = []
        return var.der

    def set_der(self, slot: int, der: Any) -> None:
        var = self._vars[slot]
        var.der = der
        var.parts = []

    def release_der(self, slot: int) -> None:
        self.set_der(slot, ZERO)

    def accumulate(self, slot: int, der: Any, order: Optional[Order] = None) -> None:
        """
        Add ``der`` to the slot's derivative; never updates in place.

        With ``order`` the contribution is buffered and folded in by the next
        ``get_der`` together with the other buffered ones.
        """
        var = self._vars[slot]
        if order is None:
            var.der = _add(self.get_der(slot), der)
        else:
            var.parts.append((order, der))

    def reset(self, *, keep_param_ders: bool = False) -> None:
        """Clear transient values and zero derivatives; Param values survive."""
        for index, var in enumerate(self._vars):
            if not var.info.persistent:
                var.value = None
                self.set_der(index, ZERO)
            elif keep_param_ders:
                self.get_der(index)
            else:
                self.set_der(index, ZERO)

    def live_slots(self) -> List[int]:
        return [i for i, var in enumerate(self._vars) if var.value is not None]

    def live_bytes(self) -> int:
        total = 0
        for var in self._vars:
            total += nbytes(var.value)
            if var.der is not ZERO:
                total += nbytes(var.der)
            total += sum(nbytes(der) for _, der in var.parts)
        return total

"""
Lightweight profiling of Net evaluations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class ProfileStats:
    peak_live_bytes: int = 0
    peak_live_slots: int = 0
    forward_steps: int = 0
    backward_steps: int = 0
    transfers: int = 0
    events: Dict[str, float] = field(default_factory=dict)


class Profiler:
    """Collects ProfileStats; every record_* call is a no-op while disabled."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.stats = ProfileStats()

    def record_live(self, num_slots: int, bytes_used: int) -> None:
        if not self.enabled:
            return
        if num_slots > self.stats.peak_live_slots:
            self.stats.peak_live_slots = num_slots
        if bytes_used > self.stats.peak_live_bytes:
            self.stats.peak_live_bytes = bytes_used

    def record_step(self, kind: str) -> None:
        if not self.enabled:
            return
        if kind == "forward":
            self.stats.forward_steps += 1
        elif kind == "backward":
            self.stats.backward_steps += 1
        else:
            raise ValueError(f"Unknown step kind: {kind}")

    def record_transfer(self) -> None:
        if not self.enabled:
            return
        self.stats.transfers += 1

    def record_event(self, name: str, duration_ms: float) -> None:
        if not self.enabled:
            return
        self.stats.events[name] = self.stats.events.get(name, 0.0) + duration_ms

    def reset(self) -> None:
        self.stats = ProfileStats()

    def snapshot(self) -> ProfileStats:
        return self.stats

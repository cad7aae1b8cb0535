"""
Default flags used when compiling and evaluating a Net.
"""

from dataclasses import dataclass


@dataclass
class NetConfig:
    debug: bool = False
    conserve_memory: bool = True
    check_structure: bool = True
    naming: str = "default"
    default_seed: float = 1.0
    device: str = "cpu"
    profile: bool = False

    def __post_init__(self) -> None:
        if self.naming not in ("default", "sequential"):
            raise ValueError(f"Unknown naming mode: {self.naming!r}")


config = NetConfig()

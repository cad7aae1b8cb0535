"""
Device placement of slot values.

``"cpu"`` keeps values as host numpy arrays; every other device string is a
torch device. Transfers are blocking.
"""

from __future__ import annotations

from typing import Any, Callable

import numpy as np

from lazynet.utils.arrays import is_torch_tensor

HOST = "cpu"
ALIASES = {"gpu": "cuda"}

Transfer = Callable[[Any, str], Any]


def normalize_device(device: str) -> str:
    device = str(device).lower()
    return ALIASES.get(device, device)


def is_movable(value: Any) -> bool:
    """Only array data is placed; scalars and option constants stay put."""
    return isinstance(value, np.ndarray) or is_torch_tensor(value)


def to_host(value: Any) -> Any:
    if is_torch_tensor(value):
        return value.detach().cpu().numpy()
    return value


def to_device(value: Any, device: str) -> Any:
    if not is_movable(value):
        return value
    device = normalize_device(device)
    if device == HOST:
        return to_host(value)
    torch = _require_torch()
    return torch.as_tensor(value, device=device)


def _require_torch() -> Any:
    try:
        import torch
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on environment
        raise ModuleNotFoundError(
            "Placing values on an accelerator requires PyTorch to be installed."
        ) from exc
    return torch

"""
Helpers that treat numpy arrays and torch tensors alike.
"""

from __future__ import annotations

from typing import Any, Tuple

import numpy as np


def is_torch_tensor(value: Any) -> bool:
    return type(value).__module__.split(".", 1)[0] == "torch"


def shape_of(value: Any) -> Tuple[int, ...]:
    return tuple(int(dim) for dim in getattr(value, "shape", ()))


def nbytes(value: Any) -> int:
    """Approximate storage size of a slot value."""
    if value is None:
        return 0
    if is_torch_tensor(value):
        return int(value.element_size() * value.numel())
    if isinstance(value, (np.ndarray, np.generic)):
        return int(value.nbytes)
    if isinstance(value, (bool, int, float, complex)):
        return int(np.asarray(value).nbytes)
    return 0

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from lazynet.errors import ConfigurationError

ForwardFn = Callable[..., Any]
BackwardFn = Callable[..., Any]


@dataclass(frozen=True)
class Operation:
    """
    Numeric kernel registered under an operation kind.

    Args:
        kind: Identifier recorded on every Node built from this operation.
        forward: ``forward(*args, **kwargs)`` returning one value, or a tuple
            of ``num_outputs`` values.
        backward: ``backward(*args, dy, **kwargs)`` returning one derivative
            per positional argument. ``None`` entries, or missing trailing
            entries, mean the position has no derivative.
        num_outputs: Default output arity of nodes built from this operation.
        test: Optional replacement for ``forward`` used in ``test`` mode.
    """

    kind: str
    forward: ForwardFn
    backward: Optional[BackwardFn] = None
    num_outputs: int = 1
    test: Optional[ForwardFn] = None

    def __post_init__(self) -> None:
        if not self.kind:
            raise ConfigurationError("Operation kind must be a non-empty string.")
        if self.num_outputs < 1:
            raise ConfigurationError(
                f"Operation `{self.kind}` must have at least one output."
            )

    @property
    def differentiable(self) -> bool:
        return self.backward is not None


class OperationRegistry:
    """Lookup from operation kind to its numeric kernel."""

    def __init__(self) -> None:
        self._ops: Dict[str, Operation] = {}

    def register(
        self,
        kind: str,
        forward: ForwardFn,
        backward: Optional[BackwardFn] = None,
        *,
        num_outputs: int = 1,
        test: Optional[ForwardFn] = None,
        allow_overwrite: bool = False,
    ) -> Operation:
        if not allow_overwrite and kind in self._ops:
            raise ConfigurationError(f"Operation `{kind}` is already registered.")
        op = Operation(
            kind=kind,
            forward=forward,
            backward=backward,
            num_outputs=num_outputs,
            test=test,
        )
        self._ops[kind] = op
        return op

    def get(self, kind: str) -> Operation:
        try:
            return self._ops[kind]
        except KeyError:
            raise ConfigurationError(f"Unknown operation kind `{kind}`.") from None

    def copy(self) -> "OperationRegistry":
        clone = OperationRegistry()
        clone._ops = dict(self._ops)
        return clone

    def __contains__(self, kind: object) -> bool:
        return kind in self._ops

    def __iter__(self) -> Iterator[str]:
        return iter(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from lazynet.errors import (
    EvaluationStateError,
    MissingInputError,
    OperationError,
    StructuralError,
    UnknownVariableError,
)
from lazynet.graph.ir import Node
from lazynet.ops.registry import OperationRegistry
from lazynet.runtime.placement import HOST, Transfer, is_movable, normalize_device, to_device
from lazynet.runtime.profiling import Profiler
from lazynet.runtime.storage import ZERO, VariableTable
from lazynet.schedule.compile import Const, Instruction, Schedule, SlotRef, compile_schedule
from lazynet.utils.arrays import shape_of
from lazynet.utils.config import NetConfig, config as default_config
from lazynet.utils.logging import logger, set_debug

MODES = ("normal", "forward", "test")

Key = Union[str, int]


@dataclass
class ExecutionCallbacks:
    """
    Observers invoked while a Net runs.

    Args:
        on_forward: Called after each forward step with the instruction and
            its output values.
        on_backward: Called after each backward step with the instruction and
            the derivatives the operation returned.
        finalize: Called once a pass completes without error.
    """

    on_forward: Optional[Callable[[Instruction, Tuple[Any, ...]], None]] = None
    on_backward: Optional[Callable[[Instruction, Sequence[Any]], None]] = None
    finalize: Optional[Callable[[], None]] = None


@dataclass(frozen=True)
class ParamInfo:
    """Training metadata of one Param, for an external solver."""

    name: str
    slot: int
    learning_rate: float
    weight_decay: float
    train_method: str


class Net:
    """
    Compiled, reusable evaluator for the graph reachable from ``terminals``.

    Example::

        g = Graph()
        a = g.input("a")
        w = g.param(2.0, "w")
        y = a * w
        loss = g.apply("pow", y - 3, 2, name="loss")
        net = Net(loss)
        net.eval({"a": 5})
        net.get_value("loss"), net.get_der("w")   # 49.0, 70.0

    Compilation happens in the constructor; if it fails no Net is created.
    One Net runs one evaluation at a time; Param slots are the only state
    that survives from one evaluation to the next.
    """

    def __init__(
        self,
        *terminals: Union[Node, Iterable[Node]],
        keep: Sequence[str] = (),
        config: Optional[NetConfig] = None,
        registry: Optional[OperationRegistry] = None,
        transfer: Optional[Transfer] = None,
        callbacks: Optional[ExecutionCallbacks] = None,
    ) -> None:
        if (
            len(terminals) == 1
            and not isinstance(terminals[0], Node)
            and isinstance(terminals[0], Iterable)
        ):
            terminals = tuple(terminals[0])  # type: ignore[assignment]
        self.config = replace(config or default_config)
        if self.config.debug:
            set_debug(True)

        self.schedule: Schedule = compile_schedule(
            terminals,  # type: ignore[arg-type]
            keep=keep,
            naming=self.config.naming,
            registry=registry,
        )
        self.schedule.validate()

        self.vars = VariableTable(self.schedule.slots)
        self.profiler = Profiler(enabled=self.config.profile)
        self.callbacks = callbacks or ExecutionCallbacks()
        self.device = HOST
        self._transfer: Transfer = transfer or to_device
        self._placed_constants: Dict[int, Tuple[Tuple[Any, ...], Dict[str, Any]]] = {}
        self._pending: Dict[int, Any] = {}
        self._evaluating = False
        self._backward_ready = False
        self._dirty = False
        self._structure = [(node, node.name) for node in self.schedule.nodes]

        for info in self.schedule.slots:
            if info.kind == "param":
                self.vars.put(info.index, self.schedule.nodes_by_handle[info.handle].value)

        if normalize_device(self.config.device) != HOST:
            self.move(self.config.device)

    # introspection
    @property
    def forward_order(self) -> List[str]:
        return [instr.name for instr in self.schedule.forward]

    @property
    def backward_order(self) -> List[str]:
        return [instr.name for instr in self.schedule.backward]

    @property
    def terminals(self) -> List[str]:
        return [self.schedule.slots[slot].name for slot in self.schedule.terminals]

    @property
    def inputs(self) -> List[str]:
        return list(self.schedule.input_slots())

    @property
    def params(self) -> List[ParamInfo]:
        infos: List[ParamInfo] = []
        for info in self.schedule.slots:
            if info.kind != "param":
                continue
            node = self.schedule.nodes_by_handle[info.handle]
            infos.append(
                ParamInfo(
                    name=info.name,
                    slot=info.index,
                    learning_rate=node.learning_rate,
                    weight_decay=node.weight_decay,
                    train_method=node.train_method,
                )
            )
        return infos

    @property
    def outputs(self) -> Dict[str, Any]:
        return {self.schedule.slots[s].name: self.vars.get(s) for s in self.schedule.terminals}

    @property
    def dirty(self) -> bool:
        """True when the last pass was aborted by an error."""
        return self._dirty

    def describe(self) -> List[Dict[str, Any]]:
        """One row per variable slot, in slot order."""
        rows: List[Dict[str, Any]] = []
        for var in self.vars:
            info = var.info
            rows.append(
                {
                    "slot": info.index,
                    "name": info.name,
                    "kind": info.kind,
                    "shape": shape_of(var.value) if var.value is not None else None,
                    "requires_gradient": info.requires_gradient,
                    "persistent": info.persistent,
                    "last_forward_use": info.last_forward_use,
                    "last_backward_use": info.last_backward_use,
                    "has_der": self.vars.get_der(info.index) is not ZERO,
                }
            )
        return rows

    # accessors
    def get_var_index(self, name: str) -> int:
        return self.schedule.slot_of(name)

    def _slot(self, key: Key) -> int:
        if isinstance(key, str):
            return self.schedule.slot_of(key)
        if isinstance(key, int) and not isinstance(key, bool) and 0 <= key < len(self.vars):
            return key
        raise UnknownVariableError(f"No variable slot {key!r}.")

    def get_value(self, key: Key) -> Any:
        return self.vars.get(self._slot(key))

    def set_value(self, key: Key, value: Any) -> None:
        """Overwrite a slot's value; for Inputs this stages the next binding."""
        slot = self._slot(key)
        if self.vars[slot].info.kind == "input":
            self._pending[slot] = value
        else:
            self.vars.put(slot, value)

    def get_der(self, key: Key) -> Any:
        return self.vars.get_der(self._slot(key))

    def set_der(self, key: Key, der: Any) -> None:
        self.vars.set_der(self._slot(key), der)

    def set_inputs(self, values: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> None:
        """Stage Input bindings for the next evaluation."""
        merged = dict(values or {})
        merged.update(kwargs)
        input_slots = self.schedule.input_slots()
        for name, value in merged.items():
            if name not in input_slots:
                raise UnknownVariableError(f"`{name}` is not an input of this Net.")
            self._pending[input_slots[name]] = value

    # evaluation
    def eval(
        self,
        inputs: Optional[Mapping[str, Any]] = None,
        mode: str = "normal",
        seed: Any = None,
        *,
        accumulate_param_ders: bool = False,
    ) -> None:
        """
        Run one evaluation.

        Args:
            inputs: Input name -> value bindings for this evaluation.
            mode: ``normal`` runs forward and backward; ``forward`` and
                ``test`` run forward only (``test`` prefers each operation's
                test-mode kernel).
            seed: Derivative seeded at the last terminal, or a mapping from
                variable name to seed. Defaults to ``config.default_seed``.
            accumulate_param_ders: Keep Param derivatives from earlier
                evaluations instead of zeroing them.
        """
        _check_mode(mode)
        backward = mode == "normal"
        logger.debug("Evaluating Net in `%s` mode.", mode)
        self.forward(
            inputs,
            keep_for_backward=backward,
            mode=mode,
            accumulate_param_ders=accumulate_param_ders,
        )
        if backward:
            self.backward(seed)

    def forward(
        self,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        keep_for_backward: bool = True,
        mode: str = "normal",
        accumulate_param_ders: bool = False,
    ) -> None:
        """
        Run the forward half of an evaluation.

        ``test`` mode never leaves a backward pass pending, since its values
        come from test-mode kernels.
        """
        _check_mode(mode)
        if mode == "test":
            keep_for_backward = False
        self._enter()
        self._backward_ready = False
        current: Optional[Instruction] = None
        try:
            self._check_structure()
            if inputs:
                self.set_inputs(inputs)
            self.vars.reset(keep_param_ders=accumulate_param_ders)
            self._bind_inputs()
            self._dirty = False

            release = (
                self.schedule.release.forward
                if keep_for_backward
                else self.schedule.release.forward_only
            )
            test = mode == "test"
            for instr in self.schedule.forward:
                current = instr
                args, kwargs = self._gather(instr)
                op = instr.operation
                fn = op.test if test and op.test is not None else op.forward
                start = time.perf_counter()
                result = fn(*args, **kwargs)
                self.profiler.record_event(instr.op, (time.perf_counter() - start) * 1e3)
                self.profiler.record_step("forward")

                outputs = self._split_outputs(instr, result)
                for slot, value in zip(instr.outputs, outputs):
                    self.vars.put(slot, value)
                if self.callbacks.on_forward:
                    self.callbacks.on_forward(instr, outputs)
                self._record_live()
                if self.config.conserve_memory:
                    for slot in release[instr.index]:
                        self.vars.release(slot)
        except Exception:
            self._dirty = True
            logger.debug(
                "Forward pass aborted at `%s`.", current.name if current else "<setup>"
            )
            raise
        finally:
            self._evaluating = False

        self._backward_ready = keep_for_backward
        if self.callbacks.finalize:
            self.callbacks.finalize()

    def backward(self, seed: Any = None) -> None:
        if not self._backward_ready:
            raise EvaluationStateError(
                "backward() needs a preceding forward pass run with keep_for_backward=True."
            )
        self._enter()
        self._backward_ready = False
        current: Optional[Instruction] = None
        try:
            self._seed(seed)
            release = self.schedule.release
            for step, instr in enumerate(self.schedule.backward):
                current = instr
                douts = tuple(self.vars.get_der(slot) for slot in instr.outputs)
                # nothing reached this node's outputs, so it contributes nothing
                if any(d is not ZERO for d in douts):
                    self._backward_step(instr, douts[0] if len(douts) == 1 else douts)
                self._record_live()
                if self.config.conserve_memory:
                    for slot in release.backward_values[step]:
                        self.vars.release(slot)
                    for slot in release.backward_ders[step]:
                        self.vars.release_der(slot)
        except Exception:
            self._dirty = True
            logger.debug(
                "Backward pass aborted at `%s`.", current.name if current else "<seed>"
            )
            raise
        finally:
            self._evaluating = False

        if self.callbacks.finalize:
            self.callbacks.finalize()

    def move(self, device: str) -> None:
        """
        Re-target flagged variables to ``device``.

        Param values transfer now; flagged Inputs on binding; constants of
        flagged instructions on their next use.
        """
        if self._evaluating:
            raise EvaluationStateError("Cannot move a Net while it is evaluating.")
        device = normalize_device(device)
        for var in self.vars:
            info = var.info
            if not info.device_placement or info.kind != "param":
                continue
            if var.value is not None:
                var.value = self._transfer(var.value, device)
                self.profiler.record_transfer()
            der = self.vars.get_der(info.index)
            if der is not ZERO:
                self.vars.set_der(info.index, self._transfer(der, device))
        self.device = device
        self._placed_constants.clear()
        self._backward_ready = False
        logger.debug("Moved Net to `%s`.", device)

    # internals
    def _enter(self) -> None:
        if self._evaluating:
            raise EvaluationStateError(
                "Net is already evaluating; concurrent or re-entrant evaluations are not allowed."
            )
        self._evaluating = True

    def _check_structure(self) -> None:
        if not self.config.check_structure:
            return
        for node, name in self._structure:
            if node.name != name:
                raise StructuralError(
                    f"Node `{name}` was renamed to `{node.name}` after compilation; "
                    "compile a new Net."
                )

    def _bind_inputs(self) -> None:
        pending, self._pending = self._pending, {}
        missing: List[str] = []
        for name, slot in self.schedule.input_slots().items():
            if slot not in pending or pending[slot] is None:
                missing.append(name)
                continue
            value = pending[slot]
            if self.vars[slot].info.device_placement and self.device != HOST:
                value = self._transfer(value, self.device)
                self.profiler.record_transfer()
            self.vars.put(slot, value)
        if missing:
            raise MissingInputError(f"No value bound for inputs: {', '.join(missing)}")

    def _constants(self, instr: Instruction) -> Tuple[Tuple[Any, ...], Dict[str, Any]]:
        args = tuple(a.value if isinstance(a, Const) else None for a in instr.args)
        kwargs = {k: a.value if isinstance(a, Const) else None for k, a in instr.kwargs.items()}
        if not (instr.device_placement and self.device != HOST and instr.has_constants()):
            return args, kwargs
        placed = self._placed_constants.get(instr.index)
        if placed is None:
            placed = (
                tuple(self._place(v) for v in args),
                {k: self._place(v) for k, v in kwargs.items()},
            )
            self._placed_constants[instr.index] = placed
        return placed

    def _place(self, value: Any) -> Any:
        if not is_movable(value):
            return value
        self.profiler.record_transfer()
        return self._transfer(value, self.device)

    def _gather(self, instr: Instruction) -> Tuple[Tuple[Any, ...], Dict[str, Any]]:
        const_args, const_kwargs = self._constants(instr)
        args = tuple(
            self.vars.get(a.slot) if isinstance(a, SlotRef) else const_args[i]
            for i, a in enumerate(instr.args)
        )
        kwargs = {
            k: self.vars.get(a.slot) if isinstance(a, SlotRef) else const_kwargs[k]
            for k, a in instr.kwargs.items()
        }
        return args, kwargs

    def _backward_step(self, instr: Instruction, dy: Any) -> None:
        args, kwargs = self._gather(instr)
        start = time.perf_counter()
        ders = instr.operation.backward(*args, dy, **kwargs)  # type: ignore[misc]
        self.profiler.record_event(f"{instr.op}.backward", (time.perf_counter() - start) * 1e3)
        self.profiler.record_step("backward")

        if ders is None:
            ders = ()
        elif not isinstance(ders, (tuple, list)):
            ders = (ders,)
        for position, slot in instr.gradient_positions:
            der = ders[position] if position < len(ders) else None
            if der is not None:
                self.vars.accumulate(slot, der, order=(instr.index, position))
        if self.callbacks.on_backward:
            self.callbacks.on_backward(instr, ders)

    @staticmethod
    def _split_outputs(instr: Instruction, result: Any) -> Tuple[Any, ...]:
        n = len(instr.outputs)
        if n == 1:
            return (result,)
        if not isinstance(result, (tuple, list)) or len(result) != n:
            raise OperationError(
                f"Operation `{instr.op}` of `{instr.name}` must return {n} outputs."
            )
        return tuple(result)

    def _seed(self, seed: Any) -> None:
        if seed is None:
            seed = self.config.default_seed
        if isinstance(seed, Mapping):
            for name, value in seed.items():
                self.vars.accumulate(self.schedule.slot_of(name), value)
            return
        self.vars.accumulate(self.schedule.terminals[-1], seed)

    def _record_live(self) -> None:
        if self.profiler.enabled:
            self.profiler.record_live(len(self.vars.live_slots()), self.vars.live_bytes())


def _check_mode(mode: str) -> None:
    if mode not in MODES:
        raise ValueError(f"Unknown evaluation mode `{mode}`; expected one of {MODES}.")


def compile_net(*terminals: Union[Node, Iterable[Node]], **kwargs: Any) -> Net:
    """Compile ``terminals`` into a Net; see ``Net`` for keyword arguments."""
    return Net(*terminals, **kwargs)

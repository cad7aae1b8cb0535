from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from lazynet.errors import ConfigurationError, UnknownVariableError, UnresolvedNameError
from lazynet.graph.ir import Graph, Node
from lazynet.graph.naming import duplicate_names, resolve_names, unnamed
from lazynet.graph.topo import topological_order
from lazynet.ops.registry import Operation, OperationRegistry
from lazynet.schedule.liveness import (
    ReleasePlan,
    SlotInfo,
    analyze_liveness,
    build_release_plan,
    live_profile,
)
from lazynet.utils.logging import logger


@dataclass(frozen=True)
class SlotRef:
    slot: int


@dataclass(frozen=True, eq=False)
class Const:
    value: Any


Arg = Union[SlotRef, Const]


@dataclass
class Instruction:
    """
    One executable step: run ``operation`` on resolved arguments.

    Attributes:
        index: Position in the forward list.
        outputs: Slot written by each output of the operation.
        gradient_positions: ``(position, slot)`` for every positional
            argument whose derivative must be accumulated.
    """

    index: int
    handle: int
    name: str
    operation: Operation
    args: Tuple[Arg, ...]
    kwargs: Dict[str, Arg]
    outputs: Tuple[int, ...]
    gradient_positions: Tuple[Tuple[int, int], ...] = ()
    requires_gradient: bool = False
    device_placement: bool = False

    @property
    def op(self) -> str:
        return self.operation.kind

    def reads(self) -> List[int]:
        refs = [a.slot for a in self.args if isinstance(a, SlotRef)]
        refs.extend(a.slot for a in self.kwargs.values() if isinstance(a, SlotRef))
        return refs

    def has_constants(self) -> bool:
        return any(isinstance(a, Const) for a in (*self.args, *self.kwargs.values()))


@dataclass
class Schedule:
    """
    Output of compilation: everything a Net needs to evaluate a graph.
    """

    nodes: List[Node]
    forward: List[Instruction]
    backward: List[Instruction]
    slots: List[SlotInfo]
    names: Dict[str, int]
    terminals: Tuple[int, ...]
    release: ReleasePlan = field(default_factory=ReleasePlan)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def num_slots(self) -> int:
        return len(self.slots)

    def __post_init__(self) -> None:
        self._by_handle: Dict[int, Node] = {node.handle: node for node in self.nodes}

    @property
    def nodes_by_handle(self) -> Dict[int, Node]:
        return self._by_handle

    def slot_of(self, name: str) -> int:
        try:
            return self.names[name]
        except KeyError:
            raise UnknownVariableError(f"No variable named `{name}`.") from None

    def input_slots(self) -> Dict[str, int]:
        return {s.name: s.index for s in self.slots if s.kind == "input"}

    def param_slots(self) -> Dict[str, int]:
        return {s.name: s.index for s in self.slots if s.kind == "param"}

    def live_profile(self, *, with_backward: bool = False) -> List[int]:
        """Live value count after each forward step (and backward step)."""
        leaves = {s.index for s in self.slots if s.kind != "op"}
        produced = [instr.outputs for instr in self.forward]
        released = self.release.forward if with_backward else self.release.forward_only
        sizes, alive = live_profile(released, produced, leaves)
        if with_backward:
            tail, _ = live_profile(
                self.release.backward_values, [()] * len(self.backward), alive
            )
            sizes.extend(tail)
        return sizes

    def validate(self) -> None:
        from lazynet.schedule.validate import validate_schedule

        validate_schedule(self)


def _slot_name(node: Node, output: int, selectors: Dict[Tuple[int, int], Node]) -> str:
    if output == 0:
        return node.name  # type: ignore[return-value]
    selector = selectors.get((node.handle, output))
    if selector is not None:
        return selector.name  # type: ignore[return-value]
    return f"{node.name}:{output}"


def compile_schedule(
    terminals: Union[Node, Iterable[Node]],
    *,
    keep: Sequence[str] = (),
    naming: str = "default",
    registry: Optional[OperationRegistry] = None,
) -> Schedule:
    """
    Compile the graph reachable from ``terminals`` into a Schedule.

    Steps:
    1. Reachability traversal with identity dedup and a stable topo order.
    2. Naming of unnamed nodes, then a duplicate-name check.
    3. Gradient-reachability analysis (Params and flagged Inputs seed it).
    4. Slot assignment, one slot per output; selectors alias their parent.
    5. Forward instructions and the pruned, reversed backward list.
    6. Liveness analysis and the release plan.
    """
    terminal_list = [terminals] if isinstance(terminals, Node) else list(terminals)
    if not terminal_list:
        raise ConfigurationError("compile needs at least one terminal node.")
    for term in terminal_list:
        if not isinstance(term, Node):
            raise ConfigurationError(
                f"Terminals must be Nodes, got `{type(term).__name__}`."
            )
    graph: Graph = terminal_list[0].graph
    if any(term.graph is not graph for term in terminal_list):
        raise ConfigurationError("All terminals must belong to the same graph.")
    registry = registry or graph.registry

    order = topological_order(terminal_list)

    if unnamed(order):
        resolve_names(graph, order, mode=naming)
    dupes = duplicate_names(order)
    if dupes:
        listing = ", ".join(sorted(dupes))
        raise UnresolvedNameError(f"Duplicate node names in graph: {listing}")

    requires_grad: Dict[int, bool] = {}
    for node in order:
        if node.is_leaf:
            requires_grad[node.handle] = bool(node.requires_gradient or node.is_param)
        elif node.is_selector:
            requires_grad[node.handle] = requires_grad[node.parent.handle]
        else:
            requires_grad[node.handle] = any(
                requires_grad[a.handle] for a in node.args if isinstance(a, Node)
            )

    selectors = {
        (node.parent.handle, node.index): node for node in order if node.is_selector
    }
    node_slots: Dict[int, Tuple[int, ...]] = {}
    slot_rows: List[Dict[str, Any]] = []
    for node in order:
        if node.is_selector:
            continue
        start = len(slot_rows)
        for output in range(node.num_outputs if not node.is_leaf else 1):
            kind = "param" if node.is_param else "input" if node.is_input else "op"
            slot_rows.append(
                dict(
                    index=start + output,
                    name=_slot_name(node, output, selectors),
                    handle=node.handle,
                    kind=kind,
                    output=output,
                    persistent=node.is_param,
                    requires_gradient=requires_grad[node.handle],
                    device_placement=node.device_placement,
                )
            )
        node_slots[node.handle] = tuple(range(start, len(slot_rows)))

    def slot_of(node: Node) -> int:
        if node.is_selector:
            return node_slots[node.parent.handle][node.index]
        return node_slots[node.handle][0]

    def resolve(value: Any) -> Arg:
        return SlotRef(slot_of(value)) if isinstance(value, Node) else Const(value)

    forward: List[Instruction] = []
    for node in order:
        if node.is_leaf or node.is_selector:
            continue
        operation = registry.get(node.op)
        if requires_grad[node.handle] and operation.backward is None:
            raise ConfigurationError(
                f"Operation `{node.op}` of node `{node.name}` has no backward mode "
                "but lies on a gradient path."
            )
        gradient_positions = tuple(
            (pos, slot_of(arg))
            for pos, arg in enumerate(node.args)
            if isinstance(arg, Node) and requires_grad[arg.handle]
        )
        forward.append(
            Instruction(
                index=len(forward),
                handle=node.handle,
                name=node.name,  # type: ignore[arg-type]
                operation=operation,
                args=tuple(resolve(a) for a in node.args),
                kwargs={k: resolve(v) for k, v in node.kwargs.items()},
                outputs=node_slots[node.handle],
                gradient_positions=gradient_positions,
                requires_gradient=requires_grad[node.handle],
                device_placement=node.device_placement,
            )
        )
    backward = [instr for instr in reversed(forward) if instr.requires_gradient]

    names: Dict[str, int] = {row["name"]: row["index"] for row in slot_rows}
    for node in order:
        names[node.name] = slot_of(node)  # type: ignore[index]

    retained = set()
    for term in terminal_list:
        retained.update((slot_of(term),) if term.is_selector else node_slots[term.handle])
    for name in keep:
        if name not in names:
            raise UnknownVariableError(f"Cannot keep unknown variable `{name}`.")
        retained.add(names[name])

    liveness = analyze_liveness(forward, backward, len(slot_rows))
    slots = [
        SlotInfo(
            retained=row["index"] in retained,
            last_forward_use=liveness.last_forward_use[row["index"]],
            last_backward_use=liveness.last_backward_use[row["index"]],
            producer=liveness.producer[row["index"]],
            producer_backward=liveness.producer_backward[row["index"]],
            **row,
        )
        for row in slot_rows
    ]

    schedule = Schedule(
        nodes=order,
        forward=forward,
        backward=backward,
        slots=slots,
        names=names,
        terminals=tuple(slot_of(term) for term in terminal_list),
        release=build_release_plan(slots, len(forward), len(backward)),
        meta={"num_nodes": len(order), "naming": naming},
    )
    logger.debug(
        "Compiled %d nodes into %d forward / %d backward instructions over %d slots.",
        len(order),
        len(forward),
        len(backward),
        len(slots),
    )
    return schedule

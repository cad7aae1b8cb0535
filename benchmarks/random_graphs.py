"""
Build random elementwise graphs and compare peak live memory with and
without slot reclamation.
"""

from __future__ import annotations

import argparse
import random
from typing import List

import numpy as np

from lazynet import Graph, Net, NetConfig
from lazynet.graph import builders
from lazynet.graph.ir import Node


PROFILES = {
    "small": {"nodes": 64, "max_parents": 2, "width": 1_024},
    "medium": {"nodes": 256, "max_parents": 3, "width": 16_384},
    "large": {"nodes": 1_024, "max_parents": 4, "width": 65_536},
}

UNARY = (builders.tanh, builders.sigmoid, builders.relu)


def build_random_graph(num_nodes: int, max_parents: int, width: int, *, seed: int) -> Node:
    rng = random.Random(seed)
    graph = Graph()
    x = graph.input("x")
    w = graph.param(np.full(width, 0.5), "w")
    pool: List[Node] = [x * w]

    for _ in range(num_nodes):
        k = rng.randint(1, min(max_parents, len(pool)))
        # favour recent nodes so the graph stays chain-like with skip edges
        parents = [pool[-1 - int(rng.expovariate(0.5)) % len(pool)] for _ in range(k)]
        node = parents[0]
        for other in parents[1:]:
            node = node + other if rng.random() < 0.5 else node * other
        pool.append(rng.choice(UNARY)(node))

    loss = pool[-1].sum()
    loss.name = "loss"
    return loss


def run(loss: Node, width: int, *, conserve: bool, repeats: int) -> None:
    net = Net(loss, config=NetConfig(profile=True, conserve_memory=conserve))
    data = np.linspace(-1.0, 1.0, width)
    for _ in range(repeats):
        net.eval({"x": data})
    stats = net.profiler.snapshot()
    label = "conserve" if conserve else "keep-all"
    total_ms = sum(stats.events.values())
    print(
        f"{label:>9}: peak={stats.peak_live_slots} slots "
        f"({stats.peak_live_bytes / 1e6:.2f} MB), "
        f"steps={stats.forward_steps}/{stats.backward_steps}, "
        f"kernels={total_ms:.1f} ms"
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--profile", choices=PROFILES.keys(), default="medium")
    parser.add_argument("--nodes", type=int, default=None)
    parser.add_argument("--max-parents", type=int, default=None)
    parser.add_argument("--width", type=int, default=None)
    parser.add_argument("--repeats", type=int, default=3)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()
    for key, value in PROFILES[args.profile].items():
        if getattr(args, key) is None:
            setattr(args, key, value)
    return args


def main() -> None:
    args = parse_args()
    loss = build_random_graph(args.nodes, args.max_parents, args.width, seed=args.seed)
    print(f"=== Random graph: {len(loss.graph)} nodes, width {args.width} ===")
    for conserve in (False, True):
        run(loss, args.width, conserve=conserve, repeats=args.repeats)


if __name__ == "__main__":
    main()

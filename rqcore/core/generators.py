"""
Graph generators producing weighted edge lists.

Power-law graphs over a ring of N nodes: P(edge at distance d) ~ d^(-alpha).
For alpha close to 2 the spectral dimension is close to 3, which makes
them the default initial geometry for the simulator.

All generators return ``(sources, targets, weights)`` with sources < targets,
ready for ``SparseTopology.from_edge_list``.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Set, Tuple
import numpy as np

from ..errors import InvalidArgumentError

EdgeArrays = Tuple[np.ndarray, np.ndarray, np.ndarray]


@dataclass
class GraphConfig:
    """Configuration for generated graphs."""

    N: int = 4096                   # Number of nodes
    alpha: float = 2.0              # Power-law exponent P(d) ~ d^(-alpha)
    c: float = 1.0                  # Scaling constant for edge count
    d_max: Optional[int] = None     # Maximum distance for long-range edges
    include_chain: bool = True      # Nearest-neighbour ring/chain edges
    periodic: bool = True           # Close the chain into a ring
    weight_min: float = 0.5         # Random weights drawn from [weight_min, weight_max)
    weight_max: float = 1.0
    seed: Optional[int] = 42

    def __post_init__(self):
        if self.d_max is None:
            self.d_max = self.N // 2


def _to_arrays(edges: Set[Tuple[int, int]], config: GraphConfig) -> EdgeArrays:
    pairs = np.array(sorted(edges), dtype=np.int64).reshape(-1, 2)
    rng = np.random.default_rng(config.seed)
    weights = rng.uniform(config.weight_min, config.weight_max, size=len(pairs))
    return pairs[:, 0].copy(), pairs[:, 1].copy(), weights


def _chain_edges(N: int, periodic: bool) -> Set[Tuple[int, int]]:
    edges = {(i, i + 1) for i in range(N - 1)}
    if periodic and N > 2:
        edges.add((0, N - 1))
    return edges


def chain_edges(config: GraphConfig) -> EdgeArrays:
    """Nearest-neighbour chain (ring if periodic)."""
    return _to_arrays(_chain_edges(config.N, config.periodic), config)


def powerlaw_edges(config: GraphConfig) -> EdgeArrays:
    """
    Deterministic power-law structure with random weights.

    For each distance d, about c * N / d^alpha edges are placed at evenly
    spaced start positions.

    Args:
        config: Graph configuration

    Returns:
        (sources, targets, weights) with sources < targets
    """
    N = config.N
    alpha = config.alpha
    c = config.c
    d_max = config.d_max or N // 2

    edges: Set[Tuple[int, int]] = set()
    if config.include_chain:
        edges |= _chain_edges(N, config.periodic)

    for d in range(2, d_max + 1):
        target_edges = int(c * N / (d ** alpha))
        if target_edges < 1:
            continue
        spacing = N / target_edges
        for k in range(target_edges):
            i = int(k * spacing) % N
            j = (i + d) % N if config.periodic else min(i + d, N - 1)
            if i != j:
                edges.add((min(i, j), max(i, j)))

    return _to_arrays(edges, config)


def random_edges(config: GraphConfig, avg_degree: float = 4.0) -> EdgeArrays:
    """Erdos-Renyi style graph with the given average degree."""
    N = config.N
    rng = np.random.default_rng(config.seed)
    m = int(avg_degree * N / 2)
    u = rng.integers(0, N, size=m)
    v = rng.integers(0, N, size=m)
    edges = {(int(min(a, b)), int(max(a, b))) for a, b in zip(u, v) if a != b}
    if config.include_chain:
        edges |= _chain_edges(N, config.periodic)
    return _to_arrays(edges, config)


GENERATORS = {
    "chain": chain_edges,
    "powerlaw": powerlaw_edges,
    "random": random_edges,
}


def generate(kind: str, config: GraphConfig) -> EdgeArrays:
    """Dispatch by generator name ('chain', 'powerlaw', 'random')."""
    if kind not in GENERATORS:
        raise InvalidArgumentError(f"Unknown graph kind '{kind}', expected one of {sorted(GENERATORS)}")
    return GENERATORS[kind](config)

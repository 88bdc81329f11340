"""
Topology mutation: soft rewiring by stream compaction and hard rewiring
by edge addition/removal proposals.

Soft rewiring drops every directed entry whose weight falls below a
threshold in two data-parallel passes (count, then scatter) separated by
an exclusive prefix sum over the per-row counts.

Hard rewiring asks an ``EdgeScorer`` for candidate changes, protects the
heaviest edges, marks removals pair-wise, optionally moves the energy of
dying edges into node masses, and rebuilds a canonical topology.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Protocol, Tuple
import logging
import time

import numpy as np

from ..config import RewiringParams
from ..errors import InvalidArgumentError, allocate
from . import kernels
from .topology import SparseTopology

logger = logging.getLogger(__name__)


# ===== Soft rewiring =====

@dataclass
class CompactionResult:
    """CSR arrays after stream compaction."""
    node_count: int
    row_offsets: np.ndarray
    col_indices: np.ndarray
    edge_weights: np.ndarray
    old_nnz: int
    new_nnz: int

    @property
    def changed(self) -> bool:
        return self.new_nnz != self.old_nnz

    @property
    def removed(self) -> int:
        return self.old_nnz - self.new_nnz


def _exclusive_offsets(counts: np.ndarray) -> np.ndarray:
    offsets = allocate(counts.shape[0] + 1, np.int64, "row offsets")
    np.cumsum(counts, out=offsets[1:])
    return offsets


class StreamCompactor:
    """Removes weak edges while keeping row order and symmetry."""

    def compact(self, topology: SparseTopology, threshold: float) -> CompactionResult:
        """
        Keep entries with weight >= threshold.

        Symmetry is preserved because both directions of an edge carry
        the same weight and face the same test.
        """
        if threshold < 0 or not np.isfinite(threshold):
            raise InvalidArgumentError(f"threshold must be finite and >= 0, got {threshold}")
        n = topology.node_count
        offsets = topology.row_offsets
        weights = topology.edge_weights

        counts = allocate(n, np.int64, "row counts")
        kernels.count_surviving(offsets, weights, threshold, counts)
        new_offsets = _exclusive_offsets(counts)
        new_nnz = int(new_offsets[-1])

        new_cols = allocate(new_nnz, np.int64, "compacted col_indices")
        new_weights = allocate(new_nnz, np.float64, "compacted edge_weights")
        kernels.scatter_surviving(
            offsets, topology.col_indices, weights, threshold,
            new_offsets, new_cols, new_weights,
        )
        logger.debug(f"Compaction threshold={threshold}: nnz {topology.nnz} -> {new_nnz}")
        return CompactionResult(n, new_offsets, new_cols, new_weights, topology.nnz, new_nnz)

    def compact_mask(self, topology: SparseTopology, keep: np.ndarray) -> CompactionResult:
        """Keep entries where ``keep`` is True (mask must be symmetric)."""
        n = topology.node_count
        counts = allocate(n, np.int64, "row counts")
        kernels.count_kept(topology.row_offsets, keep, counts)
        new_offsets = _exclusive_offsets(counts)
        new_nnz = int(new_offsets[-1])

        new_cols = allocate(new_nnz, np.int64, "compacted col_indices")
        new_weights = allocate(new_nnz, np.float64, "compacted edge_weights")
        kernels.scatter_kept(
            topology.row_offsets, topology.col_indices, topology.edge_weights, keep,
            new_offsets, new_cols, new_weights,
        )
        return CompactionResult(n, new_offsets, new_cols, new_weights, topology.nnz, new_nnz)


# ===== Hard rewiring =====

@dataclass
class MutationProposal:
    """
    Candidate changes for one hard rewiring cycle.

    Pairs may be given in any orientation; ``canonical()`` normalizes them.
    """
    add_u: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    add_v: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    add_w: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    remove_u: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    remove_v: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    node_count: Optional[int] = None     # New N, None keeps the current one

    @property
    def is_empty(self) -> bool:
        return len(self.add_u) == 0 and len(self.remove_u) == 0 and self.node_count is None

    def canonical(self) -> "MutationProposal":
        """Orient pairs as (min, max), drop self loops, deduplicate (first wins)."""
        add_u = np.asarray(self.add_u, dtype=np.int64)
        add_v = np.asarray(self.add_v, dtype=np.int64)
        add_w = np.asarray(self.add_w, dtype=np.float64)
        rem_u = np.asarray(self.remove_u, dtype=np.int64)
        rem_v = np.asarray(self.remove_v, dtype=np.int64)
        if not (len(add_u) == len(add_v) == len(add_w)):
            raise InvalidArgumentError("Addition arrays differ in length")
        if len(rem_u) != len(rem_v):
            raise InvalidArgumentError("Removal arrays differ in length")

        au, av, aw = _canonical_pairs(add_u, add_v, add_w)
        ru, rv, _ = _canonical_pairs(rem_u, rem_v, np.zeros(len(rem_u)))
        return MutationProposal(au, av, aw, ru, rv, self.node_count)


def _canonical_pairs(u, v, w):
    lo = np.minimum(u, v)
    hi = np.maximum(u, v)
    valid = lo != hi
    lo, hi, w = lo[valid], hi[valid], w[valid]
    if len(lo) == 0:
        return lo, hi, w
    key = lo * (int(hi.max()) + 1) + hi
    _, first = np.unique(key, return_index=True)
    first.sort()
    return lo[first], hi[first], w[first]


class EdgeScorer(Protocol):
    """Produces candidate topology changes for one cycle."""

    def propose(
        self,
        topology: SparseTopology,
        masses: np.ndarray,
        params: RewiringParams,
    ) -> MutationProposal:
        ...


class MetropolisEdgeScorer:
    """
    Metropolis proposals on a link-cost plus degree-penalty action.

    Additions: every node draws one random partner; the change in action

        dS = c_link * (1 - w0) + c_deg * [(d_a+1-D)^2 - (d_a-D)^2 + (same for b)]

    is accepted with probability min(1, exp(-beta * dS)).

    Removals: edges below the deletion threshold are dropped with
    probability 1 - w / threshold.
    """

    def __init__(self, seed: Optional[int] = None):
        self.rng = np.random.default_rng(seed)

    def propose(
        self,
        topology: SparseTopology,
        masses: np.ndarray,
        params: RewiringParams,
    ) -> MutationProposal:
        n = topology.node_count
        degrees = topology.degrees().astype(np.float64)

        # Additions
        a = np.arange(n, dtype=np.int64)
        b = self.rng.integers(0, n, size=n, dtype=np.int64)
        candidate = a != b
        a, b = a[candidate], b[candidate]
        exists = np.zeros(len(a), dtype=np.bool_)
        kernels.edges_exist(topology.row_offsets, topology.col_indices, a, b, exists)
        a, b = a[~exists], b[~exists]

        target = params.target_degree
        coeff = params.degree_penalty_coeff
        da, db = degrees[a], degrees[b]
        ds_degree = coeff * (
            (da + 1 - target) ** 2 - (da - target) ** 2
            + (db + 1 - target) ** 2 - (db - target) ** 2
        )
        ds = params.link_cost_coeff * (1.0 - params.initial_weight) + ds_degree
        u = self.rng.random(len(ds))
        accept = (ds <= 0) | (u < np.exp(-params.beta * np.maximum(ds, 0.0)))
        add_u, add_v = a[accept], b[accept]
        add_w = np.full(len(add_u), params.initial_weight, dtype=np.float64)

        # Removals
        src, tgt, w = topology.to_edge_list()
        threshold = params.deletion_threshold
        if threshold > 0 and len(w):
            weak = w < threshold
            u = self.rng.random(int(weak.sum()))
            delete = u < 1.0 - w[weak] / threshold
            rem_u, rem_v = src[weak][delete], tgt[weak][delete]
        else:
            rem_u = rem_v = np.zeros(0, dtype=np.int64)

        return MutationProposal(add_u, add_v, add_w, rem_u, rem_v)


@dataclass
class RewiringStats:
    """Statistics of one hard rewiring cycle."""
    proposed_additions: int = 0
    accepted_additions: int = 0
    proposed_deletions: int = 0
    accepted_deletions: int = 0
    protected_edges: int = 0
    old_node_count: int = 0
    new_node_count: int = 0
    old_nnz: int = 0
    new_nnz: int = 0
    energy_removed: float = 0.0
    energy_transferred: float = 0.0
    conservation_error: float = 0.0
    energy_conserved: bool = True
    time_ms: float = 0.0

    @property
    def topology_changed(self) -> bool:
        return (
            self.accepted_additions > 0
            or self.accepted_deletions > 0
            or self.new_node_count != self.old_node_count
        )


@dataclass
class RewiringOutcome:
    """New topology and masses produced by a hard rewiring cycle."""
    topology: Optional[SparseTopology]   # None when nothing changed
    masses: np.ndarray
    stats: RewiringStats


def _resize(values: np.ndarray, n: int) -> np.ndarray:
    """Truncate or zero-pad a node-indexed array to length n."""
    out = np.zeros(n, dtype=values.dtype)
    m = min(n, len(values))
    out[:m] = values[:m]
    return out


class HardRewiringEngine:
    """
    Applies scorer proposals to a topology.

    The input topology is never modified; the caller swaps in the
    returned one and re-initializes dependent buffers.
    """

    def __init__(
        self,
        params: Optional[RewiringParams] = None,
        scorer: Optional[EdgeScorer] = None,
    ):
        self.params = params or RewiringParams()
        self.scorer = scorer or MetropolisEdgeScorer(self.params.seed)
        self.compactor = StreamCompactor()
        self.last_stats = RewiringStats()

    def protected_pairs(self, topology: SparseTopology) -> Tuple[np.ndarray, np.ndarray]:
        """Canonical pairs of the top-K heaviest edges."""
        k = self.params.max_protected_heavy_edges
        src, tgt, w = topology.to_edge_list()
        if k <= 0 or len(w) == 0:
            return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
        if k >= len(w):
            return src, tgt
        top = np.argpartition(-w, k - 1)[:k]
        return src[top], tgt[top]

    def evolve(self, topology: SparseTopology, masses: np.ndarray) -> RewiringOutcome:
        """
        Run one proposal/acceptance/rebuild cycle.

        Args:
            topology: Current topology (left untouched)
            masses: Node masses of length N (left untouched)

        Returns:
            RewiringOutcome with the new topology (None if unchanged)
        """
        start = time.perf_counter()
        params = self.params
        n = topology.node_count
        masses = np.asarray(masses, dtype=np.float64)
        if len(masses) != n:
            raise InvalidArgumentError(f"masses must have length {n}, got {len(masses)}")

        proposal = self.scorer.propose(topology, masses, params).canonical()
        new_n = n if proposal.node_count is None else int(proposal.node_count)
        if new_n < 1:
            raise InvalidArgumentError(
                f"Mutation would leave {new_n} nodes; topology must keep at least one"
            )
        if (len(proposal.add_u) and proposal.add_u.min() < 0) or (
            len(proposal.remove_u) and proposal.remove_u.min() < 0
        ):
            raise InvalidArgumentError("Proposed endpoints must be non-negative")
        if len(proposal.add_v) and proposal.add_v.max() >= new_n:
            raise InvalidArgumentError(f"Proposed addition endpoint out of range [0, {new_n})")
        if len(proposal.add_w) and (
            not np.all(np.isfinite(proposal.add_w)) or np.any(proposal.add_w < 0)
        ):
            raise InvalidArgumentError("Proposed edge weights must be finite and >= 0")

        stats = RewiringStats(
            proposed_additions=len(proposal.add_u),
            proposed_deletions=len(proposal.remove_u),
            old_node_count=n,
            new_node_count=new_n,
            old_nnz=topology.nnz,
        )

        # Removals: drop out-of-range pairs, protected pairs, cap
        rem_u, rem_v = proposal.remove_u, proposal.remove_v
        in_range = rem_v < n
        rem_u, rem_v = rem_u[in_range], rem_v[in_range]
        prot_u, prot_v = self.protected_pairs(topology)
        stats.protected_edges = len(prot_u)
        if len(prot_u) and len(rem_u):
            prot_keys = prot_u * n + prot_v
            is_protected = np.isin(rem_u * n + rem_v, prot_keys)
            rem_u, rem_v = rem_u[~is_protected], rem_v[~is_protected]
        rem_u = rem_u[:params.max_deletions_per_step]
        rem_v = rem_v[:params.max_deletions_per_step]

        # Additions: only genuinely new edges, capped
        add_u, add_v, add_w = proposal.add_u, proposal.add_v, proposal.add_w
        if len(add_u):
            exists = np.zeros(len(add_u), dtype=np.bool_)
            both_old = add_v < n
            old_exists = np.zeros(int(both_old.sum()), dtype=np.bool_)
            kernels.edges_exist(
                topology.row_offsets, topology.col_indices,
                add_u[both_old], add_v[both_old], old_exists,
            )
            exists[both_old] = old_exists
            add_u, add_v, add_w = add_u[~exists], add_v[~exists], add_w[~exists]
        add_u = add_u[:params.max_additions_per_step]
        add_v = add_v[:params.max_additions_per_step]
        add_w = add_w[:params.max_additions_per_step]

        if len(add_u) == 0 and len(rem_u) == 0 and new_n == n:
            stats.new_nnz = topology.nnz
            stats.time_ms = (time.perf_counter() - start) * 1000.0
            self.last_stats = stats
            return RewiringOutcome(None, masses.copy(), stats)

        # Mark removals: one owner per canonical pair
        keep = np.ones(topology.nnz, dtype=np.bool_)
        found = np.zeros(len(rem_u), dtype=np.bool_)
        kernels.mark_pair_removals(
            topology.row_offsets, topology.col_indices, rem_u, rem_v, keep, found
        )
        rem_u, rem_v = rem_u[found], rem_v[found]
        if len(add_u) == 0 and len(rem_u) == 0 and new_n == n:
            stats.new_nnz = topology.nnz
            stats.time_ms = (time.perf_counter() - start) * 1000.0
            self.last_stats = stats
            return RewiringOutcome(None, masses.copy(), stats)

        new_masses = masses.copy()
        if params.enable_conservation and len(rem_u):
            self._conserve(topology, rem_u, rem_v, new_masses, stats)

        compacted = self.compactor.compact_mask(topology, keep)
        rows = np.repeat(np.arange(n, dtype=np.int64), np.diff(compacted.row_offsets))
        upper = rows < compacted.col_indices
        src = np.concatenate([rows[upper], add_u])
        tgt = np.concatenate([compacted.col_indices[upper], add_v])
        w = np.concatenate([compacted.edge_weights[upper], add_w])

        # Shrinking N drops edges touching removed nodes
        dropped = 0
        if new_n < n:
            inside = (src < new_n) & (tgt < new_n)
            dropped = int(np.count_nonzero(~inside))
            src, tgt, w = src[inside], tgt[inside], w[inside]

        potential = _resize(np.asarray(topology.node_potential), new_n)
        new_topology = SparseTopology.from_edge_list(new_n, src, tgt, w, potential)
        new_masses = _resize(new_masses, new_n)

        stats.accepted_additions = len(add_u)
        stats.accepted_deletions = len(rem_u) + dropped
        stats.new_nnz = new_topology.nnz
        stats.time_ms = (time.perf_counter() - start) * 1000.0
        self.last_stats = stats
        logger.info(
            f"Hard rewiring: +{stats.accepted_additions}/-{stats.accepted_deletions} edges, "
            f"N {n}->{new_n}, nnz {stats.old_nnz}->{stats.new_nnz} "
            f"({stats.time_ms:.1f} ms)"
        )
        return RewiringOutcome(new_topology, new_masses, stats)

    def _conserve(
        self,
        topology: SparseTopology,
        rem_u: np.ndarray,
        rem_v: np.ndarray,
        masses: np.ndarray,
        stats: RewiringStats,
    ) -> None:
        """Move each dying edge's energy into its endpoints, half each."""
        params = self.params
        idx = np.array(
            [kernels.find_entry(topology.row_offsets, topology.col_indices, u, v)
             for u, v in zip(rem_u, rem_v)],
            dtype=np.int64,
        )
        energy = topology.edge_weights[idx] * params.energy_conversion_factor
        before = float(masses.sum())
        np.add.at(masses, rem_u, 0.5 * energy)
        np.add.at(masses, rem_v, 0.5 * energy)

        stats.energy_removed = float(energy.sum())
        stats.energy_transferred = float(masses.sum()) - before
        stats.conservation_error = abs(stats.energy_removed - stats.energy_transferred)
        stats.energy_conserved = stats.conservation_error <= params.conservation_tolerance
        if not stats.energy_conserved:
            logger.warning(
                f"Energy conservation violated: error={stats.conservation_error:.3e}, "
                f"tolerance={params.conservation_tolerance:.3e}"
            )

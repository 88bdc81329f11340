"""
Compressed sparse row (CSR) topology for weighted undirected graphs.

The graph is stored as directed entries in both directions:

    row_offsets[N+1]   row i owns entries row_offsets[i]..row_offsets[i+1]-1
    col_indices[E]     neighbour of each entry, sorted ascending per row
    edge_weights[E]    non-negative, equal for (i,j) and (j,i)
    node_potential[N]  diagonal potential V_i

A topology is immutable apart from the potential and a weight refresh;
structural changes build a new instance. Each instance gets a fresh
``generation`` number so buffers sized for it can detect staleness.
"""

from __future__ import annotations
from typing import Callable, List, Optional, Tuple, Union
import itertools
import logging

import numpy as np
import scipy.sparse as sp

from ..errors import IllegalStateError, InvalidArgumentError
from . import kernels

logger = logging.getLogger(__name__)

_generations = itertools.count(1)


def _as_index_array(values, name: str) -> np.ndarray:
    arr = np.asarray(values)
    if arr.ndim != 1:
        raise InvalidArgumentError(f"{name} must be one-dimensional, got shape {arr.shape}")
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        if not np.all(np.equal(np.mod(arr, 1), 0)):
            raise InvalidArgumentError(f"{name} must contain integers")
    return arr.astype(np.int64, copy=False)


def _as_float_array(values, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim != 1:
        raise InvalidArgumentError(f"{name} must be one-dimensional, got shape {arr.shape}")
    return arr


class SparseTopology:
    """
    Symmetric weighted graph in CSR form.

    Use the ``from_*`` constructors; they validate input and produce a
    topology that is already marked ready.

    Example:
        topo = SparseTopology.from_edge_list(3, [0, 1], [1, 2], [0.5, 0.5])
        topo.nnz        # 4
        topo.degree(1)  # 2
    """

    def __init__(
        self,
        node_count: int,
        row_offsets: np.ndarray,
        col_indices: np.ndarray,
        edge_weights: np.ndarray,
        node_potential: np.ndarray,
    ):
        self._node_count = int(node_count)
        self._row_offsets = row_offsets
        self._col_indices = col_indices
        self._edge_weights = edge_weights
        self._node_potential = node_potential
        for arr in (row_offsets, col_indices, edge_weights):
            arr.setflags(write=False)
        self._ready = True
        self._generation = next(_generations)

    # ===== Construction =====

    @classmethod
    def from_edge_list(
        cls,
        node_count: int,
        sources,
        targets,
        weights,
        potential=None,
    ) -> "SparseTopology":
        """
        Build from an undirected edge list.

        Both directions of every edge are stored. When the same pair
        appears more than once (in either orientation) the last
        occurrence wins.

        Args:
            node_count: Number of nodes N (>= 1)
            sources: Edge source nodes
            targets: Edge target nodes
            weights: Edge weights (finite, >= 0)
            potential: Node potential of length N (zeros if None)

        Returns:
            Ready topology
        """
        n = int(node_count)
        if n < 1:
            raise InvalidArgumentError(f"node_count must be at least 1, got {node_count}")

        src = _as_index_array(sources, "sources")
        tgt = _as_index_array(targets, "targets")
        w = _as_float_array(weights, "weights")
        if not (len(src) == len(tgt) == len(w)):
            raise InvalidArgumentError(
                f"Edge arrays differ in length: sources={len(src)}, "
                f"targets={len(tgt)}, weights={len(w)}"
            )
        pot = cls._check_potential(potential, n)

        if len(src):
            if src.min() < 0 or tgt.min() < 0 or src.max() >= n or tgt.max() >= n:
                raise InvalidArgumentError(f"Edge endpoint out of range [0, {n})")
            if np.any(src == tgt):
                bad = int(np.flatnonzero(src == tgt)[0])
                raise InvalidArgumentError(f"Self loop at edge {bad} (node {src[bad]})")
            if not np.all(np.isfinite(w)):
                raise InvalidArgumentError("Edge weights must be finite")
            if np.any(w < 0):
                raise InvalidArgumentError("Edge weights must be non-negative")

        # Canonical pairs, last occurrence wins
        lo = np.minimum(src, tgt)
        hi = np.maximum(src, tgt)
        key = lo * n + hi
        _, rev_first = np.unique(key[::-1], return_index=True)
        last = len(key) - 1 - rev_first
        lo, hi, w = lo[last], hi[last], w[last]

        row_offsets, col_indices, edge_weights = cls._assemble(n, lo, hi, w)
        topo = cls(n, row_offsets, col_indices, edge_weights, pot)
        logger.debug(f"Built topology gen={topo.generation}: N={n}, nnz={topo.nnz}")
        return topo

    build_from_edge_list = from_edge_list

    @classmethod
    def from_dense(cls, edges, weights, potential=None) -> "SparseTopology":
        """
        Build from dense N x N adjacency and weight matrices.

        Entries are visited in row-major order, so where both (i,j) and
        (j,i) are set the weight at the later position wins. The diagonal
        is ignored.
        """
        edges = np.asarray(edges, dtype=bool)
        weights = np.asarray(weights, dtype=np.float64)
        if edges.ndim != 2 or edges.shape[0] != edges.shape[1]:
            raise InvalidArgumentError(f"edges must be square, got shape {edges.shape}")
        if weights.shape != edges.shape:
            raise InvalidArgumentError(
                f"weights shape {weights.shape} does not match edges shape {edges.shape}"
            )
        mask = edges.copy()
        np.fill_diagonal(mask, False)
        rows, cols = np.nonzero(mask)
        return cls.from_edge_list(edges.shape[0], rows, cols, weights[rows, cols], potential)

    build_from_dense = from_dense

    @classmethod
    def from_csr_arrays(
        cls,
        node_count: int,
        row_offsets,
        col_indices,
        edge_weights,
        node_potential=None,
        validate: bool = True,
    ) -> "SparseTopology":
        """
        Adopt precomputed CSR arrays (compaction output, checkpoints).

        Raises InvalidArgumentError if ``validate`` is set and the arrays
        break any CSR or symmetry invariant.
        """
        n = int(node_count)
        if n < 1:
            raise InvalidArgumentError(f"node_count must be at least 1, got {node_count}")
        offsets = np.array(row_offsets, dtype=np.int64)
        cols = np.array(col_indices, dtype=np.int64)
        w = np.array(edge_weights, dtype=np.float64)
        if offsets.shape != (n + 1,):
            raise InvalidArgumentError(
                f"row_offsets must have length {n + 1}, got {offsets.shape}"
            )
        if cols.shape != w.shape or cols.ndim != 1:
            raise InvalidArgumentError(
                f"col_indices and edge_weights differ: {cols.shape} vs {w.shape}"
            )
        pot = cls._check_potential(node_potential, n)
        topo = cls(n, offsets, cols, w, pot)
        if validate:
            issues = topo.validate()
            if issues:
                topo.release()
                raise InvalidArgumentError("Invalid CSR arrays: " + "; ".join(issues))
        return topo

    @staticmethod
    def _check_potential(potential, n: int) -> np.ndarray:
        if potential is None:
            return np.zeros(n, dtype=np.float64)
        pot = _as_float_array(potential, "potential").copy()
        if len(pot) != n:
            raise InvalidArgumentError(f"potential must have length {n}, got {len(pot)}")
        if not np.all(np.isfinite(pot)):
            raise InvalidArgumentError("Potential must be finite")
        return pot

    @staticmethod
    def _assemble(n: int, lo: np.ndarray, hi: np.ndarray, w: np.ndarray):
        """Degree count, prefix sum, scatter with columns sorted per row."""
        rows = np.concatenate([lo, hi])
        cols = np.concatenate([hi, lo])
        vals = np.concatenate([w, w])
        order = np.lexsort((cols, rows))
        rows, cols, vals = rows[order], cols[order], vals[order]

        row_offsets = np.zeros(n + 1, dtype=np.int64)
        np.cumsum(np.bincount(rows, minlength=n), out=row_offsets[1:])
        return (
            row_offsets,
            np.ascontiguousarray(cols, dtype=np.int64),
            np.ascontiguousarray(vals, dtype=np.float64),
        )

    # ===== Lifecycle =====

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def generation(self) -> int:
        return self._generation

    def release(self) -> None:
        """Drop buffers. Any later access raises IllegalStateError."""
        if self._ready:
            logger.debug(f"Released topology gen={self._generation}")
        self._ready = False
        self._row_offsets = None
        self._col_indices = None
        self._edge_weights = None
        self._node_potential = None

    def _require_ready(self) -> None:
        if not self._ready:
            raise IllegalStateError(
                f"Topology gen={self._generation} has been released"
            )

    # ===== Raw arrays =====

    @property
    def node_count(self) -> int:
        return self._node_count

    @property
    def nnz(self) -> int:
        self._require_ready()
        return int(self._col_indices.shape[0])

    @property
    def edge_count(self) -> int:
        """Number of undirected edges (nnz / 2)."""
        return self.nnz // 2

    @property
    def row_offsets(self) -> np.ndarray:
        self._require_ready()
        return self._row_offsets

    @property
    def col_indices(self) -> np.ndarray:
        self._require_ready()
        return self._col_indices

    @property
    def edge_weights(self) -> np.ndarray:
        self._require_ready()
        return self._edge_weights

    @property
    def node_potential(self) -> np.ndarray:
        self._require_ready()
        view = self._node_potential.view()
        view.setflags(write=False)
        return view

    @property
    def nbytes(self) -> int:
        self._require_ready()
        return int(
            self._row_offsets.nbytes + self._col_indices.nbytes
            + self._edge_weights.nbytes + self._node_potential.nbytes
        )

    # ===== In-place updates =====

    def update_potential(self, new_potential) -> None:
        """Replace the node potential (length N). Structure is untouched."""
        self._require_ready()
        pot = _as_float_array(new_potential, "potential")
        if len(pot) != self._node_count:
            raise InvalidArgumentError(
                f"potential must have length {self._node_count}, got {len(pot)}"
            )
        if not np.all(np.isfinite(pot)):
            raise InvalidArgumentError("Potential must be finite")
        self._node_potential[:] = pot

    def update_edge_weights(
        self,
        weights: Union[np.ndarray, Callable[[int, int], float]],
    ) -> None:
        """
        Refresh edge weights without changing structure.

        Args:
            weights: Array of length nnz (must be symmetric), or a callable
                f(i, j) evaluated once per undirected edge with i < j.
        """
        self._require_ready()
        if callable(weights):
            src, tgt, _ = self.to_edge_list()
            canon = np.array([weights(int(i), int(j)) for i, j in zip(src, tgt)],
                             dtype=np.float64)
            new_w = np.empty(self.nnz, dtype=np.float64)
            rows = self._row_index()
            upper = rows < self._col_indices
            new_w[upper] = canon
            mirror = self._mirrors()
            new_w[mirror[upper]] = canon
        else:
            new_w = _as_float_array(weights, "weights")
            if len(new_w) != self.nnz:
                raise InvalidArgumentError(
                    f"weights must have length {self.nnz}, got {len(new_w)}"
                )
            if not np.array_equal(new_w, new_w[self._mirrors()]):
                raise InvalidArgumentError("Edge weights must be symmetric")

        if not np.all(np.isfinite(new_w)):
            raise InvalidArgumentError("Edge weights must be finite")
        if np.any(new_w < 0):
            raise InvalidArgumentError("Edge weights must be non-negative")

        self._edge_weights = np.ascontiguousarray(new_w)
        self._edge_weights.setflags(write=False)

    # ===== Queries =====

    def degree(self, node: int) -> int:
        self._require_ready()
        self._check_node(node)
        return int(self._row_offsets[node + 1] - self._row_offsets[node])

    def degrees(self) -> np.ndarray:
        self._require_ready()
        return np.diff(self._row_offsets)

    def weighted_degree(self) -> np.ndarray:
        """Sum of incident weights per node."""
        self._require_ready()
        out = np.zeros(self._node_count, dtype=np.float64)
        kernels.weighted_degree(self._row_offsets, self._edge_weights, out)
        return out

    def neighbors(self, node: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (neighbour ids, weights) of a node."""
        self._require_ready()
        self._check_node(node)
        start, end = self._row_offsets[node], self._row_offsets[node + 1]
        return self._col_indices[start:end], self._edge_weights[start:end]

    def has_edge(self, i: int, j: int) -> bool:
        self._require_ready()
        self._check_node(i)
        self._check_node(j)
        return kernels.find_entry(self._row_offsets, self._col_indices, i, j) >= 0

    def edge_weight(self, i: int, j: int) -> Optional[float]:
        """Weight of edge (i, j) or None if absent."""
        self._require_ready()
        self._check_node(i)
        self._check_node(j)
        k = kernels.find_entry(self._row_offsets, self._col_indices, i, j)
        return float(self._edge_weights[k]) if k >= 0 else None

    def to_edge_list(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Undirected edges as (sources, targets, weights) with sources < targets."""
        self._require_ready()
        rows = self._row_index()
        upper = rows < self._col_indices
        return rows[upper], self._col_indices[upper].copy(), self._edge_weights[upper].copy()

    def to_scipy(self) -> sp.csr_matrix:
        """Weighted adjacency matrix as scipy CSR."""
        self._require_ready()
        n = self._node_count
        return sp.csr_matrix(
            (self._edge_weights.copy(), self._col_indices.copy(), self._row_offsets.copy()),
            shape=(n, n),
        )

    def hamiltonian_matrix(self, gauge_dim: int = 1) -> sp.csr_matrix:
        """
        Assemble H = L_w + diag(V) explicitly (diagnostics and tests only).

        For gauge_dim > 1 the node-major layout gives H kron I_g.
        """
        self._require_ready()
        adj = self.to_scipy()
        diag = sp.diags(self.weighted_degree() + self._node_potential)
        h = (diag - adj).tocsr()
        if gauge_dim > 1:
            h = sp.kron(h, sp.identity(gauge_dim), format="csr")
        return h

    def validate(self) -> List[str]:
        """Check CSR and symmetry invariants, return list of violations."""
        self._require_ready()
        issues = []
        n = self._node_count
        offsets = self._row_offsets
        cols = self._col_indices
        w = self._edge_weights
        nnz = len(cols)

        if offsets[0] != 0:
            issues.append("row_offsets[0] must be 0")
        if offsets[-1] != nnz:
            issues.append(f"row_offsets[N]={offsets[-1]} does not match nnz={nnz}")
        if np.any(np.diff(offsets) < 0):
            issues.append("row_offsets must be non-decreasing")
        if len(self._node_potential) != n:
            issues.append("node_potential length does not match node_count")
        elif not np.all(np.isfinite(self._node_potential)):
            issues.append("non-finite node potential")
        if issues or nnz == 0:
            return issues

        if cols.min() < 0 or cols.max() >= n:
            issues.append("col_indices out of range")
            return issues
        rows = self._row_index()
        if np.any(rows == cols):
            issues.append("self loops present")
        same_row = rows[1:] == rows[:-1]
        if np.any(cols[1:][same_row] <= cols[:-1][same_row]):
            issues.append("col_indices not strictly ascending within rows")
            return issues
        if not np.all(np.isfinite(w)):
            issues.append("non-finite edge weights")
        elif np.any(w < 0):
            issues.append("negative edge weights")

        mirror = self._mirrors()
        if np.any(mirror < 0):
            issues.append("missing reverse entries (asymmetric structure)")
        elif not np.array_equal(w, w[mirror]):
            issues.append("asymmetric edge weights")
        return issues

    # ===== Helpers =====

    def _check_node(self, node: int) -> None:
        if not 0 <= node < self._node_count:
            raise InvalidArgumentError(f"Node {node} out of range [0, {self._node_count})")

    def _row_index(self) -> np.ndarray:
        """Row id of every entry."""
        return np.repeat(np.arange(self._node_count, dtype=np.int64), np.diff(self._row_offsets))

    def _mirrors(self) -> np.ndarray:
        out = np.empty(len(self._col_indices), dtype=np.int64)
        kernels.mirror_indices(self._row_offsets, self._col_indices, out)
        return out

    def __repr__(self) -> str:
        if not self._ready:
            return f"SparseTopology(gen={self._generation}, released)"
        return (
            f"SparseTopology(N={self._node_count}, nnz={self.nnz}, "
            f"gen={self._generation})"
        )

"""
Cayley evolution engine.

Implements the norm-preserving implicit step

    psi(t+dt) = (I - i*alpha*H) (I + i*alpha*H)^{-1} psi(t),   alpha = dt/2

on a sparse topology, together with runtime topology mutation.

Key features:
- Lifecycle UNINITIALIZED -> READY -> DISPOSED
- Fixed per-step order: solve, tick, scheduled hard rewiring, health check
- Soft (compaction) and hard (proposal) rewiring with buffer resync
- Step callbacks and per-step diagnostics
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple
import logging
import threading
import time

import numpy as np

from ..config import EngineConfig, TopologyMode
from ..errors import IllegalStateError, InvalidArgumentError, allocate
from .health import HealthCheckResult, HealthMonitor
from .rewiring import EdgeScorer, HardRewiringEngine, RewiringStats, StreamCompactor
from .solver import BiCGStabSolver
from .topology import SparseTopology

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Engine lifecycle."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DISPOSED = "disposed"


@dataclass
class StepRecord:
    """Diagnostics of one evolution step."""
    tick: int
    iterations: int
    residual: float
    converged: bool
    norm: float
    node_count: int
    nnz: int
    healthy: Optional[bool] = None
    rewired: bool = False
    time_ms: float = 0.0


def recommend_csr(node_count: int, nnz: int) -> bool:
    """
    Whether the sparse engine is preferable to a dense one.

    Sparse pays off for large graphs (N > 10000) or when fewer than
    10% of the N^2 entries are present.
    """
    if node_count <= 0:
        return False
    sparsity = 1.0 - nnz / float(node_count) ** 2
    return node_count > 10000 or sparsity > 0.9


class CayleyEvolutionEngine:
    """
    Sparse Cayley integrator with mutable topology.

    Example:
        engine = CayleyEvolutionEngine(EngineConfig(dt=0.01))
        engine.initialize_from_edge_list(3, [0, 1], [1, 2], [0.5, 0.5])
        engine.upload_state(real, imag)
        engine.evolve(dt=0.01, num_steps=100)
        norm = engine.compute_norm()
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        scorer: Optional[EdgeScorer] = None,
    ):
        self.config = config or EngineConfig()
        issues = self.config.validate()
        if issues:
            raise InvalidArgumentError("Invalid engine config: " + "; ".join(issues))

        self.solver = BiCGStabSolver.from_params(self.config.solver)
        self.health_monitor = HealthMonitor.from_params(self.config.health)
        self.compactor = StreamCompactor()
        self.rewiring = HardRewiringEngine(self.config.rewiring, scorer)

        self._status = EngineState.UNINITIALIZED
        self._lock = threading.RLock()
        self._topology: Optional[SparseTopology] = None
        self._psi: Optional[np.ndarray] = None
        self._masses: Optional[np.ndarray] = None
        self._gauge_dim = self.config.gauge_dim
        self._tick = 0

        self.last_health: Optional[HealthCheckResult] = None
        self.last_rewiring: Optional[RewiringStats] = None
        self.last_step: Optional[StepRecord] = None
        self._callbacks: List[Callable[["CayleyEvolutionEngine", StepRecord], None]] = []

    # ===== Lifecycle =====

    @property
    def status(self) -> EngineState:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status == EngineState.READY

    def _require_ready(self) -> None:
        if self._status == EngineState.DISPOSED:
            raise IllegalStateError("Engine has been disposed")
        if self._status != EngineState.READY:
            raise IllegalStateError("Engine is not initialized")

    def initialize_with_topology(
        self,
        topology: SparseTopology,
        gauge_dim: Optional[int] = None,
    ) -> None:
        """
        Take ownership of ``topology`` and allocate all buffers.

        The state starts at zero and masses at zero.
        """
        with self._lock:
            if self._status == EngineState.DISPOSED:
                raise IllegalStateError("Engine has been disposed")
            if not topology.is_ready:
                raise IllegalStateError("Topology is not ready")
            g = self.config.gauge_dim if gauge_dim is None else int(gauge_dim)
            if g < 1:
                raise InvalidArgumentError(f"gauge_dim must be at least 1, got {g}")

            n = topology.node_count
            psi = allocate(n * g, np.complex128, "state")
            masses = allocate(n, np.float64, "masses")
            self.solver.initialize(topology, g)

            if self._topology is not None and self._topology is not topology:
                self._topology.release()
            self._topology = topology
            self._gauge_dim = g
            self._psi = psi
            self._masses = masses
            self._tick = 0
            self._status = EngineState.READY
            logger.info(
                f"Engine ready: N={n}, nnz={topology.nnz}, gauge_dim={g}, "
                f"mode={self.config.rewiring.mode.value}"
            )

    def initialize_from_edge_list(
        self,
        node_count: int,
        sources,
        targets,
        weights,
        potential=None,
        gauge_dim: Optional[int] = None,
    ) -> None:
        topology = SparseTopology.from_edge_list(node_count, sources, targets, weights, potential)
        self.initialize_with_topology(topology, gauge_dim)

    def initialize_from_dense(
        self,
        edges,
        weights,
        potential=None,
        gauge_dim: Optional[int] = None,
    ) -> None:
        topology = SparseTopology.from_dense(edges, weights, potential)
        self.initialize_with_topology(topology, gauge_dim)

    def dispose(self) -> None:
        """Release all buffers. Terminal; repeated calls are no-ops."""
        with self._lock:
            if self._status == EngineState.DISPOSED:
                return
            if self._topology is not None:
                self._topology.release()
            self.solver.dispose()
            self._topology = None
            self._psi = None
            self._masses = None
            self._status = EngineState.DISPOSED
            logger.debug("Engine disposed")

    def __enter__(self) -> "CayleyEvolutionEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # ===== Properties =====

    @property
    def topology(self) -> SparseTopology:
        self._require_ready()
        return self._topology

    @property
    def topology_generation(self) -> int:
        self._require_ready()
        return self._topology.generation

    @property
    def node_count(self) -> int:
        self._require_ready()
        return self._topology.node_count

    @property
    def gauge_dim(self) -> int:
        return self._gauge_dim

    @property
    def dimension(self) -> int:
        """Length of the flat state vector, N * gauge_dim."""
        self._require_ready()
        return self._psi.shape[0]

    @property
    def tick(self) -> int:
        return self._tick

    @tick.setter
    def tick(self, value: int) -> None:
        if value < 0:
            raise InvalidArgumentError(f"tick must be non-negative, got {value}")
        self._tick = int(value)

    @property
    def psi(self) -> np.ndarray:
        """Read-only view of the complex state."""
        self._require_ready()
        view = self._psi.view()
        view.setflags(write=False)
        return view

    @property
    def state(self) -> np.ndarray:
        """Copy of the complex state."""
        self._require_ready()
        return self._psi.copy()

    @property
    def masses(self) -> np.ndarray:
        self._require_ready()
        return self._masses.copy()

    def add_step_callback(self, callback: Callable[["CayleyEvolutionEngine", StepRecord], None]) -> None:
        """Register callback(engine, record) invoked after each step."""
        self._callbacks.append(callback)

    # ===== State I/O =====

    def upload_state(self, real, imag) -> None:
        """Replace the state from flat real/imag arrays of length N * gauge_dim."""
        self._require_ready()
        real = np.asarray(real, dtype=np.float64).ravel()
        imag = np.asarray(imag, dtype=np.float64).ravel()
        dim = self._psi.shape[0]
        if real.shape[0] != dim or imag.shape[0] != dim:
            raise InvalidArgumentError(
                f"State arrays must have length {dim}, got real={real.shape[0]}, "
                f"imag={imag.shape[0]}"
            )
        with self._lock:
            self._psi.real[:] = real
            self._psi.imag[:] = imag

    def download_state(
        self,
        real: Optional[np.ndarray] = None,
        imag: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Copy the state into flat real/imag arrays.

        Args:
            real: Optional output buffer of length N * gauge_dim
            imag: Optional output buffer of length N * gauge_dim

        Returns:
            (real, imag)
        """
        self._require_ready()
        dim = self._psi.shape[0]
        if real is None:
            real = np.empty(dim, dtype=np.float64)
        if imag is None:
            imag = np.empty(dim, dtype=np.float64)
        if real.shape != (dim,) or imag.shape != (dim,):
            raise InvalidArgumentError(
                f"Output arrays must have shape ({dim},), got {real.shape} and {imag.shape}"
            )
        real[:] = self._psi.real
        imag[:] = self._psi.imag
        return real, imag

    def set_state(self, psi) -> None:
        """Replace the state from a complex array of length N * gauge_dim."""
        psi = np.asarray(psi, dtype=np.complex128).ravel()
        self.upload_state(psi.real, psi.imag)

    def normalize(self) -> float:
        """Scale the state to unit norm, return the previous norm."""
        self._require_ready()
        norm = self.compute_norm()
        if norm > 0:
            self._psi /= norm
        return norm

    def compute_norm(self) -> float:
        self._require_ready()
        return float(np.linalg.norm(self._psi))

    # ===== Physics inputs =====

    def update_potential(self, potential) -> None:
        self._require_ready()
        with self._lock:
            self._topology.update_potential(potential)

    def update_masses(self, masses) -> None:
        self._require_ready()
        masses = np.asarray(masses, dtype=np.float64).ravel()
        n = self._topology.node_count
        if masses.shape[0] != n:
            raise InvalidArgumentError(f"masses must have length {n}, got {masses.shape[0]}")
        with self._lock:
            self._masses[:] = masses

    # ===== Evolution =====

    def evolve_step(self, dt: Optional[float] = None) -> int:
        """
        Advance one tick.

        Order: linear solve, tick increment, hard rewiring if scheduled
        (hard mode, tick % rebuild_interval == 0), health check.
        If the rewiring cycle raises, state and tick are restored before
        the exception propagates.

        Returns:
            BiCGStab iterations used
        """
        with self._lock:
            self._require_ready()
            dt = self.config.dt if dt is None else dt
            if dt <= 0:
                raise InvalidArgumentError(f"dt must be positive, got {dt}")
            start = time.perf_counter()

            rw = self.config.rewiring
            scheduled = (
                rw.mode == TopologyMode.HARD_REWIRING
                and (self._tick + 1) % rw.rebuild_interval == 0
            )
            # A failed rewiring cycle rolls the step back
            psi_before = self._psi.copy() if scheduled else None

            iterations = self.solver.solve(self._psi, 0.5 * dt, self._topology)
            self._tick += 1

            rewired = False
            if scheduled:
                try:
                    stats = self.evolve_topology_dynamic()
                except Exception:
                    self._psi[:] = psi_before
                    self._tick -= 1
                    raise
                rewired = stats.topology_changed

            healthy = None
            if self.config.health.check_every_step:
                self.last_health = self.health_monitor.check_buffer(self._psi)
                healthy = self.last_health.is_healthy

            record = StepRecord(
                tick=self._tick,
                iterations=iterations,
                residual=self.solver.last_residual,
                converged=self.solver.last_converged,
                norm=self.compute_norm(),
                node_count=self._topology.node_count,
                nnz=self._topology.nnz,
                healthy=healthy,
                rewired=rewired,
                time_ms=(time.perf_counter() - start) * 1000.0,
            )
            self.last_step = record

        for callback in self._callbacks:
            callback(self, record)
        return iterations

    def evolve(self, dt: Optional[float] = None, num_steps: int = 1) -> int:
        """Run ``num_steps`` steps, return total solver iterations."""
        if num_steps < 0:
            raise InvalidArgumentError(f"num_steps must be non-negative, got {num_steps}")
        total = 0
        for _ in range(num_steps):
            total += self.evolve_step(dt)
        return total

    # ===== Topology mutation =====

    def _swap_topology(self, topology: SparseTopology, masses: Optional[np.ndarray] = None) -> None:
        """Install a new topology and resync solver, state and masses."""
        old = self._topology
        old_n = old.node_count
        new_n = topology.node_count
        g = self._gauge_dim

        psi = self._psi
        if new_n != old_n:
            psi = allocate(new_n * g, np.complex128, "state")
            m = min(old_n, new_n) * g
            psi[:m] = self._psi[:m]
            if masses is None:
                resized = allocate(new_n, np.float64, "masses")
                k = min(old_n, new_n)
                resized[:k] = self._masses[:k]
                masses = resized
        self.solver.initialize(topology, g)

        self._psi = psi
        if masses is not None:
            self._masses = np.ascontiguousarray(masses, dtype=np.float64)

        self._topology = topology
        old.release()
        logger.info(
            f"Topology rebuilt: gen {old.generation}->{topology.generation}, "
            f"N {old_n}->{new_n}, nnz={topology.nnz}"
        )

    def _compact(self, threshold: float, force: bool) -> bool:
        result = self.compactor.compact(self._topology, threshold)
        if not result.changed and not force:
            return False
        topology = SparseTopology.from_csr_arrays(
            result.node_count, result.row_offsets, result.col_indices, result.edge_weights,
            np.array(self._topology.node_potential), validate=False,
        )
        self._swap_topology(topology)
        return True

    def evolve_topology(self, weight_threshold: Optional[float] = None) -> bool:
        """
        Apply the configured rewiring mode once.

        Static mode does nothing. Soft mode removes edges with weight
        below ``weight_threshold`` (config default if None). Hard mode
        runs one proposal cycle.

        Returns:
            True if the topology was rebuilt
        """
        with self._lock:
            self._require_ready()
            mode = self.config.rewiring.mode
            if mode == TopologyMode.STATIC:
                return False
            if mode == TopologyMode.HARD_REWIRING:
                return self.evolve_topology_dynamic().topology_changed
            threshold = (
                self.config.rewiring.weight_threshold
                if weight_threshold is None else weight_threshold
            )
            return self._compact(threshold, force=False)

    def evolve_topology_dynamic(self) -> RewiringStats:
        """Run one hard rewiring cycle regardless of the configured mode."""
        with self._lock:
            self._require_ready()
            outcome = self.rewiring.evolve(self._topology, self._masses)
            self.last_rewiring = outcome.stats
            if outcome.topology is not None:
                self._swap_topology(outcome.topology, outcome.masses)
            return outcome.stats

    def force_topology_rebuild(self) -> None:
        """
        Rebuild the topology now, even if nothing would change.

        Hard mode runs a proposal cycle; the other modes recompact at the
        configured threshold (static mode at zero, which keeps every edge).
        """
        with self._lock:
            self._require_ready()
            mode = self.config.rewiring.mode
            if mode == TopologyMode.HARD_REWIRING:
                self.evolve_topology_dynamic()
                return
            threshold = 0.0 if mode == TopologyMode.STATIC else self.config.rewiring.weight_threshold
            self._compact(threshold, force=True)

    def check_health(self) -> HealthCheckResult:
        """Full health scan of the current state."""
        self._require_ready()
        self.last_health = self.health_monitor.check_buffer(self._psi)
        return self.last_health

    def __repr__(self) -> str:
        if self._status != EngineState.READY:
            return f"CayleyEvolutionEngine({self._status.value})"
        return (
            f"CayleyEvolutionEngine(N={self._topology.node_count}, nnz={self._topology.nnz}, "
            f"gauge_dim={self._gauge_dim}, tick={self._tick})"
        )

"""
Complex BiCGStab solver for the Cayley system (I + i*alpha*H) x = b.

H is never assembled: every operator application is one CSR pass
(``kernels.cayley_apply``). The iteration follows van der Vorst's
BiCGStab with a fixed shadow residual r_hat = r_0, conjugating inner
products and Jacobi right preconditioning.

Non-convergence is not an error. Callers read ``last_iterations``,
``last_residual`` (relative, ||r|| / ||b||) and ``last_converged``.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np

from ..errors import IllegalStateError, InvalidArgumentError, allocate
from . import kernels
from .topology import SparseTopology

logger = logging.getLogger(__name__)

# Denominators below this magnitude are treated as breakdown (right-hand side has unit norm)
BREAKDOWN_EPS = 1e-30


@dataclass
class SolveResult:
    """Outcome of one linear solve."""
    iterations: int = 0
    residual: float = 0.0       # Relative residual ||r|| / ||b||
    converged: bool = True
    breakdown: bool = False


class BiCGStabSolver:
    """
    Workspace-owning BiCGStab solver bound to one topology.

    Example:
        solver = BiCGStabSolver(max_iterations=100, tolerance=1e-12)
        solver.initialize(topology, gauge_dim=1)
        iters = solver.solve(psi, alpha=0.005)
    """

    def __init__(
        self,
        max_iterations: int = 100,
        tolerance: float = 1e-12,
        preconditioner: str = "jacobi",
    ):
        if max_iterations < 1:
            raise InvalidArgumentError("max_iterations must be at least 1")
        if tolerance <= 0:
            raise InvalidArgumentError("tolerance must be positive")
        if preconditioner not in ("jacobi", "none"):
            raise InvalidArgumentError(
                f"Unknown preconditioner '{preconditioner}' (expected 'jacobi' or 'none')"
            )
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.preconditioner = preconditioner

        self._topology: Optional[SparseTopology] = None
        self._generation: Optional[int] = None
        self._gauge_dim = 1
        self._dim = 0
        self._ws = {}
        self._last = SolveResult()

    @classmethod
    def from_params(cls, params) -> "BiCGStabSolver":
        """Create from a ``SolverParams`` config block."""
        return cls(
            max_iterations=params.max_iterations,
            tolerance=params.tolerance,
            preconditioner=params.preconditioner,
        )

    # ===== Workspace =====

    def initialize(self, topology: SparseTopology, gauge_dim: int = 1) -> None:
        """Allocate workspace of dimension N * gauge_dim for ``topology``."""
        if not topology.is_ready:
            raise IllegalStateError("Cannot initialize solver on a released topology")
        if gauge_dim < 1:
            raise InvalidArgumentError(f"gauge_dim must be at least 1, got {gauge_dim}")

        dim = topology.node_count * gauge_dim
        names = ("b", "x", "r", "r_hat", "p", "v", "s", "t", "y", "z", "diag")
        self._ws = {name: allocate(dim, np.complex128, f"solver '{name}'") for name in names}
        self._topology = topology
        self._generation = topology.generation
        self._gauge_dim = int(gauge_dim)
        self._dim = dim
        self._last = SolveResult()
        logger.debug(f"Solver workspace: dim={dim}, topology gen={self._generation}")

    def dispose(self) -> None:
        self._ws = {}
        self._topology = None
        self._generation = None
        self._dim = 0

    @property
    def is_initialized(self) -> bool:
        return self._topology is not None

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def generation(self) -> Optional[int]:
        """Topology generation the workspace was sized for."""
        return self._generation

    # ===== Diagnostics =====

    @property
    def last_iterations(self) -> int:
        return self._last.iterations

    @property
    def last_residual(self) -> float:
        return self._last.residual

    @property
    def last_converged(self) -> bool:
        return self._last.converged

    @property
    def last_result(self) -> SolveResult:
        return self._last

    # ===== Operators =====

    def _require(self, topology: Optional[SparseTopology] = None) -> SparseTopology:
        if self._topology is None:
            raise IllegalStateError("Solver is not initialized")
        if topology is not None and topology.generation != self._generation:
            raise IllegalStateError(
                f"Solver workspace sized for topology gen={self._generation}, "
                f"got gen={topology.generation}"
            )
        if not self._topology.is_ready:
            raise IllegalStateError(
                f"Topology gen={self._generation} was released; re-initialize the solver"
            )
        return self._topology

    def _check_vector(self, x: np.ndarray) -> None:
        if x.shape != (self._dim,):
            raise InvalidArgumentError(
                f"Vector must have shape ({self._dim},), got {x.shape}"
            )

    def _apply(self, x: np.ndarray, alpha: float, sign: int, out: np.ndarray) -> None:
        topo = self._topology
        kernels.cayley_apply(
            topo.row_offsets, topo.col_indices, topo.edge_weights, topo.node_potential,
            x, alpha, sign, self._gauge_dim, out,
        )

    def apply_operator(self, x: np.ndarray, alpha: float) -> np.ndarray:
        """Return (I + i*alpha*H) x."""
        self._require()
        x = np.ascontiguousarray(x, dtype=np.complex128)
        self._check_vector(x)
        out = np.empty_like(x)
        self._apply(x, alpha, 1, out)
        return out

    def apply_hamiltonian(self, x: np.ndarray) -> np.ndarray:
        """Return H x."""
        topo = self._require()
        x = np.ascontiguousarray(x, dtype=np.complex128)
        self._check_vector(x)
        out = np.empty_like(x)
        kernels.hamiltonian_apply(
            topo.row_offsets, topo.col_indices, topo.edge_weights, topo.node_potential,
            x, self._gauge_dim, out,
        )
        return out

    # ===== Solve =====

    def solve(
        self,
        state: np.ndarray,
        alpha: float,
        topology: Optional[SparseTopology] = None,
    ) -> int:
        """
        Advance ``state`` in place by one Cayley step.

        Builds b = (I - i*alpha*H) state and solves (I + i*alpha*H) x = b.

        Args:
            state: complex128 vector of length N * gauge_dim, overwritten
            alpha: Half time step dt/2
            topology: If given, must match the workspace generation

        Returns:
            Number of BiCGStab iterations performed
        """
        topo = self._require(topology)
        if state.dtype != np.complex128:
            raise InvalidArgumentError(f"state must be complex128, got {state.dtype}")
        self._check_vector(state)

        ws = self._ws
        b, x, r, r_hat = ws["b"], ws["x"], ws["r"], ws["r_hat"]
        p, v, s, t = ws["p"], ws["v"], ws["s"], ws["t"]
        y, z, diag = ws["y"], ws["z"], ws["diag"]
        tol = self.tolerance
        jacobi = self.preconditioner == "jacobi"

        self._apply(state, alpha, -1, b)
        scale = np.linalg.norm(b)
        if scale == 0.0:
            state[:] = 0.0
            self._last = SolveResult(0, 0.0, True)
            return 0
        # Iterate on b / ||b|| so breakdown thresholds do not depend on the state norm
        b /= scale
        b_norm = 1.0

        kernels.cayley_diagonal(
            topo.row_offsets, topo.edge_weights, topo.node_potential,
            alpha, self._gauge_dim, diag,
        )
        if jacobi:
            np.divide(b, diag, out=x)
        else:
            x[:] = b

        # r0 = b - A x0
        self._apply(x, alpha, 1, r)
        np.subtract(b, r, out=r)
        rel = np.linalg.norm(r) / b_norm
        if rel < tol:
            np.multiply(x, scale, out=state)
            self._last = SolveResult(0, float(rel), True)
            return 0

        r_hat[:] = r
        rho = alpha_k = omega = 1.0 + 0j
        v[:] = 0.0
        p[:] = 0.0
        iterations = 0
        breakdown = False

        for it in range(1, self.max_iterations + 1):
            iterations = it
            rho_new = np.vdot(r_hat, r)
            if abs(rho_new) < BREAKDOWN_EPS or abs(omega) < BREAKDOWN_EPS:
                breakdown = True
                break

            if it == 1:
                p[:] = r
            else:
                beta = (rho_new / rho) * (alpha_k / omega)
                # p = r + beta * (p - omega * v)
                p -= omega * v
                p *= beta
                p += r

            if jacobi:
                np.divide(p, diag, out=y)
            else:
                y[:] = p
            self._apply(y, alpha, 1, v)

            denom = np.vdot(r_hat, v)
            if abs(denom) < BREAKDOWN_EPS:
                breakdown = True
                break
            alpha_k = rho_new / denom

            # s = r - alpha * v
            np.multiply(v, alpha_k, out=s)
            np.subtract(r, s, out=s)
            x += alpha_k * y

            rel = np.linalg.norm(s) / b_norm
            if rel < tol:
                r[:] = s
                break

            if jacobi:
                np.divide(s, diag, out=z)
            else:
                z[:] = s
            self._apply(z, alpha, 1, t)

            tt = np.vdot(t, t).real
            if tt < BREAKDOWN_EPS:
                r[:] = s
                breakdown = True
                break
            omega = np.vdot(t, s) / tt

            x += omega * z
            # r = s - omega * t
            np.multiply(t, omega, out=r)
            np.subtract(s, r, out=r)
            rho = rho_new

            rel = np.linalg.norm(r) / b_norm
            if rel < tol:
                break

        converged = bool(rel < tol)
        if breakdown:
            logger.warning(
                f"BiCGStab breakdown at iteration {iterations}, residual={rel:.3e}"
            )
        elif not converged:
            logger.debug(
                f"BiCGStab hit max_iterations={self.max_iterations}, residual={rel:.3e}"
            )

        np.multiply(x, scale, out=state)
        self._last = SolveResult(iterations, float(rel), converged, breakdown)
        return iterations

"""
Core module: sparse topology, linear solver, evolution and rewiring.
"""

from .topology import SparseTopology
from .solver import BiCGStabSolver, SolveResult
from .health import HealthMonitor, HealthCheckResult
from .rewiring import (
    StreamCompactor,
    CompactionResult,
    MutationProposal,
    EdgeScorer,
    MetropolisEdgeScorer,
    HardRewiringEngine,
    RewiringStats,
    RewiringOutcome,
)
from .evolution import CayleyEvolutionEngine, EngineState, StepRecord, recommend_csr
from .generators import GraphConfig, chain_edges, powerlaw_edges, random_edges, generate

__all__ = [
    # Topology
    "SparseTopology",
    # Solver
    "BiCGStabSolver",
    "SolveResult",
    # Health
    "HealthMonitor",
    "HealthCheckResult",
    # Rewiring
    "StreamCompactor",
    "CompactionResult",
    "MutationProposal",
    "EdgeScorer",
    "MetropolisEdgeScorer",
    "HardRewiringEngine",
    "RewiringStats",
    "RewiringOutcome",
    # Evolution
    "CayleyEvolutionEngine",
    "EngineState",
    "StepRecord",
    "recommend_csr",
    # Generators
    "GraphConfig",
    "chain_edges",
    "powerlaw_edges",
    "random_edges",
    "generate",
]

"""
rqcore - sparse relational-graph simulator core.

A weighted, mutable graph carries a complex state that is evolved with
a norm-preserving Cayley integrator; the graph itself is rewired at
runtime.

Main components:
- core: CSR topology, BiCGStab solver, Cayley engine, rewiring, health
- pipeline: stage-ordered physics modules around the engine
- storage: HDF5 checkpoints, diagnostics and run recording
- config: dataclass configuration with JSON persistence
"""

__version__ = "0.1.0"
__author__ = "RQ Simulation Team"

from .core import (
    SparseTopology,
    BiCGStabSolver,
    CayleyEvolutionEngine,
    EngineState,
    StreamCompactor,
    HardRewiringEngine,
    HealthMonitor,
    HealthCheckResult,
)
from .config import EngineConfig, TopologyMode
from .errors import (
    RQCoreError,
    IllegalStateError,
    InvalidArgumentError,
    ResourceExhaustionError,
)

__all__ = [
    "SparseTopology",
    "BiCGStabSolver",
    "CayleyEvolutionEngine",
    "EngineState",
    "StreamCompactor",
    "HardRewiringEngine",
    "HealthMonitor",
    "HealthCheckResult",
    "EngineConfig",
    "TopologyMode",
    "RQCoreError",
    "IllegalStateError",
    "InvalidArgumentError",
    "ResourceExhaustionError",
]

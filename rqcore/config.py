"""
Configuration module for the rqcore simulator.

Contains all runtime parameters of the engine: solver settings,
topology rewiring policy, health monitoring thresholds and storage.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Literal
from enum import Enum
import json
from pathlib import Path


class TopologyMode(Enum):
    """How the engine is allowed to change the graph."""
    STATIC = "static"                # Topology never changes
    SOFT_REWIRING = "soft"           # Weak edges removed by stream compaction
    HARD_REWIRING = "hard"           # Edges added/removed by proposals


@dataclass
class SolverParams:
    """BiCGStab solver parameters."""
    max_iterations: int = 100
    tolerance: float = 1e-12                          # Relative residual ||r||/||b||
    preconditioner: Literal["jacobi", "none"] = "jacobi"


@dataclass
class RewiringParams:
    """Topology mutation parameters."""
    mode: TopologyMode = TopologyMode.SOFT_REWIRING

    # Soft rewiring
    weight_threshold: float = 0.001     # Keep edges with w >= threshold

    # Hard rewiring cadence
    rebuild_interval: int = 10          # Steps between mutation cycles

    # Hard rewiring action parameters
    beta: float = 1.0                   # Inverse temperature for Metropolis
    link_cost_coeff: float = 0.1        # Cost per unit of missing weight
    target_degree: float = 4.0
    degree_penalty_coeff: float = 0.01
    initial_weight: float = 0.5         # Weight of newly created edges
    deletion_threshold: float = 0.001   # Edges below this are deletion candidates

    # Limits
    max_additions_per_step: int = 100
    max_deletions_per_step: int = 100
    max_protected_heavy_edges: int = 0  # Top-K heaviest edges never deleted

    # Conservation
    enable_conservation: bool = False
    conservation_tolerance: float = 1e-6
    energy_conversion_factor: float = 1.0

    seed: int = 42


@dataclass
class HealthParams:
    """Health monitor parameters."""
    nan_threshold: int = 0              # Max NaN count still considered healthy
    inf_threshold: int = 10             # Max Inf count still considered healthy
    inf_magnitude: float = 1e300        # |x| above this counts as Inf
    check_negative: bool = True
    check_every_step: bool = True
    quick_sample_count: int = 100


@dataclass
class StorageParams:
    """Storage parameters."""
    compress: bool = True
    base_path: Path = field(default_factory=lambda: Path("./data"))

    # Auto-save
    auto_save: bool = False
    auto_save_interval: int = 1000      # Steps


@dataclass
class EngineConfig:
    """
    Main configuration container for the evolution engine.

    Example:
        config = EngineConfig(
            gauge_dim=2,
            rewiring=RewiringParams(mode=TopologyMode.HARD_REWIRING),
        )
        config.save("my_config.json")
    """
    gauge_dim: int = 1                  # Amplitudes per node
    dt: float = 0.01

    # Sub-configurations
    solver: SolverParams = field(default_factory=SolverParams)
    rewiring: RewiringParams = field(default_factory=RewiringParams)
    health: HealthParams = field(default_factory=HealthParams)
    storage: StorageParams = field(default_factory=StorageParams)

    def save(self, path: str | Path) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.to_dict()
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    @classmethod
    def load(cls, path: str | Path) -> "EngineConfig":
        """Load configuration from JSON file."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        def convert(obj):
            if isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, Path):
                return str(obj)
            elif hasattr(obj, '__dataclass_fields__'):
                return {k: convert(v) for k, v in obj.__dict__.items()}
            elif isinstance(obj, (list, tuple)):
                return [convert(x) for x in obj]
            return obj

        return convert(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Reconstruct from dictionary."""
        data = dict(data)
        if 'solver' in data:
            data['solver'] = SolverParams(**data['solver'])
        if 'rewiring' in data:
            rewiring = dict(data['rewiring'])
            if 'mode' in rewiring:
                rewiring['mode'] = TopologyMode(rewiring['mode'])
            data['rewiring'] = RewiringParams(**rewiring)
        if 'health' in data:
            data['health'] = HealthParams(**data['health'])
        if 'storage' in data:
            storage = dict(data['storage'])
            if 'base_path' in storage:
                storage['base_path'] = Path(storage['base_path'])
            data['storage'] = StorageParams(**storage)

        return cls(**data)

    @property
    def alpha(self) -> float:
        """Cayley half step dt/2."""
        return 0.5 * self.dt

    def validate(self) -> List[str]:
        """Validate configuration, return list of warnings/errors."""
        issues = []

        if self.gauge_dim < 1:
            issues.append("gauge_dim must be at least 1")
        if self.dt <= 0:
            issues.append("dt must be positive")

        if self.solver.max_iterations < 1:
            issues.append("solver.max_iterations must be at least 1")
        if self.solver.tolerance <= 0:
            issues.append("solver.tolerance must be positive")
        if self.solver.preconditioner not in ("jacobi", "none"):
            issues.append("solver.preconditioner must be 'jacobi' or 'none'")

        rw = self.rewiring
        if rw.weight_threshold < 0:
            issues.append("rewiring.weight_threshold must be non-negative")
        if rw.rebuild_interval < 1:
            issues.append("rewiring.rebuild_interval must be at least 1")
        if rw.initial_weight <= 0:
            issues.append("rewiring.initial_weight must be positive")
        if rw.beta < 0:
            issues.append("rewiring.beta must be non-negative")
        if rw.max_additions_per_step < 0 or rw.max_deletions_per_step < 0:
            issues.append("rewiring limits must be non-negative")
        if rw.max_protected_heavy_edges < 0:
            issues.append("rewiring.max_protected_heavy_edges must be non-negative")

        if self.health.nan_threshold < 0 or self.health.inf_threshold < 0:
            issues.append("health thresholds must be non-negative")
        if self.health.quick_sample_count < 1:
            issues.append("health.quick_sample_count must be at least 1")

        return issues


# Preset configurations
def minimal_config() -> EngineConfig:
    """Minimal configuration for quick testing."""
    return EngineConfig(
        dt=0.01,
        solver=SolverParams(max_iterations=50, tolerance=1e-10),
    )


def standard_config() -> EngineConfig:
    """Standard configuration for typical simulations."""
    return EngineConfig(
        dt=0.01,
        rewiring=RewiringParams(mode=TopologyMode.SOFT_REWIRING, seed=42),
    )


def dynamic_config() -> EngineConfig:
    """Hard rewiring with energy conservation enabled."""
    return EngineConfig(
        dt=0.01,
        rewiring=RewiringParams(
            mode=TopologyMode.HARD_REWIRING,
            rebuild_interval=10,
            enable_conservation=True,
            max_protected_heavy_edges=16,
        ),
    )


def large_scale_config() -> EngineConfig:
    """Large graphs: looser tolerance, less frequent rebuilds."""
    return EngineConfig(
        dt=0.01,
        solver=SolverParams(max_iterations=200, tolerance=1e-10),
        rewiring=RewiringParams(rebuild_interval=100),
        health=HealthParams(check_every_step=False),
        storage=StorageParams(compress=True, auto_save=True),
    )

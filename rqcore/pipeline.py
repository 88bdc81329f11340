"""
Physics pipeline: an ordered set of modules run once per frame.

Modules declare a stage and a priority. Each frame runs every enabled
module sorted by (stage, priority, registration order). Modules are
looked up by exact name only.

Built-in modules wrap the evolution engine:
- CayleyEvolutionModule   (INTEGRATION)  one Cayley step
- TopologyRewiringModule  (POST_PROCESS) periodic soft/hard rewiring
- HealthCheckModule       (POST_PROCESS) state scan after everything else
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional
import logging

from .config import TopologyMode
from .core.evolution import CayleyEvolutionEngine
from .core.health import HealthCheckResult
from .errors import IllegalStateError, InvalidArgumentError

logger = logging.getLogger(__name__)


class ExecutionStage(IntEnum):
    """Pipeline stages, executed in ascending order."""
    PREPARATION = 0     # Validation, buffer setup
    FORCES = 1          # Potentials, masses, weights
    INTEGRATION = 2     # State update
    POST_PROCESS = 3    # Topology mutation, diagnostics


class PhysicsModule:
    """
    Base class for pipeline modules.

    Subclasses set ``name``, ``category``, ``stage``, ``priority`` and
    override ``execute``. ``initialize`` and ``cleanup`` are optional.
    """

    name: str = "module"
    description: str = ""
    category: str = "general"
    stage: ExecutionStage = ExecutionStage.FORCES
    priority: int = 100

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def initialize(self, engine: CayleyEvolutionEngine) -> None:
        pass

    def execute(self, engine: CayleyEvolutionEngine, dt: float) -> None:
        raise NotImplementedError

    def cleanup(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, stage={self.stage.name}, priority={self.priority})"


class ModuleRegistry:
    """Name-keyed module collection with stable execution ordering."""

    def __init__(self):
        self._modules: Dict[str, PhysicsModule] = {}

    def register(self, module: PhysicsModule) -> None:
        if module.name in self._modules:
            raise InvalidArgumentError(f"Module '{module.name}' is already registered")
        self._modules[module.name] = module

    def unregister(self, name: str) -> bool:
        return self._modules.pop(name, None) is not None

    def get(self, name: str) -> Optional[PhysicsModule]:
        return self._modules.get(name)

    def by_category(self, category: str) -> List[PhysicsModule]:
        return [m for m in self._modules.values() if m.category == category]

    def ordered(self, enabled_only: bool = True) -> List[PhysicsModule]:
        """Modules sorted by stage, then priority, then registration order."""
        modules = list(self._modules.values())
        if enabled_only:
            modules = [m for m in modules if m.enabled]
        return sorted(modules, key=lambda m: (int(m.stage), m.priority))

    def __len__(self) -> int:
        return len(self._modules)

    def __contains__(self, name: str) -> bool:
        return name in self._modules


# ===== Built-in modules =====

class CayleyEvolutionModule(PhysicsModule):
    """Advance the state by one Cayley step."""

    name = "cayley_evolution"
    category = "integration"
    stage = ExecutionStage.INTEGRATION
    priority = 0

    def __init__(self, enabled: bool = True):
        super().__init__(enabled)
        self.last_iterations = 0

    def execute(self, engine: CayleyEvolutionEngine, dt: float) -> None:
        self.last_iterations = engine.evolve_step(dt)


class TopologyRewiringModule(PhysicsModule):
    """Run ``engine.evolve_topology()`` every ``interval`` engine ticks."""

    name = "topology_rewiring"
    category = "topology"
    stage = ExecutionStage.POST_PROCESS
    priority = 0

    def __init__(self, interval: int = 10, enabled: bool = True):
        super().__init__(enabled)
        if interval < 1:
            raise InvalidArgumentError(f"interval must be at least 1, got {interval}")
        self.interval = interval
        self.rebuilds = 0

    def execute(self, engine: CayleyEvolutionEngine, dt: float) -> None:
        if engine.tick % self.interval == 0 and engine.evolve_topology():
            self.rebuilds += 1


class HealthCheckModule(PhysicsModule):
    """Quick sampled scan every frame, full scan when the sample looks bad."""

    name = "health_check"
    category = "diagnostics"
    stage = ExecutionStage.POST_PROCESS
    priority = 1000

    def __init__(self, sample_count: int = 100, enabled: bool = True):
        super().__init__(enabled)
        self.sample_count = sample_count
        self.last_result: Optional[HealthCheckResult] = None
        self.unhealthy_frames = 0

    def execute(self, engine: CayleyEvolutionEngine, dt: float) -> None:
        monitor = engine.health_monitor
        if monitor.quick_check(engine.psi, self.sample_count):
            return
        self.last_result = engine.check_health()
        if not self.last_result.is_healthy:
            self.unhealthy_frames += 1


@dataclass
class FrameStats:
    """Counters accumulated over pipeline frames."""
    frames: int = 0
    module_calls: Dict[str, int] = field(default_factory=dict)


class PhysicsPipeline:
    """
    Runs registered modules against one engine.

    Example:
        pipeline = PhysicsPipeline(engine)
        pipeline.register(CayleyEvolutionModule())
        pipeline.register(HealthCheckModule())
        pipeline.initialize_all()
        pipeline.run(dt=0.01, num_frames=100)
    """

    def __init__(self, engine: CayleyEvolutionEngine, registry: Optional[ModuleRegistry] = None):
        self.engine = engine
        self.registry = registry or ModuleRegistry()
        self.stats = FrameStats()
        self._initialized = False

    @classmethod
    def default(cls, engine: CayleyEvolutionEngine) -> "PhysicsPipeline":
        """
        Evolution, soft rewiring at the configured interval, health scan.

        Hard rewiring is scheduled by the engine itself, so no rewiring
        module is added in that mode.
        """
        pipeline = cls(engine)
        pipeline.register(CayleyEvolutionModule())
        rewiring = engine.config.rewiring
        if rewiring.mode == TopologyMode.SOFT_REWIRING:
            pipeline.register(TopologyRewiringModule(rewiring.rebuild_interval))
        pipeline.register(HealthCheckModule(engine.config.health.quick_sample_count))
        return pipeline

    def register(self, module: PhysicsModule) -> None:
        self.registry.register(module)
        if self._initialized and module.enabled:
            module.initialize(self.engine)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize_all(self) -> None:
        modules = self.registry.ordered()
        logger.info(f"Initializing {len(modules)} enabled modules")
        for module in modules:
            module.initialize(self.engine)
            logger.debug(f"  Initialized: {module.name}")
        self._initialized = True
        self.stats = FrameStats()

    def execution_order(self) -> List[str]:
        return [m.name for m in self.registry.ordered()]

    def execute_frame(self, dt: Optional[float] = None) -> None:
        """Run every enabled module once, in stage/priority order."""
        if not self._initialized:
            raise IllegalStateError("Pipeline is not initialized")
        dt = self.engine.config.dt if dt is None else dt
        for module in self.registry.ordered():
            module.execute(self.engine, dt)
            self.stats.module_calls[module.name] = self.stats.module_calls.get(module.name, 0) + 1
        self.stats.frames += 1

    def run(self, dt: Optional[float] = None, num_frames: int = 1) -> FrameStats:
        for _ in range(num_frames):
            self.execute_frame(dt)
        return self.stats

    def cleanup_all(self) -> None:
        for module in self.registry.ordered(enabled_only=False):
            module.cleanup()
        self._initialized = False

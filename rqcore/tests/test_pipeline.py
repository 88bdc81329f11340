"""
Tests for the module pipeline.
"""

import pytest
import numpy as np

from rqcore.config import EngineConfig, RewiringParams, TopologyMode
from rqcore.core import CayleyEvolutionEngine
from rqcore.errors import IllegalStateError, InvalidArgumentError
from rqcore.pipeline import (
    CayleyEvolutionModule,
    ExecutionStage,
    HealthCheckModule,
    ModuleRegistry,
    PhysicsModule,
    PhysicsPipeline,
    TopologyRewiringModule,
)


class RecordingModule(PhysicsModule):
    """Appends its name to a shared log on every call."""

    def __init__(self, name, stage, priority, log, category="test", enabled=True):
        super().__init__(enabled)
        self.name = name
        self.stage = stage
        self.priority = priority
        self.category = category
        self.log = log
        self.initialized = False
        self.cleaned = False

    def initialize(self, engine):
        self.initialized = True

    def execute(self, engine, dt):
        self.log.append(self.name)

    def cleanup(self):
        self.cleaned = True


@pytest.fixture
def engine():
    config = EngineConfig(rewiring=RewiringParams(mode=TopologyMode.SOFT_REWIRING, rebuild_interval=2))
    eng = CayleyEvolutionEngine(config)
    eng.initialize_from_edge_list(4, [0, 1, 2], [1, 2, 3], [0.5, 0.0005, 0.5])
    eng.set_state(np.full(4, 0.5, dtype=np.complex128))
    yield eng
    eng.dispose()


class TestModuleRegistry:
    """Tests for ModuleRegistry."""

    def test_ordering(self):
        """Test stage, then priority, then registration order."""
        log = []
        registry = ModuleRegistry()
        registry.register(RecordingModule("post", ExecutionStage.POST_PROCESS, 0, log))
        registry.register(RecordingModule("late_force", ExecutionStage.FORCES, 50, log))
        registry.register(RecordingModule("prep", ExecutionStage.PREPARATION, 999, log))
        registry.register(RecordingModule("early_force", ExecutionStage.FORCES, 10, log))
        registry.register(RecordingModule("tie_a", ExecutionStage.INTEGRATION, 5, log))
        registry.register(RecordingModule("tie_b", ExecutionStage.INTEGRATION, 5, log))
        names = [m.name for m in registry.ordered()]
        assert names == ["prep", "early_force", "late_force", "tie_a", "tie_b", "post"]

    def test_duplicate_name(self):
        """Test that names are unique."""
        registry = ModuleRegistry()
        registry.register(RecordingModule("a", ExecutionStage.FORCES, 0, []))
        with pytest.raises(InvalidArgumentError):
            registry.register(RecordingModule("a", ExecutionStage.INTEGRATION, 0, []))

    def test_lookup(self):
        """Test exact-name lookup, categories and removal."""
        registry = ModuleRegistry()
        registry.register(RecordingModule("a", ExecutionStage.FORCES, 0, [], category="x"))
        registry.register(RecordingModule("b", ExecutionStage.FORCES, 0, [], category="y"))
        assert "a" in registry
        assert registry.get("A") is None
        assert [m.name for m in registry.by_category("y")] == ["b"]
        assert registry.unregister("a")
        assert not registry.unregister("a")
        assert len(registry) == 1

    def test_disabled_excluded(self):
        registry = ModuleRegistry()
        registry.register(RecordingModule("off", ExecutionStage.FORCES, 0, [], enabled=False))
        assert registry.ordered() == []
        assert len(registry.ordered(enabled_only=False)) == 1


class TestPhysicsPipeline:
    """Tests for PhysicsPipeline."""

    def test_frame_requires_initialize(self, engine):
        """Test IllegalStateError before initialize_all."""
        pipeline = PhysicsPipeline(engine)
        with pytest.raises(IllegalStateError):
            pipeline.execute_frame()

    def test_execution_order_and_lifecycle(self, engine):
        """Test that frames run modules in order and cleanup reaches all."""
        log = []
        pipeline = PhysicsPipeline(engine)
        post = RecordingModule("post", ExecutionStage.POST_PROCESS, 0, log)
        force = RecordingModule("force", ExecutionStage.FORCES, 0, log)
        off = RecordingModule("off", ExecutionStage.PREPARATION, 0, log, enabled=False)
        for module in (post, force, off):
            pipeline.register(module)

        pipeline.initialize_all()
        assert force.initialized and post.initialized
        assert not off.initialized
        stats = pipeline.run(num_frames=2)

        assert log == ["force", "post", "force", "post"]
        assert stats.frames == 2
        assert stats.module_calls == {"force": 2, "post": 2}

        pipeline.cleanup_all()
        assert off.cleaned and post.cleaned
        assert not pipeline.is_initialized

    def test_late_registration_initializes(self, engine):
        """Test that a module added after initialize_all is initialized."""
        pipeline = PhysicsPipeline(engine)
        pipeline.initialize_all()
        module = RecordingModule("late", ExecutionStage.FORCES, 0, [])
        pipeline.register(module)
        assert module.initialized

    def test_default_pipeline(self, engine):
        """Test the default soft-mode pipeline end to end."""
        pipeline = PhysicsPipeline.default(engine)
        assert pipeline.execution_order() == [
            "cayley_evolution", "topology_rewiring", "health_check",
        ]
        pipeline.initialize_all()
        pipeline.run(num_frames=4)

        assert engine.tick == 4
        # The 0.0005 edge falls below the 0.001 threshold on tick 2
        assert engine.topology.edge_count == 2
        assert pipeline.registry.get("topology_rewiring").rebuilds == 1
        assert pipeline.registry.get("health_check").unhealthy_frames == 0
        assert abs(engine.compute_norm() - 1.0) < 1e-10

    def test_default_pipeline_hard_mode(self):
        """Test that hard mode leaves rewiring to the engine."""
        config = EngineConfig(rewiring=RewiringParams(mode=TopologyMode.HARD_REWIRING))
        with CayleyEvolutionEngine(config) as eng:
            eng.initialize_from_edge_list(2, [0], [1], [1.0])
            pipeline = PhysicsPipeline.default(eng)
            assert "topology_rewiring" not in pipeline.registry

    def test_health_module_full_scan_on_bad_sample(self, engine):
        """Test that a failing quick check triggers a full scan."""
        pipeline = PhysicsPipeline(engine)
        health = HealthCheckModule(sample_count=4)
        pipeline.register(health)
        pipeline.initialize_all()
        engine.upload_state([np.nan, 0.0, 0.0, 0.0], [0.0] * 4)
        pipeline.execute_frame()
        assert health.unhealthy_frames == 1
        assert health.last_result.first_nan_index == 0

    def test_module_errors_propagate(self, engine):
        """Test that a failing module aborts the frame."""
        class Broken(PhysicsModule):
            name = "broken"

            def execute(self, engine, dt):
                raise RuntimeError("module failure")

        pipeline = PhysicsPipeline(engine)
        pipeline.register(Broken())
        pipeline.initialize_all()
        with pytest.raises(RuntimeError):
            pipeline.execute_frame()

    def test_rewiring_interval_validation(self):
        with pytest.raises(InvalidArgumentError):
            TopologyRewiringModule(interval=0)

    def test_evolution_module_counts_iterations(self, engine):
        pipeline = PhysicsPipeline(engine)
        module = CayleyEvolutionModule()
        pipeline.register(module)
        pipeline.initialize_all()
        pipeline.execute_frame(dt=0.02)
        assert module.last_iterations == engine.last_step.iterations
        assert engine.tick == 1

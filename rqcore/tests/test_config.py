"""
Tests for engine configuration.
"""

from pathlib import Path

import pytest

from rqcore.config import (
    EngineConfig,
    RewiringParams,
    SolverParams,
    StorageParams,
    TopologyMode,
    dynamic_config,
    large_scale_config,
    minimal_config,
    standard_config,
)


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        """Test default values."""
        config = EngineConfig()
        assert config.gauge_dim == 1
        assert config.dt == 0.01
        assert config.alpha == pytest.approx(0.005)
        assert config.solver.max_iterations == 100
        assert config.solver.tolerance == 1e-12
        assert config.rewiring.mode == TopologyMode.SOFT_REWIRING
        assert config.validate() == []

    def test_save_load_round_trip(self, tmp_path):
        """Test JSON persistence keeps enums and paths."""
        config = EngineConfig(
            gauge_dim=2,
            dt=0.05,
            solver=SolverParams(max_iterations=42, preconditioner="none"),
            rewiring=RewiringParams(mode=TopologyMode.HARD_REWIRING, max_protected_heavy_edges=8),
            storage=StorageParams(base_path=Path("/tmp/runs")),
        )
        path = tmp_path / "nested" / "config.json"
        config.save(path)
        loaded = EngineConfig.load(path)

        assert loaded == config
        assert loaded.rewiring.mode is TopologyMode.HARD_REWIRING
        assert isinstance(loaded.storage.base_path, Path)

    def test_to_dict(self):
        """Test serialization of nested dataclasses."""
        data = EngineConfig().to_dict()
        assert data['rewiring']['mode'] == "soft"
        assert data['storage']['base_path'] == "data"
        assert data['solver']['preconditioner'] == "jacobi"

    def test_from_partial_dict(self):
        """Test that missing sections fall back to defaults."""
        config = EngineConfig.from_dict({'dt': 0.2, 'rewiring': {'mode': 'static'}})
        assert config.dt == 0.2
        assert config.rewiring.mode == TopologyMode.STATIC
        assert config.rewiring.rebuild_interval == 10
        assert config.solver == SolverParams()

    @pytest.mark.parametrize("kwargs", [
        {'gauge_dim': 0},
        {'dt': 0.0},
        {'solver': SolverParams(max_iterations=0)},
        {'solver': SolverParams(tolerance=-1.0)},
        {'solver': SolverParams(preconditioner="ilu")},
        {'rewiring': RewiringParams(rebuild_interval=0)},
        {'rewiring': RewiringParams(weight_threshold=-0.1)},
        {'rewiring': RewiringParams(initial_weight=0.0)},
    ])
    def test_validate_reports_issues(self, kwargs):
        """Test that invalid settings are reported."""
        assert EngineConfig(**kwargs).validate() != []


class TestPresets:
    """Tests for preset configurations."""

    @pytest.mark.parametrize("factory", [
        minimal_config, standard_config, dynamic_config, large_scale_config,
    ])
    def test_presets_are_valid(self, factory):
        assert factory().validate() == []

    def test_dynamic_config(self):
        config = dynamic_config()
        assert config.rewiring.mode == TopologyMode.HARD_REWIRING
        assert config.rewiring.enable_conservation

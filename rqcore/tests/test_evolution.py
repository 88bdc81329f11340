"""
Tests for the Cayley evolution engine.
"""

import pytest
import numpy as np

from rqcore.config import EngineConfig, HealthParams, RewiringParams, TopologyMode
from rqcore.core import CayleyEvolutionEngine, EngineState, MutationProposal
from rqcore.core.evolution import recommend_csr
from rqcore.core.generators import GraphConfig, powerlaw_edges
from rqcore.errors import IllegalStateError, InvalidArgumentError


class FixedScorer:
    """Returns a queued proposal per call (empty once the queue runs out)."""

    def __init__(self, *proposals):
        self.proposals = list(proposals)
        self.calls = 0

    def propose(self, topology, masses, params):
        self.calls += 1
        if self.proposals:
            return self.proposals.pop(0)
        return MutationProposal()


def path_engine(mode=TopologyMode.SOFT_REWIRING, scorer=None, **rewiring):
    config = EngineConfig(dt=0.01, rewiring=RewiringParams(mode=mode, **rewiring))
    engine = CayleyEvolutionEngine(config, scorer=scorer)
    engine.initialize_from_edge_list(3, [0, 1], [1, 2], [0.5, 0.5])
    engine.set_state(np.array([1.0, 0.0, 0.0], dtype=np.complex128))
    return engine


def random_engine(n=50, seed=0, **kwargs):
    src, tgt, w = powerlaw_edges(GraphConfig(N=n, seed=seed))
    potential = np.random.default_rng(seed).uniform(-1.0, 1.0, size=n)
    engine = CayleyEvolutionEngine(EngineConfig(**kwargs))
    engine.initialize_from_edge_list(n, src, tgt, w, potential)
    rng = np.random.default_rng(seed + 1)
    psi = rng.normal(size=engine.dimension) + 1j * rng.normal(size=engine.dimension)
    engine.set_state(psi / np.linalg.norm(psi))
    return engine


class TestLifecycle:
    """Tests for engine lifecycle and guards."""

    def test_states(self):
        """Test UNINITIALIZED -> READY -> DISPOSED."""
        engine = CayleyEvolutionEngine()
        assert engine.status == EngineState.UNINITIALIZED
        assert not engine.is_ready
        engine.initialize_from_edge_list(2, [0], [1], [1.0])
        assert engine.status == EngineState.READY
        engine.dispose()
        assert engine.status == EngineState.DISPOSED
        engine.dispose()  # idempotent
        assert engine.status == EngineState.DISPOSED

    def test_use_before_initialize(self):
        """Test IllegalStateError before initialization."""
        engine = CayleyEvolutionEngine()
        with pytest.raises(IllegalStateError):
            engine.evolve_step()
        with pytest.raises(IllegalStateError):
            engine.compute_norm()
        with pytest.raises(IllegalStateError):
            engine.upload_state([0.0], [0.0])

    def test_use_after_dispose(self):
        """Test IllegalStateError after dispose."""
        engine = path_engine()
        engine.dispose()
        with pytest.raises(IllegalStateError):
            engine.evolve_step()
        with pytest.raises(IllegalStateError):
            engine.evolve_topology()
        with pytest.raises(IllegalStateError):
            engine.initialize_from_edge_list(2, [0], [1], [1.0])

    def test_context_manager(self):
        """Test that leaving the with-block disposes the engine."""
        with CayleyEvolutionEngine() as engine:
            engine.initialize_from_edge_list(2, [0], [1], [1.0])
            topology = engine.topology
        assert engine.status == EngineState.DISPOSED
        assert not topology.is_ready

    def test_invalid_config(self):
        """Test that an invalid config is rejected at construction."""
        with pytest.raises(InvalidArgumentError):
            CayleyEvolutionEngine(EngineConfig(dt=-1.0))

    def test_initialize_from_dense(self):
        """Test dense initialization."""
        edges = np.array([[False, True], [True, False]])
        weights = np.array([[0.0, 1.0], [1.0, 0.0]])
        engine = CayleyEvolutionEngine()
        engine.initialize_from_dense(edges, weights, gauge_dim=2)
        assert engine.node_count == 2
        assert engine.dimension == 4
        assert engine.topology.nnz == 2

    def test_reinitialize_releases_old_topology(self):
        """Test that re-initialization releases the previous topology."""
        engine = path_engine()
        old = engine.topology
        engine.initialize_from_edge_list(2, [0], [1], [1.0])
        assert not old.is_ready
        assert engine.node_count == 2
        assert engine.tick == 0


class TestStateIO:
    """Tests for state upload and download."""

    def test_round_trip(self):
        """Test upload_state followed by download_state."""
        engine = path_engine()
        real = np.array([0.1, 0.2, 0.3])
        imag = np.array([-0.1, 0.0, 0.5])
        engine.upload_state(real, imag)
        out_r, out_i = engine.download_state()
        np.testing.assert_array_equal(out_r, real)
        np.testing.assert_array_equal(out_i, imag)
        np.testing.assert_array_equal(engine.state, real + 1j * imag)

    def test_download_into_buffers(self):
        """Test download into caller-provided buffers."""
        engine = path_engine()
        real = np.empty(3)
        imag = np.empty(3)
        r, i = engine.download_state(real, imag)
        assert r is real and i is imag
        np.testing.assert_array_equal(real, [1.0, 0.0, 0.0])

    def test_wrong_length(self):
        """Test length checks on state I/O."""
        engine = path_engine()
        with pytest.raises(InvalidArgumentError):
            engine.upload_state([1.0, 0.0], [0.0, 0.0])
        with pytest.raises(InvalidArgumentError):
            engine.download_state(np.empty(2), np.empty(3))

    def test_psi_is_read_only(self):
        """Test that the exposed state cannot be written."""
        engine = path_engine()
        with pytest.raises(ValueError):
            engine.psi[0] = 0.0

    def test_normalize(self):
        """Test normalization returns the previous norm."""
        engine = path_engine()
        engine.set_state(np.array([3.0, 4.0, 0.0], dtype=np.complex128))
        assert engine.normalize() == pytest.approx(5.0)
        assert engine.compute_norm() == pytest.approx(1.0)

    def test_masses(self):
        """Test mass updates and length check."""
        engine = path_engine()
        engine.update_masses([1.0, 2.0, 3.0])
        np.testing.assert_array_equal(engine.masses, [1.0, 2.0, 3.0])
        with pytest.raises(InvalidArgumentError):
            engine.update_masses([1.0])


class TestEvolution:
    """Tests for Cayley stepping."""

    def test_norm_conservation(self):
        """Test that each step changes the norm by no more than the solver tolerance."""
        engine = random_engine(n=50)
        norms = [engine.compute_norm()]
        engine.add_step_callback(lambda eng, record: norms.append(record.norm))
        engine.evolve(dt=0.01, num_steps=200)

        # ||(I + iaH)^-1|| <= 1, so a relative residual below tol bounds the
        # per-step change of the norm by tol
        bound = engine.config.solver.tolerance
        assert np.max(np.abs(np.diff(norms))) < bound
        assert abs(engine.compute_norm() - 1.0) < 200 * bound
        assert engine.tick == 200

    def test_single_step_matches_dense_formula(self):
        """Test one step against (I + iaH)^-1 (I - iaH) psi."""
        engine = random_engine(n=20, seed=3)
        psi0 = np.array(engine.psi)
        h = engine.topology.hamiltonian_matrix().toarray()
        alpha = 0.5 * 0.02
        eye = np.eye(20)
        expected = np.linalg.solve(eye + 1j * alpha * h, (eye - 1j * alpha * h) @ psi0)

        engine.evolve_step(dt=0.02)
        np.testing.assert_allclose(engine.psi, expected, atol=1e-10)

    def test_gauge_dim(self):
        """Test norm conservation with two components per node."""
        engine = random_engine(n=30, seed=4, gauge_dim=2)
        assert engine.dimension == 60
        engine.evolve(num_steps=20)
        assert abs(engine.compute_norm() - 1.0) < 1e-10

    def test_step_record(self):
        """Test per-step diagnostics."""
        engine = path_engine()
        iterations = engine.evolve_step()
        record = engine.last_step
        assert record.tick == 1
        assert record.iterations == iterations
        assert record.converged
        assert record.node_count == 3
        assert record.nnz == 4
        assert record.healthy is True
        assert not record.rewired
        assert record.norm == pytest.approx(1.0)

    def test_callbacks(self):
        """Test that step callbacks receive every record."""
        engine = path_engine()
        seen = []
        engine.add_step_callback(lambda eng, rec: seen.append(rec.tick))
        engine.evolve(num_steps=3)
        assert seen == [1, 2, 3]

    def test_invalid_dt(self):
        """Test that a non-positive dt is rejected."""
        engine = path_engine()
        with pytest.raises(InvalidArgumentError):
            engine.evolve_step(dt=0.0)
        with pytest.raises(InvalidArgumentError):
            engine.evolve(num_steps=-1)

    def test_potential_update_changes_dynamics(self):
        """Test that update_potential is seen by the next step."""
        engine = path_engine()
        engine.update_potential([10.0, 0.0, 0.0])
        np.testing.assert_array_equal(engine.topology.node_potential, [10.0, 0.0, 0.0])
        engine.evolve_step()
        assert abs(engine.compute_norm() - 1.0) < 1e-10


class TestSoftRewiring:
    """Tests for compaction-based topology evolution."""

    def test_threshold_above_all_weights(self):
        """Test that every edge below the threshold is removed."""
        engine = path_engine()
        gen = engine.topology_generation
        assert engine.evolve_topology(weight_threshold=0.6)
        assert engine.topology.nnz == 0
        assert engine.topology_generation != gen
        np.testing.assert_array_equal(engine.topology.row_offsets, [0, 0, 0, 0])

    def test_threshold_below_all_weights(self):
        """Test that nothing happens when every edge survives."""
        engine = path_engine()
        gen = engine.topology_generation
        assert not engine.evolve_topology(weight_threshold=0.4)
        assert engine.topology.nnz == 4
        assert engine.topology_generation == gen

    def test_evolution_continues_after_compaction(self):
        """Test that the solver is resynced to the new topology."""
        engine = path_engine()
        engine.update_potential([0.5, 1.0, -2.0])
        engine.evolve_topology(weight_threshold=0.6)
        np.testing.assert_array_equal(engine.topology.node_potential, [0.5, 1.0, -2.0])
        engine.evolve(num_steps=5)
        assert abs(engine.compute_norm() - 1.0) < 1e-12

    def test_static_mode_is_noop(self):
        """Test that static mode never changes the topology."""
        engine = path_engine(mode=TopologyMode.STATIC)
        gen = engine.topology_generation
        assert not engine.evolve_topology(weight_threshold=0.6)
        assert engine.topology_generation == gen
        assert engine.topology.nnz == 4

    def test_force_rebuild(self):
        """Test that a forced rebuild always creates a new topology."""
        engine = path_engine(mode=TopologyMode.STATIC)
        gen = engine.topology_generation
        engine.force_topology_rebuild()
        assert engine.topology_generation != gen
        assert engine.topology.nnz == 4


class TestHardRewiring:
    """Tests for proposal-based topology evolution."""

    def test_scheduled_on_rebuild_interval(self):
        """Test that hard rewiring runs every rebuild_interval ticks."""
        scorer = FixedScorer()
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer, rebuild_interval=2)
        engine.evolve(num_steps=5)
        assert scorer.calls == 2

    def test_not_scheduled_in_soft_mode(self):
        """Test that soft mode never calls the scorer during stepping."""
        scorer = FixedScorer()
        engine = path_engine(scorer=scorer, rebuild_interval=1)
        engine.evolve(num_steps=3)
        assert scorer.calls == 0

    def test_edge_addition(self):
        """Test that an accepted addition closes the triangle."""
        scorer = FixedScorer(MutationProposal(
            add_u=np.array([0]), add_v=np.array([2]), add_w=np.array([0.5]),
        ))
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer)
        stats = engine.evolve_topology_dynamic()
        assert stats.accepted_additions == 1
        assert engine.topology.nnz == 6
        assert engine.topology.has_edge(2, 0)

    def test_node_growth(self):
        """Test growing N resizes state and masses with zeros."""
        scorer = FixedScorer(MutationProposal(
            add_u=np.array([0]), add_v=np.array([4]), add_w=np.array([0.5]), node_count=5,
        ))
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer)
        engine.update_masses([1.0, 2.0, 3.0])
        stats = engine.evolve_topology_dynamic()

        assert stats.new_node_count == 5
        assert engine.node_count == 5
        assert engine.dimension == 5
        np.testing.assert_array_equal(engine.psi, [1.0, 0.0, 0.0, 0.0, 0.0])
        np.testing.assert_array_equal(engine.masses, [1.0, 2.0, 3.0, 0.0, 0.0])
        assert engine.topology.has_edge(0, 4)
        engine.evolve(num_steps=3)
        assert abs(engine.compute_norm() - 1.0) < 1e-12

    def test_node_shrink(self):
        """Test shrinking N drops edges touching removed nodes."""
        scorer = FixedScorer(MutationProposal(node_count=2))
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer)
        stats = engine.evolve_topology_dynamic()
        assert engine.node_count == 2
        assert engine.topology.nnz == 2
        assert stats.accepted_deletions == 1

    def test_zero_nodes_rejected(self):
        """Test that a proposal emptying the graph fails and changes nothing."""
        scorer = FixedScorer(MutationProposal(node_count=0))
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer)
        gen = engine.topology_generation
        with pytest.raises(InvalidArgumentError):
            engine.evolve_topology_dynamic()
        assert engine.topology_generation == gen
        assert engine.node_count == 3

    def test_failed_scheduled_cycle_rolls_back_step(self):
        """Test that a step whose rewiring cycle raises leaves state and tick untouched."""
        scorer = FixedScorer(MutationProposal(node_count=0))
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer, rebuild_interval=1)
        records = []
        engine.add_step_callback(lambda eng, record: records.append(record))
        psi = engine.psi.copy()
        gen = engine.topology_generation

        with pytest.raises(InvalidArgumentError):
            engine.evolve_step()
        assert engine.tick == 0
        np.testing.assert_array_equal(engine.psi, psi)
        assert engine.topology_generation == gen
        assert engine.last_step is None
        assert records == []

        engine.evolve_step()
        assert engine.tick == 1
        assert scorer.calls == 2
        assert len(records) == 1

    def test_empty_proposal_keeps_topology(self):
        """Test that a no-op cycle keeps the same topology."""
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=FixedScorer())
        gen = engine.topology_generation
        stats = engine.evolve_topology_dynamic()
        assert not stats.topology_changed
        assert engine.topology_generation == gen

    def test_evolve_topology_in_hard_mode(self):
        """Test that evolve_topology runs a proposal cycle in hard mode."""
        scorer = FixedScorer(MutationProposal(
            remove_u=np.array([1]), remove_v=np.array([0]),
        ))
        engine = path_engine(mode=TopologyMode.HARD_REWIRING, scorer=scorer)
        assert engine.evolve_topology()
        assert not engine.topology.has_edge(0, 1)
        assert engine.topology.nnz == 2


class TestHealth:
    """Tests for engine-level health checks."""

    def test_nan_detection(self):
        """Test that a NaN is reported at its index."""
        engine = path_engine()
        engine.upload_state([0.0, 0.0, np.nan], [0.0, 0.0, 0.0])
        result = engine.check_health()
        assert not result.is_healthy
        assert result.nan_count == 1
        assert result.first_nan_index == 2

    def test_health_skipped_when_disabled(self):
        """Test check_every_step=False leaves the record's healthy unset."""
        config = EngineConfig(health=HealthParams(check_every_step=False))
        engine = CayleyEvolutionEngine(config)
        engine.initialize_from_edge_list(2, [0], [1], [1.0])
        engine.set_state([1.0, 0.0])
        engine.evolve_step()
        assert engine.last_step.healthy is None


class TestRecommendCsr:
    """Tests for the sparse/dense heuristic."""

    def test_large_graph(self):
        assert recommend_csr(20000, 20000 ** 2)

    def test_sparse_graph(self):
        assert recommend_csr(100, 400)

    def test_dense_small_graph(self):
        assert not recommend_csr(10, 80)

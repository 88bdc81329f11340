"""
rqcore simulator - sparse relational graph with Cayley evolution.

Main entry point for simulations.
"""

from __future__ import annotations
import argparse
import logging
from pathlib import Path
from typing import Optional

import numpy as np

from rqcore.config import EngineConfig, TopologyMode, standard_config
from rqcore.core import CayleyEvolutionEngine, SparseTopology
from rqcore.core.evolution import recommend_csr
from rqcore.core.generators import GraphConfig, generate
from rqcore.pipeline import PhysicsPipeline
from rqcore.storage import RunRecorder


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def initial_state(dimension: int, seed: Optional[int] = None) -> np.ndarray:
    """Random complex state with unit norm."""
    rng = np.random.default_rng(seed)
    psi = rng.normal(size=dimension) + 1j * rng.normal(size=dimension)
    return psi / np.linalg.norm(psi)


def run_simulation(
    config: EngineConfig,
    graph: GraphConfig,
    kind: str = "powerlaw",
    steps: int = 100,
    output_dir: Optional[Path] = None,
    name: str = "simulation",
    record: bool = True,
) -> dict:
    """
    Run a complete simulation.

    Args:
        config: Engine configuration
        graph: Graph generator configuration
        kind: Generator name ('chain', 'powerlaw', 'random')
        steps: Number of pipeline frames
        output_dir: Directory for run output
        name: Run name
        record: Write diagnostics and a final checkpoint

    Returns:
        Dictionary with final diagnostics
    """
    logger.info(f"Starting simulation: {name}")
    src, tgt, w = generate(kind, graph)
    topology = SparseTopology.from_edge_list(graph.N, src, tgt, w)
    logger.info(
        f"Graph '{kind}': N={topology.node_count}, edges={topology.edge_count}, "
        f"sparse recommended={recommend_csr(topology.node_count, topology.nnz)}"
    )

    recorder = None
    if record:
        base = Path(output_dir) if output_dir is not None else config.storage.base_path
        recorder = RunRecorder(name=name, base_path=base, config=config,
                               description="Cayley evolution on sparse graph")

    with CayleyEvolutionEngine(config) as engine:
        engine.initialize_with_topology(topology)
        engine.set_state(initial_state(engine.dimension, graph.seed))
        if recorder is not None:
            recorder.attach(engine)

        pipeline = PhysicsPipeline.default(engine)
        pipeline.initialize_all()
        logger.info(f"Pipeline: {' -> '.join(pipeline.execution_order())}")

        total_iterations = 0
        for frame in range(1, steps + 1):
            pipeline.execute_frame()
            total_iterations += engine.last_step.iterations

            if frame % max(1, steps // 10) == 0:
                s = engine.last_step
                logger.info(
                    f"Step {frame}/{steps} - norm={s.norm:.12f}, iters={s.iterations}, "
                    f"residual={s.residual:.2e}, nnz={s.nnz}"
                )

        health = engine.check_health()
        logger.info(f"Final health: {health}")
        results = {
            'steps': steps,
            'final_norm': engine.compute_norm(),
            'total_iterations': total_iterations,
            'node_count': engine.node_count,
            'nnz': engine.topology.nnz,
            'healthy': health.is_healthy,
        }

        if recorder is not None:
            recorder.checkpoint(engine)
            recorder.finalize("completed" if health.is_healthy else "unhealthy")
            results['run_path'] = recorder.path
            logger.info(f"Run saved to: {recorder.path}")

        pipeline.cleanup_all()

    return results


def main():
    """Command-line interface for running simulations."""
    parser = argparse.ArgumentParser(description="rqcore sparse Cayley simulator")

    parser.add_argument('--nodes', type=int, default=1024,
                        help='Number of graph nodes (default: 1024)')
    parser.add_argument('--graph', type=str, default='powerlaw',
                        choices=['chain', 'powerlaw', 'random'],
                        help='Graph generator (default: powerlaw)')
    parser.add_argument('--steps', type=int, default=100,
                        help='Number of evolution steps (default: 100)')
    parser.add_argument('--dt', type=float, default=0.01,
                        help='Time step (default: 0.01)')
    parser.add_argument('--gauge-dim', type=int, default=1,
                        help='Amplitudes per node (default: 1)')
    parser.add_argument('--mode', type=str, default='soft',
                        choices=[m.value for m in TopologyMode],
                        help='Topology mode (default: soft)')
    parser.add_argument('--threshold', type=float, default=0.001,
                        help='Soft rewiring weight threshold (default: 0.001)')
    parser.add_argument('--rebuild-interval', type=int, default=10,
                        help='Steps between rewiring cycles (default: 10)')
    parser.add_argument('--tolerance', type=float, default=1e-12,
                        help='BiCGStab relative tolerance (default: 1e-12)')
    parser.add_argument('--config', type=str, default=None,
                        help='Load engine config from JSON (overrides the options above)')
    parser.add_argument('--output', type=str, default='./runs',
                        help='Output directory (default: ./runs)')
    parser.add_argument('--name', type=str, default='simulation',
                        help='Run name (default: simulation)')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed (default: 42)')
    parser.add_argument('--no-record', action='store_true',
                        help='Do not write diagnostics or checkpoints')

    args = parser.parse_args()

    if args.config is not None:
        config = EngineConfig.load(args.config)
    else:
        config = standard_config()
        config.dt = args.dt
        config.gauge_dim = args.gauge_dim
        config.solver.tolerance = args.tolerance
        config.rewiring.mode = TopologyMode(args.mode)
        config.rewiring.weight_threshold = args.threshold
        config.rewiring.rebuild_interval = args.rebuild_interval
        config.rewiring.seed = args.seed

    issues = config.validate()
    if issues:
        parser.error("; ".join(issues))

    graph = GraphConfig(N=args.nodes, seed=args.seed)

    results = run_simulation(
        config=config,
        graph=graph,
        kind=args.graph,
        steps=args.steps,
        output_dir=Path(args.output),
        name=args.name,
        record=not args.no_record,
    )

    logger.info(f"Final norm: {results['final_norm']:.12f}")
    logger.info("Done!")


if __name__ == "__main__":
    main()

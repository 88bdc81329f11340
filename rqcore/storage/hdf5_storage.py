"""
HDF5 checkpoints and per-step diagnostics.

A checkpoint holds the raw CSR arrays, the potential, node masses and
the flat complex state, plus scalar attributes (tick, gauge_dim,
node_count). Diagnostics are appended to resizable datasets, one row
per step.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import h5py
import numpy as np

from ..config import EngineConfig
from ..core.evolution import CayleyEvolutionEngine, StepRecord
from ..core.topology import SparseTopology
from ..errors import InvalidArgumentError

DIAGNOSTIC_FIELDS = [f.name for f in fields(StepRecord)]

_DIAGNOSTIC_DTYPES = {
    'tick': np.int64,
    'iterations': np.int64,
    'residual': np.float64,
    'converged': np.bool_,
    'norm': np.float64,
    'node_count': np.int64,
    'nnz': np.int64,
    'healthy': np.int8,       # -1 = not checked
    'rewired': np.bool_,
    'time_ms': np.float64,
}


class CheckpointStorage:
    """
    HDF5-based storage for engine checkpoints.

    Example:
        store = CheckpointStorage("run.h5")
        store.save_checkpoint(engine)
        engine2 = store.restore_engine(config)
    """

    def __init__(self, filepath: Union[str, Path], mode: str = 'a', compress: bool = True):
        """
        Initialize checkpoint storage.

        Args:
            filepath: Path to HDF5 file
            mode: File mode ('r', 'r+', 'w', 'w-', 'a')
            compress: gzip-compress array datasets
        """
        self.filepath = Path(filepath)
        if mode != 'r':
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
        self.mode = mode
        self.compression = 'gzip' if compress else None

    @contextmanager
    def open(self, mode: Optional[str] = None):
        """Context manager for file access."""
        f = h5py.File(self.filepath, mode or self.mode)
        try:
            yield f
        finally:
            f.close()

    def _write(self, g, name: str, data: np.ndarray) -> None:
        if name in g:
            del g[name]
        g.create_dataset(name, data=data, compression=self.compression if data.size else None)

    # ===== Checkpoints =====

    def save_checkpoint(
        self,
        engine: CayleyEvolutionEngine,
        group: str = "checkpoint",
        attrs: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Save topology arrays and state of a ready engine.

        Args:
            engine: Engine to snapshot
            group: Group name in HDF5 file
            attrs: Additional scalar attributes to store
        """
        topo = engine.topology
        real, imag = engine.download_state()
        with self.open() as f:
            g = f.require_group(group)
            self._write(g, 'row_offsets', np.asarray(topo.row_offsets))
            self._write(g, 'col_indices', np.asarray(topo.col_indices))
            self._write(g, 'edge_weights', np.asarray(topo.edge_weights))
            self._write(g, 'node_potential', np.asarray(topo.node_potential))
            self._write(g, 'masses', engine.masses)
            self._write(g, 'state_real', real)
            self._write(g, 'state_imag', imag)

            g.attrs['tick'] = engine.tick
            g.attrs['gauge_dim'] = engine.gauge_dim
            g.attrs['node_count'] = topo.node_count
            g.attrs['nnz'] = topo.nnz
            if attrs:
                for k, v in attrs.items():
                    g.attrs[k] = v

    def load_checkpoint(self, group: str = "checkpoint") -> Dict[str, Any]:
        """
        Load raw checkpoint arrays and attributes.

        Returns:
            Dict with CSR arrays, potential, masses, state_real,
            state_imag and every stored attribute
        """
        with self.open('r') as f:
            if group not in f:
                raise InvalidArgumentError(f"No checkpoint group '{group}' in {self.filepath}")
            g = f[group]
            result = {k: g[k][:] for k in g.keys()}
            for k in g.attrs.keys():
                result[k] = g.attrs[k]
            return result

    @staticmethod
    def _topology_from(data: Dict[str, Any]) -> SparseTopology:
        return SparseTopology.from_csr_arrays(
            int(data['node_count']),
            data['row_offsets'],
            data['col_indices'],
            data['edge_weights'],
            data['node_potential'],
        )

    def load_topology(self, group: str = "checkpoint") -> SparseTopology:
        return self._topology_from(self.load_checkpoint(group))

    def restore_engine(
        self,
        config: Optional[EngineConfig] = None,
        group: str = "checkpoint",
    ) -> CayleyEvolutionEngine:
        """Build a ready engine from a checkpoint (topology is validated)."""
        data = self.load_checkpoint(group)
        topology = self._topology_from(data)
        engine = CayleyEvolutionEngine(config)
        engine.initialize_with_topology(topology, int(data['gauge_dim']))
        engine.upload_state(data['state_real'], data['state_imag'])
        engine.update_masses(data['masses'])
        engine.tick = int(data['tick'])
        return engine

    # ===== Diagnostics history =====

    def init_diagnostics(self, group: str = "diagnostics", chunk: int = 256) -> None:
        """Create empty resizable datasets, one per StepRecord field."""
        with self.open() as f:
            if group in f:
                del f[group]
            g = f.create_group(group)
            for name in DIAGNOSTIC_FIELDS:
                g.create_dataset(
                    name,
                    shape=(0,),
                    maxshape=(None,),
                    dtype=_DIAGNOSTIC_DTYPES[name],
                    chunks=(chunk,),
                )
            g.attrs['current_step'] = 0

    def append_diagnostics(self, record: StepRecord, group: str = "diagnostics") -> None:
        with self.open() as f:
            if group not in f:
                raise InvalidArgumentError(
                    f"Diagnostics group '{group}' not initialized; call init_diagnostics()"
                )
            g = f[group]
            idx = int(g.attrs['current_step'])
            for name in DIAGNOSTIC_FIELDS:
                value = getattr(record, name)
                if name == 'healthy':
                    value = -1 if value is None else int(value)
                g[name].resize((idx + 1,))
                g[name][idx] = value
            g.attrs['current_step'] = idx + 1

    def load_diagnostics(self, group: str = "diagnostics") -> Dict[str, np.ndarray]:
        with self.open('r') as f:
            if group not in f:
                return {}
            g = f[group]
            return {name: g[name][:] for name in g.keys()}

    def get_info(self) -> Dict[str, Any]:
        """Get information about the HDF5 file."""
        info = {'filepath': str(self.filepath)}

        with self.open('r') as f:
            info['groups'] = list(f.keys())

            for group_name in f.keys():
                g = f[group_name]
                info[group_name] = {
                    'datasets': list(g.keys()),
                    'attrs': dict(g.attrs),
                }

        return info

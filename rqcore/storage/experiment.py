"""
Run recording: metadata and config as JSON, diagnostics and checkpoints
in HDF5.
"""

from __future__ import annotations
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import EngineConfig
from ..core.evolution import CayleyEvolutionEngine, StepRecord
from .hdf5_storage import CheckpointStorage


@dataclass
class RunMetadata:
    """Metadata for a simulation run."""

    run_id: str
    name: str
    description: str
    created_at: str
    config: Dict[str, Any]
    tags: List[str] = field(default_factory=list)
    status: str = "running"  # running, completed, failed
    steps: int = 0
    checkpoints: int = 0
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RunMetadata":
        return cls(**d)


class RunRecorder:
    """
    Records a simulation run:
    - Configuration (config.json)
    - Metadata and status (metadata.json)
    - Per-step diagnostics (data.h5, group 'diagnostics')
    - Checkpoints (data.h5, groups 'checkpoint_<tick>')

    Example:
        with RunRecorder("demo", "./runs", config) as rec:
            rec.attach(engine)
            engine.evolve(num_steps=100)
            rec.checkpoint(engine)
    """

    def __init__(
        self,
        name: str,
        base_path: Union[str, Path],
        config: Optional[EngineConfig] = None,
        description: str = "",
        tags: Optional[List[str]] = None,
    ):
        self.run_id = f"{name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        self.base_path = Path(base_path) / self.run_id
        self.base_path.mkdir(parents=True, exist_ok=True)

        self.config = config or EngineConfig()
        self.config.save(self.base_path / "config.json")

        compress = self.config.storage.compress
        self.storage = CheckpointStorage(self.base_path / "data.h5", compress=compress)
        self.storage.init_diagnostics()

        self.metadata = RunMetadata(
            run_id=self.run_id,
            name=name,
            description=description,
            created_at=datetime.now().isoformat(),
            config=self.config.to_dict(),
            tags=tags or [],
        )
        self._save_metadata()
        self.start_time = time.time()

    def _save_metadata(self) -> None:
        with open(self.base_path / "metadata.json", 'w', encoding='utf-8') as f:
            json.dump(self.metadata.to_dict(), f, indent=2, ensure_ascii=False)

    def attach(self, engine: CayleyEvolutionEngine) -> None:
        """Record every step of ``engine``; auto-checkpoint if configured."""
        engine.add_step_callback(self._on_step)

    def _on_step(self, engine: CayleyEvolutionEngine, record: StepRecord) -> None:
        self.record_step(record)
        storage = self.config.storage
        if storage.auto_save and record.tick % storage.auto_save_interval == 0:
            self.checkpoint(engine)

    def record_step(self, record: StepRecord) -> None:
        self.storage.append_diagnostics(record)
        self.metadata.steps += 1

    def checkpoint(self, engine: CayleyEvolutionEngine) -> str:
        """Save a checkpoint group named after the current tick."""
        group = f"checkpoint_{engine.tick:08d}"
        self.storage.save_checkpoint(engine, group=group)
        self.metadata.checkpoints += 1
        return group

    def finalize(self, status: str = "completed") -> None:
        """
        Finalize run metadata.

        Args:
            status: Final status (completed, failed)
        """
        self.metadata.status = status
        self.metadata.duration_seconds = time.time() - self.start_time
        self._save_metadata()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        status = "failed" if exc_type is not None else "completed"
        self.finalize(status)
        return False

    @property
    def path(self) -> Path:
        """Get run directory path."""
        return self.base_path


def load_run(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a recorded run.

    Returns:
        Dict with metadata (RunMetadata), config (EngineConfig),
        diagnostics (dict of arrays) and checkpoints (group names)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Run not found: {path}")

    with open(path / "metadata.json", 'r', encoding='utf-8') as f:
        metadata = RunMetadata.from_dict(json.load(f))
    config = EngineConfig.load(path / "config.json")

    storage = CheckpointStorage(path / "data.h5", mode='r')
    diagnostics = storage.load_diagnostics()
    checkpoints = sorted(g for g in storage.get_info()['groups'] if g.startswith("checkpoint_"))

    return {
        'metadata': metadata,
        'config': config,
        'diagnostics': diagnostics,
        'checkpoints': checkpoints,
    }

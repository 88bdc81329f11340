"""
Storage module for the rqcore simulator.

Provides persistence for:
- Engine checkpoints (topology arrays + state)
- Per-step diagnostics
- Run configuration and metadata
"""

from .hdf5_storage import CheckpointStorage
from .experiment import RunRecorder, RunMetadata, load_run

__all__ = [
    "CheckpointStorage",
    "RunRecorder",
    "RunMetadata",
    "load_run",
]

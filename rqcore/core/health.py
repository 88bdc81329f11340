"""
Numerical health monitoring.

Scans state and topology buffers for NaN, Inf (including values beyond
a configurable magnitude) and negative entries. The monitor is passive:
it never halts the simulation or repairs data, it only reports.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional
import logging
import time

import numpy as np

from . import kernels

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """Result of one full buffer scan."""
    nan_count: int = 0
    inf_count: int = 0
    negative_count: int = 0
    first_nan_index: int = -1       # -1 when no NaN present
    is_healthy: bool = True
    singularity_detected: bool = False
    buffer_size: int = 0
    timestamp: float = field(default_factory=time.time)

    def issues(self) -> List[str]:
        out = []
        if self.nan_count:
            out.append(f"{self.nan_count} NaN (first at {self.first_nan_index})")
        if self.inf_count:
            out.append(f"{self.inf_count} Inf")
        if self.negative_count:
            out.append(f"{self.negative_count} negative")
        return out

    def describe(self) -> str:
        if self.is_healthy:
            return "Healthy"
        return "UNHEALTHY: " + ", ".join(self.issues())

    def __str__(self) -> str:
        return self.describe()


class HealthMonitor:
    """
    Detects NaN/Inf/negative values in simulation buffers.

    Args:
        nan_threshold: Max NaN count still considered healthy
        inf_threshold: Max Inf count still considered healthy
        inf_magnitude: |x| above this counts as Inf
        check_negative: Count negatives against health (real buffers only)
    """

    def __init__(
        self,
        nan_threshold: int = 0,
        inf_threshold: int = 10,
        inf_magnitude: float = 1e300,
        check_negative: bool = True,
    ):
        self.nan_threshold = nan_threshold
        self.inf_threshold = inf_threshold
        self.inf_magnitude = inf_magnitude
        self.check_negative = check_negative
        self.last_result: Optional[HealthCheckResult] = None

    @classmethod
    def from_params(cls, params) -> "HealthMonitor":
        return cls(
            nan_threshold=params.nan_threshold,
            inf_threshold=params.inf_threshold,
            inf_magnitude=params.inf_magnitude,
            check_negative=params.check_negative,
        )

    def _classify(self, buffer: np.ndarray, check_negative: bool) -> np.ndarray:
        codes = np.empty(buffer.shape[0], dtype=np.int8)
        if np.iscomplexobj(buffer):
            kernels.classify_complex(
                np.ascontiguousarray(buffer, dtype=np.complex128), self.inf_magnitude, codes
            )
        else:
            kernels.classify_real(
                np.ascontiguousarray(buffer, dtype=np.float64),
                self.inf_magnitude, check_negative, codes,
            )
        return codes

    def check_buffer(self, buffer: np.ndarray, check_negative: Optional[bool] = None) -> HealthCheckResult:
        """
        Full scan of a 1-D real or complex buffer.

        The first NaN index is the lowest NaN position, independent of
        how the scan is split across threads.
        """
        buffer = np.asarray(buffer).ravel()
        if check_negative is None:
            check_negative = self.check_negative
        codes = self._classify(buffer, check_negative)

        nan_mask = codes == kernels.CODE_NAN
        nan_count = int(np.count_nonzero(nan_mask))
        inf_count = int(np.count_nonzero(codes == kernels.CODE_INF))
        neg_count = int(np.count_nonzero(codes == kernels.CODE_NEGATIVE))
        first_nan = int(np.argmax(nan_mask)) if nan_count else -1

        healthy = (
            nan_count <= self.nan_threshold
            and inf_count <= self.inf_threshold
            and (not check_negative or neg_count == 0)
        )
        result = HealthCheckResult(
            nan_count=nan_count,
            inf_count=inf_count,
            negative_count=neg_count,
            first_nan_index=first_nan,
            is_healthy=healthy,
            singularity_detected=nan_count > 0 or inf_count > self.inf_threshold,
            buffer_size=int(buffer.shape[0]),
        )
        if not healthy:
            logger.warning(f"Health check: {result.describe()}")
        self.last_result = result
        return result

    def quick_check(self, buffer: np.ndarray, sample_count: int = 100) -> bool:
        """
        Sampled scan of every k-th element, k = max(1, len // sample_count).

        Returns:
            True if no sampled element is NaN or beyond ``inf_magnitude``
        """
        buffer = np.asarray(buffer).ravel()
        if buffer.shape[0] == 0:
            return True
        stride = max(1, buffer.shape[0] // max(1, sample_count))
        sample = buffer[::stride]
        if np.any(np.isnan(sample)):
            return False
        return not np.any(np.abs(sample) > self.inf_magnitude)

    def check_topology(self, topology) -> HealthCheckResult:
        """Scan edge weights (negatives counted) and node potential (negatives allowed)."""
        weights = self.check_buffer(topology.edge_weights, check_negative=True)
        potential = self.check_buffer(topology.node_potential, check_negative=False)

        nan_count = weights.nan_count + potential.nan_count
        inf_count = weights.inf_count + potential.inf_count
        if weights.first_nan_index >= 0:
            first_nan = weights.first_nan_index
        elif potential.first_nan_index >= 0:
            first_nan = weights.buffer_size + potential.first_nan_index
        else:
            first_nan = -1

        result = HealthCheckResult(
            nan_count=nan_count,
            inf_count=inf_count,
            negative_count=weights.negative_count,
            first_nan_index=first_nan,
            is_healthy=weights.is_healthy and potential.is_healthy
            and nan_count <= self.nan_threshold and inf_count <= self.inf_threshold,
            singularity_detected=nan_count > 0 or inf_count > self.inf_threshold,
            buffer_size=weights.buffer_size + potential.buffer_size,
        )
        self.last_result = result
        return result

"""
Backend health tracking for Arbiter.

Turns dispatch outcomes into health status so repeatedly failing backends
stop being tried, then get a trial dispatch once they have rested.
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from arbiter.schemas import HealthStatus


@dataclass
class HealthConfig:
    """Health tracking configuration."""
    failure_threshold: int = 3  # Consecutive failures before unavailable
    recovery_seconds: float = 60.0  # Rest time before a trial dispatch


@dataclass
class _BackendHealth:
    status: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    total_successes: int = 0
    total_failures: int = 0


class HealthTracker:
    """
    Consecutive-failure health tracking, one record per backend.

    - success -> healthy, failure count reset
    - failure -> degraded
    - failure_threshold consecutive failures -> unavailable
    - unavailable for recovery_seconds -> degraded (trial allowed)
    """

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or HealthConfig()
        self._clock = clock or time.time
        self._lock = Lock()
        self._records: dict[str, _BackendHealth] = {}

    def status(self, backend_id: str) -> HealthStatus:
        """Current status, after applying any due recovery."""
        with self._lock:
            record = self._record(backend_id)
            self._check_recovery(record)
            return record.status

    def trial_due(self, backend_id: str) -> bool:
        """True once a backend taken offline by failures has rested long enough."""
        with self._lock:
            record = self._records.get(backend_id)
            if record is None:
                return False
            self._check_recovery(record)
            return (
                record.status == HealthStatus.DEGRADED
                and record.consecutive_failures >= self.config.failure_threshold
            )

    def on_success(self, backend_id: str) -> HealthStatus:
        with self._lock:
            record = self._record(backend_id)
            record.status = HealthStatus.HEALTHY
            record.consecutive_failures = 0
            record.total_successes += 1
            return record.status

    def on_failure(self, backend_id: str) -> HealthStatus:
        with self._lock:
            record = self._record(backend_id)
            record.consecutive_failures += 1
            record.total_failures += 1
            record.last_failure_time = self._clock()
            if record.consecutive_failures >= self.config.failure_threshold:
                record.status = HealthStatus.UNAVAILABLE
            else:
                record.status = HealthStatus.DEGRADED
            return record.status

    def reset(self, backend_id: Optional[str] = None) -> None:
        """Forget history for one backend, or for all."""
        with self._lock:
            if backend_id:
                self._records.pop(backend_id, None)
            else:
                self._records.clear()

    def get_stats(self, backend_id: str) -> dict:
        with self._lock:
            record = self._record(backend_id)
            self._check_recovery(record)
            return {
                "backend_id": backend_id,
                "status": record.status.value,
                "consecutive_failures": record.consecutive_failures,
                "total_successes": record.total_successes,
                "total_failures": record.total_failures,
                "time_until_retry": (
                    max(
                        0.0,
                        self.config.recovery_seconds
                        - (self._clock() - record.last_failure_time),
                    )
                    if record.status == HealthStatus.UNAVAILABLE
                    else 0.0
                ),
            }

    def _record(self, backend_id: str) -> _BackendHealth:
        record = self._records.get(backend_id)
        if record is None:
            record = self._records[backend_id] = _BackendHealth()
        return record

    def _check_recovery(self, record: _BackendHealth) -> None:
        if (
            record.status == HealthStatus.UNAVAILABLE
            and record.last_failure_time is not None
            and self._clock() - record.last_failure_time >= self.config.recovery_seconds
        ):
            record.status = HealthStatus.DEGRADED

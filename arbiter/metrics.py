"""
Metrics and observability for Arbiter.

Provides structured logging and metrics collection for monitoring.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from pathlib import Path
from threading import Lock
from typing import Optional, Any


@dataclass
class MetricEvent:
    """A single metric event."""
    timestamp: str
    event_type: str  # arbitration, exhausted, attempt_failure
    query_id: str
    session_id: str
    data: dict[str, Any]


class MetricsCollector:
    """
    Collects and aggregates metrics from arbitration.

    Provides both real-time stats and historical tracking.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = True,
    ):
        """
        Initialize metrics collector.

        Args:
            metrics_file: Optional file to write metrics to (JSONL format)
            enable_logging: Whether to enable structured logging
        """
        self.metrics_file = metrics_file
        self.enable_logging = enable_logging

        self.logger = logging.getLogger("arbiter.metrics")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._lock = Lock()
        self._events: list[MetricEvent] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def record_arbitration(
        self,
        query_id: str,
        session_id: str,
        phase: str,
        backend_id: str,
        attempts_made: int,
        tokens_used: int,
        latency_ms: int,
        fallback_used: bool,
        budget_warning: bool,
        **extra: Any,
    ) -> None:
        """Record a query that reached a backend successfully."""
        self._record_event(
            event_type="arbitration",
            query_id=query_id,
            session_id=session_id,
            data={
                "phase": phase,
                "backend_id": backend_id,
                "attempts_made": attempts_made,
                "tokens_used": tokens_used,
                "latency_ms": latency_ms,
                "fallback_used": fallback_used,
                "budget_warning": budget_warning,
                **extra,
            },
        )
        with self._lock:
            self._counters["queries_total"] += 1
            self._counters["queries_succeeded"] += 1
            self._counters[f"queries_by_backend_{backend_id}"] += 1
            self._counters[f"queries_by_phase_{phase}"] += 1
            if fallback_used:
                self._counters["queries_fallback"] += 1
            if budget_warning:
                self._counters["budget_warnings"] += 1
            self._histograms["tokens_used"].append(tokens_used)
            self._histograms["latency_ms"].append(latency_ms)
            self._histograms["attempts_made"].append(attempts_made)

    def record_exhausted(
        self,
        query_id: str,
        session_id: str,
        phase: str,
        attempts_made: int,
        reason: str,
        **extra: Any,
    ) -> None:
        """Record a query no backend could serve."""
        self._record_event(
            event_type="exhausted",
            query_id=query_id,
            session_id=session_id,
            data={
                "phase": phase,
                "attempts_made": attempts_made,
                "reason": reason,
                **extra,
            },
            level=logging.ERROR,
        )
        with self._lock:
            self._counters["queries_total"] += 1
            self._counters["queries_exhausted"] += 1
            self._histograms["attempts_made"].append(attempts_made)

    def record_attempt_failure(
        self,
        query_id: str,
        session_id: str,
        backend_id: str,
        error_type: str,
        error_message: str,
    ) -> None:
        """Record one failed candidate (quota, error or timeout)."""
        self._record_event(
            event_type="attempt_failure",
            query_id=query_id,
            session_id=session_id,
            data={
                "backend_id": backend_id,
                "error_type": error_type,
                "error_message": error_message,
            },
            level=logging.WARNING,
        )
        with self._lock:
            self._counters["attempt_failures_total"] += 1
            self._counters[f"attempt_failures_{error_type}"] += 1

    def _record_event(
        self,
        event_type: str,
        query_id: str,
        session_id: str,
        data: dict,
        level: int = logging.INFO,
    ) -> None:
        """Record a metric event."""
        event = MetricEvent(
            timestamp=datetime.now(UTC).isoformat(),
            event_type=event_type,
            query_id=query_id,
            session_id=session_id,
            data=data,
        )

        with self._lock:
            self._events.append(event)
            if self.metrics_file:
                with open(self.metrics_file, "a") as f:
                    f.write(json.dumps(asdict(event), default=str) + "\n")

        if self.enable_logging:
            self.logger.log(
                level,
                f"{event_type.upper()}: query_id={query_id}, "
                f"session_id={session_id}, data={data}",
            )

    @property
    def events(self) -> list[MetricEvent]:
        with self._lock:
            return list(self._events)

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with metrics summary
        """
        import statistics as stats

        with self._lock:
            counters = dict(self._counters)
            tokens = list(self._histograms.get("tokens_used", []))
            latency = list(self._histograms.get("latency_ms", []))
            attempts = list(self._histograms.get("attempts_made", []))

        succeeded = counters.get("queries_succeeded", 0)
        return {
            "counters": counters,
            "tokens": {
                "total": sum(tokens),
                "avg": stats.mean(tokens) if tokens else 0,
            },
            "latency": {
                "avg_ms": stats.mean(latency) if latency else 0,
                "p50_ms": stats.median(latency) if latency else 0,
                "p95_ms": (
                    stats.quantiles(latency, n=20)[18]
                    if len(latency) >= 20
                    else (max(latency) if latency else 0)
                ),
            },
            "attempts": {
                "avg": stats.mean(attempts) if attempts else 0,
                "max": max(attempts) if attempts else 0,
            },
            "fallback_rate": (
                counters.get("queries_fallback", 0) / succeeded if succeeded else 0.0
            ),
            "total_events": len(self._events),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._events.clear()
            self._counters.clear()
            self._histograms.clear()

"""
Fallback Orchestrator for Arbiter.

Entry point for a query: restrict backends by phase, rank them with the
classifier, admit through the quota tracker, dispatch, and reroute on
failure until a backend answers or the candidates run out.

Per-query states:

    READY -> DISPATCHING -> SUCCEEDED
                  |
                  v
              RETRYING -> DISPATCHING ...
                  |
                  v
              EXHAUSTED

Ledger writes happen only on entering SUCCEEDED or EXHAUSTED. Quota is
held as a reservation while DISPATCHING and only committed on success.
"""

import logging
import threading
import time
from typing import Callable, Optional

from arbiter.classifier import PriorContext, QueryClassifier
from arbiter.health import HealthConfig, HealthTracker
from arbiter.invoker import BackendInvoker, CommandInvoker
from arbiter.ledger import BudgetLedger
from arbiter.metrics import MetricsCollector
from arbiter.phase_gate import PhaseGate
from arbiter.quota import QuotaExceededError, QuotaTracker
from arbiter.registry import BackendRegistry
from arbiter.schemas import (
    CAPABILITY_COST,
    ArbiterError,
    ArbitrationResult,
    AttemptRecord,
    Backend,
    BudgetLedgerEntry,
    Capability,
    DispatchOutcome,
    HealthStatus,
    OrchestratorState,
    PhaseId,
    Query,
)
from arbiter.validation import validate_max_attempts, validate_query, validate_timeout, validate_tokens


logger = logging.getLogger(__name__)


class NoAdmissibleBackendError(ArbiterError):
    """Raised when no backend could serve a query (the EXHAUSTED state)."""
    def __init__(
        self,
        phase_id: PhaseId,
        attempts_made: int,
        dispatches: int = 0,
        reasons: Optional[dict[str, str]] = None,
        query_id: str = "",
    ):
        self.phase_id = PhaseId(phase_id)
        self.attempts_made = attempts_made
        self.dispatches = dispatches
        self.reasons = dict(reasons or {})
        self.query_id = query_id
        detail = "; ".join(f"{k}: {v}" for k, v in self.reasons.items()) or "no candidates"
        super().__init__(
            f"No admissible backend in phase '{self.phase_id.value}' "
            f"after {attempts_made} attempt(s) ({detail})"
        )


class DispatchCancelledError(NoAdmissibleBackendError):
    """Raised when the session was cancelled while arbitrating."""
    pass


class DispatchTimeoutError(ArbiterError):
    """Raised when a backend does not answer within the attempt timeout."""
    def __init__(self, backend_id: str, timeout_seconds: float):
        self.backend_id = backend_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Backend '{backend_id}' did not answer within {timeout_seconds}s"
        )


class _Cancelled(Exception):
    pass


class FallbackOrchestrator:
    """
    Selects, dispatches and reroutes search queries across backends.

    The selection algorithm:
    1. Keep backends whose tags the current phase permits
    2. Order them by the classifier's capability ranking
       (healthy before degraded within a capability, then registration order)
    3. Admit the first candidate with quota left and dispatch it
    4. On error, timeout or exhausted quota, move to the next candidate,
       up to max_attempts candidates in total

    Example:
        ```python
        orchestrator = FallbackOrchestrator.from_config(get_config(), invoker=MockInvoker())
        result = orchestrator.arbitrate(
            "find auth",
            phase_id=PhaseId.BUILD,
            ledger=ledger,
        )
        print(result.chosen_backend, result.attempts_made)
        ```
    """

    def __init__(
        self,
        registry: BackendRegistry,
        quota: QuotaTracker,
        gate: PhaseGate,
        invoker: BackendInvoker,
        classifier: Optional[QueryClassifier] = None,
        health: Optional[HealthTracker] = None,
        metrics: Optional[MetricsCollector] = None,
        max_attempts: Optional[int] = None,
        attempt_timeout_seconds: float = 10.0,
        poll_interval: float = 0.02,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Registered backends.
            quota: Quota tracker, shared across sessions.
            gate: Phase -> capability mapping.
            invoker: Runs a query against a backend.
            classifier: Query classifier (default heuristics if omitted).
            health: Health tracker fed by dispatch outcomes.
            metrics: Optional metrics collector.
            max_attempts: Candidate bound per query. None means one attempt
                per candidate backend.
            attempt_timeout_seconds: Per-attempt timeout; a timeout counts
                as a dispatch failure.
            poll_interval: How often an in-flight dispatch checks for
                cancellation.
        """
        validate_max_attempts(max_attempts)
        validate_timeout(attempt_timeout_seconds)

        self.registry = registry
        self.quota = quota
        self.gate = gate
        self.invoker = invoker
        self.classifier = classifier or QueryClassifier()
        self.health = health or HealthTracker()
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.poll_interval = poll_interval

        self._closed = False

    @classmethod
    def from_config(
        cls,
        config,
        invoker: Optional[BackendInvoker] = None,
        clock: Optional[Callable[[], float]] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "FallbackOrchestrator":
        """
        Build registry, quota tracker, gate and health tracker from an
        ArbiterConfig.
        """
        registry = BackendRegistry()
        quota = QuotaTracker(config.quota_tiers(), clock=clock)
        for backend in config.build_backends():
            registry.register(backend)
            quota.open_window(backend.backend_id, backend.quota_tier)

        health = HealthTracker(
            HealthConfig(
                failure_threshold=config.health_failure_threshold,
                recovery_seconds=config.health_recovery_seconds,
            ),
            clock=clock,
        )

        return cls(
            registry=registry,
            quota=quota,
            gate=PhaseGate(config.phase_rules()),
            invoker=invoker or CommandInvoker(config.commands()),
            health=health,
            metrics=metrics,
            max_attempts=config.max_attempts,
            attempt_timeout_seconds=config.attempt_timeout_seconds,
        )

    # =========================================================================
    # Candidate selection
    # =========================================================================

    def candidates(self, phase_id: PhaseId, ranking: list[Capability]) -> list[Backend]:
        """
        Backends eligible for a query in ``phase_id``, best first.
        """
        phase_id = PhaseId(phase_id)
        permitted = self.gate.permitted_capabilities(phase_id)
        allows_write = self.gate.allows_write(phase_id)

        ranked_tags = [t for t in ranking if t in permitted]
        ranked_tags += sorted(
            (t for t in permitted if t not in ranked_tags),
            key=lambda t: CAPABILITY_COST.get(t, len(CAPABILITY_COST)),
        )

        seen: set[str] = set()
        ordered: list[Backend] = []
        for tag in ranked_tags:
            group = []
            for backend in self.registry.list(tag):
                if backend.backend_id in seen:
                    continue
                if Capability.WRITE in backend.tags and not allows_write:
                    continue
                if self._current_health(backend) == HealthStatus.UNAVAILABLE:
                    continue
                group.append(backend)
            # Stable: keeps registration order within each health group
            group.sort(key=lambda b: b.health != HealthStatus.HEALTHY)
            for backend in group:
                seen.add(backend.backend_id)
                ordered.append(backend)
        return ordered

    def attempt_bound(self, candidate_count: int) -> int:
        if self.max_attempts is None:
            return candidate_count
        return min(self.max_attempts, candidate_count)

    def _current_health(self, backend: Backend) -> HealthStatus:
        # A backend we took offline gets a trial once it has rested
        if (
            backend.health == HealthStatus.UNAVAILABLE
            and self.health.trial_due(backend.backend_id)
        ):
            self.registry.set_health(backend.backend_id, HealthStatus.DEGRADED)
        return backend.health

    def set_health(self, backend_id: str, status: HealthStatus) -> None:
        """
        Operator override of a backend's health.

        Clears the failure history, so an override to unavailable stays in
        force until the next override rather than recovering on a timer.
        """
        self.registry.set_health(backend_id, status)
        self.health.reset(backend_id)
        logger.info("Backend %s health set to %s", backend_id, HealthStatus(status).value)

    # =========================================================================
    # Arbitration
    # =========================================================================

    def arbitrate(
        self,
        text: str,
        phase_id: PhaseId,
        ledger: BudgetLedger,
        session_id: str = "adhoc",
        cancel_event: Optional[threading.Event] = None,
        prior_context: Optional[PriorContext] = None,
    ) -> ArbitrationResult:
        """
        Run one query to completion.

        Args:
            text: Raw query text.
            phase_id: The session's current phase.
            ledger: The session's budget ledger.
            session_id: For logs and metrics.
            cancel_event: Session-level cancellation signal.
            prior_context: Symbols seen earlier in the session.

        Returns:
            ArbitrationResult for the backend that answered.

        Raises:
            ValidationError: If the query text is invalid.
            BudgetExceededError: If the phase is over budget under hard stop.
            NoAdmissibleBackendError: If every candidate was refused or failed.
            DispatchCancelledError: If cancel_event was set.
        """
        if self._closed:
            raise RuntimeError("Orchestrator is closed")
        validate_query(text)
        phase_id = PhaseId(phase_id)
        query = Query(text=text, session_id=session_id, phase_id=phase_id)

        budget_notes = ledger.check(phase_id)
        for note in budget_notes:
            logger.warning("Session %s: %s", session_id, note)

        classification = self.classifier.explain(text, prior_context)
        query.ranking = list(classification.ranking)

        candidates = self.candidates(phase_id, query.ranking)
        bound = self.attempt_bound(len(candidates))
        logger.debug(
            "Query %s in %s: ranking=%s, candidates=%s, bound=%d",
            query.query_id,
            phase_id.value,
            [c.value for c in query.ranking],
            [b.backend_id for b in candidates],
            bound,
        )

        started = time.monotonic()
        for index, backend in enumerate(candidates[:bound]):
            if cancel_event is not None and cancel_event.is_set():
                self._exhaust(query, ledger, started, cancelled=True)

            self._enter(query, OrchestratorState.DISPATCHING)
            result = self._attempt(query, backend, cancel_event, ledger, started)
            if result is not None:
                return self._succeed(query, backend, result, ledger, started, classification.reason)

            if index + 1 < bound:
                self._enter(query, OrchestratorState.RETRYING)

        self._exhaust(query, ledger, started, cancelled=False)

    def _attempt(self, query, backend, cancel_event, ledger, started):
        """Try one candidate. Returns the invocation result, or None to move on."""
        backend_id = backend.backend_id
        try:
            reservation = self.quota.reserve(backend_id, backend.units_per_query)
        except QuotaExceededError as e:
            query.attempts.append(AttemptRecord(backend_id, dispatched=False, succeeded=False, error=str(e)))
            self._note_failure(query, backend_id, "quota_exceeded", str(e))
            return None

        attempt_started = time.monotonic()
        try:
            result = self._dispatch(backend_id, query.text, cancel_event)
            validate_tokens(result.tokens_used)
        except _Cancelled:
            self.quota.release(reservation)
            query.attempts.append(AttemptRecord(
                backend_id, dispatched=True, succeeded=False,
                latency_ms=self._elapsed_ms(attempt_started), error="cancelled",
            ))
            self._exhaust(query, ledger, started, cancelled=True)
        except Exception as e:
            self.quota.release(reservation)
            status = self.health.on_failure(backend_id)
            self.registry.set_health(backend_id, status)
            query.attempts.append(AttemptRecord(
                backend_id, dispatched=True, succeeded=False,
                latency_ms=self._elapsed_ms(attempt_started), error=str(e),
            ))
            error_type = "timeout" if isinstance(e, DispatchTimeoutError) else "backend_error"
            self._note_failure(query, backend_id, error_type, str(e))
            return None

        self.quota.commit(reservation)
        self.registry.set_health(backend_id, self.health.on_success(backend_id))
        query.attempts.append(AttemptRecord(
            backend_id, dispatched=True, succeeded=True,
            latency_ms=self._elapsed_ms(attempt_started),
        ))
        return result

    def _dispatch(self, backend_id: str, text: str, cancel_event: Optional[threading.Event]):
        """
        Invoke a backend on its own thread with a deadline, watching for
        cancellation.

        Each dispatch gets a fresh daemon thread, so a backend that hangs
        past its timeout never delays a dispatch to another backend.
        """
        outcome: dict = {}
        done = threading.Event()

        def run():
            try:
                outcome["result"] = self.invoker.invoke(backend_id, text)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        worker = threading.Thread(
            target=run,
            name=f"arbiter-dispatch-{backend_id}",
            daemon=True,
        )
        deadline = time.monotonic() + self.attempt_timeout_seconds
        worker.start()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise _Cancelled()

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # The worker cannot be interrupted; its result is dropped
                raise DispatchTimeoutError(backend_id, self.attempt_timeout_seconds)

            if done.wait(timeout=min(remaining, self.poll_interval)):
                break

        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _succeed(self, query, backend, result, ledger, started, reason) -> ArbitrationResult:
        query.chosen_backend = backend.backend_id
        query.latency_ms = self._elapsed_ms(started)
        attempts_made = len(query.attempts)
        fallback_used = attempts_made > 1
        query.outcome = DispatchOutcome.FALLBACK if fallback_used else DispatchOutcome.SUCCESS
        self._enter(query, OrchestratorState.SUCCEEDED)

        ledger.record(query.phase_id, BudgetLedgerEntry(
            phase_id=query.phase_id,
            tokens_used=result.tokens_used,
            backend_id=backend.backend_id,
            outcome=query.outcome,
            query_id=query.query_id,
        ))
        budget_warning = ledger.is_over_budget(query.phase_id)

        why = f"{backend.backend_id} ({reason})"
        if fallback_used:
            skipped = ", ".join(a.backend_id for a in query.attempts[:-1])
            why += f"; fell back after {skipped}"
            logger.warning(
                "Query %s fell back to %s after %d attempt(s)",
                query.query_id, backend.backend_id, attempts_made,
            )
        if budget_warning:
            logger.warning(
                "Phase '%s' over budget: %d of %d tokens",
                query.phase_id.value,
                ledger.cumulative(query.phase_id),
                ledger.ceiling(query.phase_id),
            )

        if self.metrics:
            self.metrics.record_arbitration(
                query_id=query.query_id,
                session_id=query.session_id,
                phase=query.phase_id.value,
                backend_id=backend.backend_id,
                attempts_made=attempts_made,
                tokens_used=result.tokens_used,
                latency_ms=query.latency_ms,
                fallback_used=fallback_used,
                budget_warning=budget_warning,
            )
        logger.info(
            "Query %s served by %s in %d attempt(s), %d tokens",
            query.query_id, backend.backend_id, attempts_made, result.tokens_used,
        )

        return ArbitrationResult(
            chosen_backend=backend.backend_id,
            attempts_made=attempts_made,
            tokens_used=result.tokens_used,
            budget_warning=budget_warning,
            payload=result.payload,
            query_id=query.query_id,
            phase_id=query.phase_id,
            ranking=list(query.ranking),
            latency_ms=query.latency_ms,
            fallback_used=fallback_used,
            why=why,
            states=list(query.states),
        )

    def _exhaust(self, query, ledger, started, cancelled: bool):
        """Enter EXHAUSTED and raise. Never returns."""
        query.latency_ms = self._elapsed_ms(started)
        query.outcome = DispatchOutcome.FAILURE
        self._enter(query, OrchestratorState.EXHAUSTED)

        dispatched = [a for a in query.attempts if a.dispatched]
        if dispatched:
            ledger.record(query.phase_id, BudgetLedgerEntry(
                phase_id=query.phase_id,
                tokens_used=0,
                backend_id=dispatched[-1].backend_id,
                outcome=DispatchOutcome.FAILURE,
                query_id=query.query_id,
            ))

        reasons = {a.backend_id: a.error or "failed" for a in query.attempts}
        error_cls = DispatchCancelledError if cancelled else NoAdmissibleBackendError
        error = error_cls(
            query.phase_id,
            attempts_made=len(query.attempts),
            dispatches=len(dispatched),
            reasons=reasons,
            query_id=query.query_id,
        )

        if self.metrics:
            self.metrics.record_exhausted(
                query_id=query.query_id,
                session_id=query.session_id,
                phase=query.phase_id.value,
                attempts_made=len(query.attempts),
                reason="cancelled" if cancelled else "no admissible backend",
            )
        logger.error("Query %s exhausted: %s", query.query_id, error)
        raise error

    def _note_failure(self, query, backend_id, error_type, message):
        logger.warning("Query %s: %s on %s: %s", query.query_id, error_type, backend_id, message)
        if self.metrics:
            self.metrics.record_attempt_failure(
                query_id=query.query_id,
                session_id=query.session_id,
                backend_id=backend_id,
                error_type=error_type,
                error_message=message,
            )

    @staticmethod
    def _enter(query: Query, state: OrchestratorState) -> None:
        logger.debug("Query %s: %s -> %s", query.query_id, query.states[-1].value, state.value)
        query.states.append(state)

    @staticmethod
    def _elapsed_ms(since: float) -> int:
        return int((time.monotonic() - since) * 1000)

    def close(self) -> None:
        """Refuse further queries. Abandoned dispatch threads are daemons and are not joined."""
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

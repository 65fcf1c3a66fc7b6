"""
Session management for Arbiter.

A session is one run of the plan/build/review workflow. It holds:
- The active phase (changed only by explicit transition)
- Its own budget ledger
- A cancellation signal for in-flight queries
- Symbols seen so far, used as classifier context

Quota is not per session; the orchestrator's quota tracker is shared by
every session that uses it.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Iterable
from concurrent.futures import ThreadPoolExecutor
import logging
import threading
import uuid

from arbiter.classifier import PriorContext
from arbiter.config import get_config
from arbiter.ledger import BudgetLedger
from arbiter.orchestrator import FallbackOrchestrator
from arbiter.schemas import ArbitrationResult, BudgetPolicy, Phase, PhaseId


logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    """Aggregated statistics for a session."""
    session_id: str
    phase_id: PhaseId
    total_queries: int
    failed_queries: int
    fallback_queries: int
    budget_warnings: int
    tokens_by_phase: dict[str, int]
    remaining_by_phase: dict[str, int]
    backends_used: dict[str, int] = field(default_factory=dict)  # backend -> count


class Session:
    """
    A workflow session.

    Example:
        ```python
        orchestrator = FallbackOrchestrator.from_config(config, invoker=invoker)

        with Session(orchestrator, config=config) as s:
            r1 = s.arbitrate("Where do we handle authentication?")
            s.transition(PhaseId.BUILD)
            r2 = s.arbitrate("UserService.create")

        print(s.get_stats())
        ```
    """

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        config=None,
        session_id: Optional[str] = None,
        phase_id: PhaseId = PhaseId.PLAN,
        ledger: Optional[BudgetLedger] = None,
        max_parallel: int = 4,
    ):
        """
        Initialize a session.

        Args:
            orchestrator: Shared orchestrator (backends, quota, gate).
            config: ArbiterConfig to take ceilings and budget policy from.
                Copied, so later config changes do not reach this session.
                Defaults to the current global configuration.
            session_id: Identifier. Auto-generated if not provided.
            phase_id: Starting phase.
            ledger: Use this ledger instead of building one from config.
            max_parallel: Thread count for parallel().
        """
        if ledger is None:
            if config is None:
                config = get_config()
            else:
                config = config.model_copy(deep=True)
            ledger = BudgetLedger(
                config.ceilings(),
                policy=config.budget_policy,
                warn_ratio=config.budget_warn_ratio,
            )

        self._orchestrator = orchestrator
        self.session_id = session_id or f"session-{uuid.uuid4().hex[:8]}"
        self.phase_id = PhaseId(phase_id)
        self.ledger = ledger
        self.max_parallel = max_parallel

        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._known_symbols: set[str] = set()
        self._results: list[ArbitrationResult] = []
        self._failures = 0
        self._started_at: Optional[datetime] = None
        self._ended_at: Optional[datetime] = None
        self._is_active = False

    def __enter__(self):
        """Start the session."""
        self._started_at = datetime.now(UTC)
        self._is_active = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End the session."""
        self._ended_at = datetime.now(UTC)
        self._is_active = False
        return False  # Don't suppress exceptions

    # =========================================================================
    # Queries
    # =========================================================================

    def arbitrate(self, text: str) -> ArbitrationResult:
        """
        Arbitrate one query in the current phase.

        Raises:
            RuntimeError: If the session is not active.
            NoAdmissibleBackendError: If no backend could serve the query.
            BudgetExceededError: Under hard stop, once the phase is over budget.
        """
        if not self._is_active:
            raise RuntimeError("Session is not active. Use 'with session:' context manager.")

        with self._lock:
            phase_id = self.phase_id
            context = PriorContext(known_symbols=frozenset(self._known_symbols))

        try:
            result = self._orchestrator.arbitrate(
                text,
                phase_id=phase_id,
                ledger=self.ledger,
                session_id=self.session_id,
                cancel_event=self._cancel_event,
                prior_context=context,
            )
        except Exception:
            with self._lock:
                self._failures += 1
            raise

        symbols = self._orchestrator.classifier.extract_symbols(text)
        with self._lock:
            self._results.append(result)
            self._known_symbols.update(symbols)
        return result

    def parallel(self, queries: list[str]) -> list:
        """
        Arbitrate several queries concurrently.

        Returns:
            One entry per query, in input order: an ArbitrationResult, or
            the exception that query raised.
        """
        if not self._is_active:
            raise RuntimeError("Session is not active. Use 'with session:' context manager.")
        if not queries:
            return []

        results: list = [None] * len(queries)
        with ThreadPoolExecutor(max_workers=min(self.max_parallel, len(queries))) as executor:
            futures = [executor.submit(self.arbitrate, q) for q in queries]
            for i, future in enumerate(futures):
                try:
                    results[i] = future.result()
                except Exception as e:
                    results[i] = e
        return results

    def remember_symbols(self, symbols: Iterable[str]) -> None:
        """Add symbols the classifier should treat as identifiers."""
        with self._lock:
            self._known_symbols.update(s for s in symbols if s)

    @property
    def known_symbols(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._known_symbols)

    # =========================================================================
    # Phase and cancellation
    # =========================================================================

    def transition(self, new_phase_id: PhaseId) -> PhaseId:
        """
        Move to another phase.

        Raises:
            InvalidTransitionError: If the move is not allowed; the session
                stays where it was.
        """
        with self._lock:
            previous = self._orchestrator.gate.transition(self, new_phase_id)
        logger.info(
            "Session %s: phase %s -> %s",
            self.session_id, previous.value, self.phase_id.value,
        )
        return previous

    @property
    def phase(self) -> Phase:
        """Snapshot of the active phase and its budget."""
        gate = self._orchestrator.gate
        phase_id = self.phase_id
        return Phase(
            phase_id=phase_id,
            permitted=gate.permitted_capabilities(phase_id),
            token_ceiling=self.ledger.ceiling(phase_id),
            cumulative_tokens=self.ledger.cumulative(phase_id),
            allows_write=gate.allows_write(phase_id),
        )

    def cancel(self) -> None:
        """Abort in-flight queries; they end without further retries."""
        self._cancel_event.set()

    def resume(self) -> None:
        """Clear a previous cancel() so new queries can run."""
        self._cancel_event.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # =========================================================================
    # Stats
    # =========================================================================

    @property
    def results(self) -> list[ArbitrationResult]:
        with self._lock:
            return list(self._results)

    @property
    def total_tokens(self) -> int:
        return sum(self.ledger.cumulative(p) for p in PhaseId)

    @property
    def budget_remaining(self) -> int:
        """Tokens left in the active phase."""
        return self.ledger.remaining(self.phase_id)

    def get_stats(self) -> SessionStats:
        with self._lock:
            results = list(self._results)
            failures = self._failures

        backends_used: dict[str, int] = {}
        for result in results:
            backends_used[result.chosen_backend] = backends_used.get(result.chosen_backend, 0) + 1

        return SessionStats(
            session_id=self.session_id,
            phase_id=self.phase_id,
            total_queries=len(results) + failures,
            failed_queries=failures,
            fallback_queries=sum(1 for r in results if r.fallback_used),
            budget_warnings=sum(1 for r in results if r.budget_warning),
            tokens_by_phase={p.value: self.ledger.cumulative(p) for p in PhaseId},
            remaining_by_phase={p.value: self.ledger.remaining(p) for p in PhaseId},
            backends_used=backends_used,
        )

    def __repr__(self) -> str:
        status = "active" if self._is_active else "inactive"
        hard = ", hard_stop" if self.ledger.policy == BudgetPolicy.HARD_STOP else ""
        return (
            f"Session(id='{self.session_id}', phase={self.phase_id.value}, "
            f"queries={len(self._results)}, tokens={self.total_tokens}{hard}, {status})"
        )

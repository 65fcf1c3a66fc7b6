"""Tests for the fallback orchestrator."""

import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from arbiter.health import HealthConfig, HealthTracker
from arbiter.invoker import BackendInvoker, MockInvoker
from arbiter.ledger import BudgetExceededError, BudgetLedger
from arbiter.metrics import MetricsCollector
from arbiter.orchestrator import (
    DispatchCancelledError,
    FallbackOrchestrator,
    NoAdmissibleBackendError,
)
from arbiter.phase_gate import PhaseGate, PhaseRule
from arbiter.quota import QuotaTier, QuotaTracker
from arbiter.registry import BackendRegistry
from arbiter.schemas import (
    Backend,
    BudgetPolicy,
    Capability,
    DispatchOutcome,
    HealthStatus,
    InvocationResult,
    OrchestratorState,
    PhaseId,
)


EXACT = Capability.EXACT
SEMANTIC = Capability.SEMANTIC
XREF = Capability.CROSS_REFERENCE

CEILINGS = {PhaseId.PLAN: 50_000, PhaseId.BUILD: 200_000, PhaseId.REVIEW: 100_000}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_gate():
    return PhaseGate([
        PhaseRule(PhaseId.PLAN, frozenset({EXACT})),
        PhaseRule(PhaseId.BUILD, frozenset(Capability), allows_write=True),
        PhaseRule(PhaseId.REVIEW, frozenset({EXACT, SEMANTIC, XREF})),
    ])


def make_orchestrator(
    backends=(("exact", {EXACT}), ("semantic", {SEMANTIC})),
    invoker=None,
    limit=10,
    clock=None,
    **kwargs,
):
    """Backends share a tier of ``limit`` units per hour."""
    registry = BackendRegistry()
    quota = QuotaTracker({"t": QuotaTier("t", limit, 3600)}, clock=clock)
    for backend_id, tags in backends:
        registry.register(Backend(backend_id, frozenset(tags), "t"))
        quota.open_window(backend_id, "t")
    kwargs.setdefault("attempt_timeout_seconds", 2.0)
    return FallbackOrchestrator(
        registry=registry,
        quota=quota,
        gate=make_gate(),
        invoker=invoker or MockInvoker(),
        **kwargs,
    )


class TestCandidates:
    """Test phase filtering and ordering."""

    def setup_method(self):
        self.orchestrator = make_orchestrator(backends=(
            ("rg", {EXACT}),
            ("ag", {EXACT}),
            ("mgrep", {SEMANTIC}),
            ("lsp", {XREF}),
            ("editor", {EXACT, Capability.WRITE}),
        ))

    def teardown_method(self):
        self.orchestrator.close()

    def ids(self, phase_id, ranking):
        return [b.backend_id for b in self.orchestrator.candidates(phase_id, ranking)]

    def test_ranking_order(self):
        assert self.ids(PhaseId.REVIEW, [SEMANTIC, EXACT, XREF]) == ["mgrep", "rg", "ag", "lsp"]

    def test_plan_phase_restricts(self):
        """Only permitted tags, and no write-capable backends outside build."""
        assert self.ids(PhaseId.PLAN, [SEMANTIC, EXACT, XREF]) == ["rg", "ag"]

    def test_write_backend_allowed_in_build(self):
        assert "editor" in self.ids(PhaseId.BUILD, [EXACT, SEMANTIC, XREF])

    def test_unavailable_excluded(self):
        self.orchestrator.registry.set_health("rg", HealthStatus.UNAVAILABLE)
        assert self.ids(PhaseId.PLAN, [EXACT]) == ["ag"]

    def test_degraded_after_healthy(self):
        self.orchestrator.registry.set_health("rg", HealthStatus.DEGRADED)
        assert self.ids(PhaseId.PLAN, [EXACT]) == ["ag", "rg"]

    def test_unranked_permitted_tags_appended_by_cost(self):
        assert self.ids(PhaseId.REVIEW, [SEMANTIC]) == ["mgrep", "rg", "ag", "lsp"]

    def test_attempt_bound(self):
        assert self.orchestrator.attempt_bound(4) == 4
        bounded = make_orchestrator(max_attempts=2)
        assert bounded.attempt_bound(4) == 2
        assert bounded.attempt_bound(1) == 1
        bounded.close()


class TestArbitration:
    """End-to-end arbitration scenarios."""

    def setup_method(self):
        self.invoker = MockInvoker(tokens={"exact": 120, "semantic": 400})
        self.metrics = MetricsCollector(enable_logging=False)
        self.orchestrator = make_orchestrator(invoker=self.invoker, metrics=self.metrics)
        self.ledger = BudgetLedger(CEILINGS)

    def teardown_method(self):
        self.orchestrator.close()

    def test_exact_first_for_ambiguous_query(self):
        """Both have quota; the cheaper exact backend answers."""
        self.orchestrator.quota.record("exact", 5)
        self.orchestrator.quota.record("semantic", 2)

        result = self.orchestrator.arbitrate("find auth", PhaseId.BUILD, self.ledger)

        assert result.chosen_backend == "exact"
        assert result.attempts_made == 1
        assert result.tokens_used == 120
        assert not result.fallback_used
        assert not result.budget_warning
        assert self.orchestrator.quota.snapshot("exact").consumed == 6
        assert self.orchestrator.quota.snapshot("semantic").consumed == 2

        entries = self.ledger.entries(PhaseId.BUILD)
        assert len(entries) == 1
        assert entries[0].backend_id == "exact"
        assert entries[0].outcome == DispatchOutcome.SUCCESS
        assert entries[0].tokens_used == 120

    def test_quota_exhausted_falls_back(self):
        """Exact is out of quota, so semantic answers on the second attempt."""
        self.orchestrator.quota.record("exact", 10)

        result = self.orchestrator.arbitrate("find auth", PhaseId.BUILD, self.ledger)

        assert result.chosen_backend == "semantic"
        assert result.attempts_made == 2
        assert result.fallback_used
        assert self.invoker.call_count("exact") == 0
        assert self.ledger.entries(PhaseId.BUILD)[0].outcome == DispatchOutcome.FALLBACK
        assert result.states == [
            OrchestratorState.READY,
            OrchestratorState.DISPATCHING,
            OrchestratorState.RETRYING,
            OrchestratorState.DISPATCHING,
            OrchestratorState.SUCCEEDED,
        ]

    def test_all_exhausted(self):
        """No quota anywhere: nothing dispatched, nothing charged."""
        self.orchestrator.quota.record("exact", 10)
        self.orchestrator.quota.record("semantic", 10)

        with pytest.raises(NoAdmissibleBackendError) as exc_info:
            self.orchestrator.arbitrate("find auth", PhaseId.BUILD, self.ledger)

        assert exc_info.value.attempts_made == 2
        assert exc_info.value.dispatches == 0
        assert set(exc_info.value.reasons) == {"exact", "semantic"}
        assert self.invoker.call_count() == 0
        assert self.ledger.entries() == ()
        assert self.metrics.get_stats()["counters"]["queries_exhausted"] == 1

    def test_plan_phase_gates_semantic(self):
        """A semantic question in plan still only reaches exact backends."""
        result = self.orchestrator.arbitrate(
            "Where do we handle authentication?", PhaseId.PLAN, self.ledger
        )

        assert result.ranking[0] == SEMANTIC
        assert result.chosen_backend == "exact"
        assert self.invoker.call_count("semantic") == 0

    def test_plan_phase_no_exact_backend(self):
        self.orchestrator.registry.set_health("exact", HealthStatus.UNAVAILABLE)

        with pytest.raises(NoAdmissibleBackendError) as exc_info:
            self.orchestrator.arbitrate(
                "Where do we handle authentication?", PhaseId.PLAN, self.ledger
            )

        assert exc_info.value.attempts_made == 0
        assert self.invoker.call_count() == 0

    def test_semantic_question_in_build(self):
        result = self.orchestrator.arbitrate(
            "Where do we handle authentication?", PhaseId.BUILD, self.ledger
        )
        assert result.chosen_backend == "semantic"
        assert result.tokens_used == 400

    def test_failed_dispatch_releases_quota(self):
        """A backend error falls back and leaves the failed backend's quota alone."""
        self.invoker.failing.add("exact")

        result = self.orchestrator.arbitrate("find auth", PhaseId.BUILD, self.ledger)

        assert result.chosen_backend == "semantic"
        assert result.attempts_made == 2
        assert self.orchestrator.quota.snapshot("exact").consumed == 0
        assert self.orchestrator.quota.snapshot("exact").reserved == 0
        assert self.orchestrator.quota.snapshot("semantic").consumed == 1
        assert self.orchestrator.registry.get("exact").health == HealthStatus.DEGRADED
        assert "fell back after exact" in result.why

    def test_all_dispatches_fail_records_failure(self):
        self.invoker.failing.update({"exact", "semantic"})

        with pytest.raises(NoAdmissibleBackendError) as exc_info:
            self.orchestrator.arbitrate("find auth", PhaseId.BUILD, self.ledger)

        assert exc_info.value.dispatches == 2
        entries = self.ledger.entries(PhaseId.BUILD)
        assert len(entries) == 1
        assert entries[0].outcome == DispatchOutcome.FAILURE
        assert entries[0].tokens_used == 0

    def test_invalid_query(self):
        from arbiter.validation import ValidationError

        with pytest.raises(ValidationError):
            self.orchestrator.arbitrate("   ", PhaseId.BUILD, self.ledger)
        assert self.invoker.call_count() == 0

    def test_metrics_recorded(self):
        self.orchestrator.quota.record("exact", 10)
        self.orchestrator.arbitrate("find auth", PhaseId.BUILD, self.ledger)

        stats = self.metrics.get_stats()
        assert stats["counters"]["queries_succeeded"] == 1
        assert stats["counters"]["queries_fallback"] == 1
        assert stats["counters"]["attempt_failures_quota_exceeded"] == 1


class TestRetryBound:
    """Test max_attempts."""

    def test_bound_limits_dispatches(self):
        invoker = MockInvoker(failing={"a", "b", "c"})
        orchestrator = make_orchestrator(
            backends=(("a", {EXACT}), ("b", {EXACT}), ("c", {EXACT})),
            invoker=invoker,
            max_attempts=2,
        )
        with pytest.raises(NoAdmissibleBackendError) as exc_info:
            orchestrator.arbitrate("find auth", PhaseId.PLAN, BudgetLedger(CEILINGS))
        orchestrator.close()

        assert exc_info.value.attempts_made == 2
        assert invoker.call_count() == 2
        assert invoker.call_count("c") == 0

    def test_default_bound_is_candidate_count(self):
        invoker = MockInvoker(failing={"a", "b", "c"})
        orchestrator = make_orchestrator(
            backends=(("a", {EXACT}), ("b", {EXACT}), ("c", {EXACT})),
            invoker=invoker,
        )
        with pytest.raises(NoAdmissibleBackendError):
            orchestrator.arbitrate("find auth", PhaseId.PLAN, BudgetLedger(CEILINGS))
        orchestrator.close()

        assert invoker.call_count() == 3


class TestTimeoutAndCancellation:
    """Test deadlines and session cancellation."""

    def test_timeout_falls_back(self):
        invoker = MockInvoker(delays={"exact": 1.0})
        orchestrator = make_orchestrator(invoker=invoker, attempt_timeout_seconds=0.1)
        ledger = BudgetLedger(CEILINGS)

        result = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        orchestrator.close()

        assert result.chosen_backend == "semantic"
        assert result.attempts_made == 2
        assert orchestrator.quota.snapshot("exact").consumed == 0

    def test_cancel_during_dispatch(self):
        """Cancellation aborts the in-flight attempt without retrying."""
        invoker = MockInvoker(delays={"exact": 1.0})
        orchestrator = make_orchestrator(invoker=invoker, attempt_timeout_seconds=5.0)
        ledger = BudgetLedger(CEILINGS)
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()

        started = time.monotonic()
        with pytest.raises(DispatchCancelledError):
            orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger, cancel_event=cancel)
        elapsed = time.monotonic() - started
        orchestrator.close()

        assert elapsed < 0.9
        assert invoker.call_count("semantic") == 0
        assert orchestrator.quota.snapshot("exact").reserved == 0
        assert orchestrator.quota.snapshot("exact").consumed == 0

    def test_cancel_before_start(self):
        invoker = MockInvoker()
        orchestrator = make_orchestrator(invoker=invoker)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DispatchCancelledError) as exc_info:
            orchestrator.arbitrate("find auth", PhaseId.BUILD, BudgetLedger(CEILINGS), cancel_event=cancel)
        orchestrator.close()

        assert exc_info.value.attempts_made == 0
        assert invoker.call_count() == 0

    def test_cancelled_is_no_admissible_backend(self):
        assert issubclass(DispatchCancelledError, NoAdmissibleBackendError)

    def test_hung_backend_does_not_starve_others(self):
        """Repeated timeouts on one backend never count against another."""
        invoker = MockInvoker(delays={"exact": 1.5})
        orchestrator = make_orchestrator(
            invoker=invoker,
            attempt_timeout_seconds=0.05,
            limit=100,
            health=HealthTracker(HealthConfig(failure_threshold=100)),
        )
        ledger = BudgetLedger(CEILINGS)

        chosen = [
            orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger).chosen_backend
            for _ in range(12)
        ]
        orchestrator.close()

        assert chosen == ["semantic"] * 12
        assert invoker.call_count("exact") == 12
        assert orchestrator.registry.get("semantic").health == HealthStatus.HEALTHY
        assert orchestrator.health.get_stats("semantic")["total_failures"] == 0

    def test_closed_orchestrator_refuses_queries(self):
        orchestrator = make_orchestrator()
        orchestrator.close()
        with pytest.raises(RuntimeError):
            orchestrator.arbitrate("find auth", PhaseId.BUILD, BudgetLedger(CEILINGS))


class TestBudget:
    """Test budget warnings and hard stop."""

    def test_soft_warn_keeps_dispatching(self):
        invoker = MockInvoker(tokens_used=100)
        orchestrator = make_orchestrator(invoker=invoker)
        ledger = BudgetLedger({PhaseId.PLAN: 150, PhaseId.BUILD: 150, PhaseId.REVIEW: 150})

        first = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        second = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        third = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        orchestrator.close()

        assert not first.budget_warning
        assert second.budget_warning
        assert third.budget_warning
        assert ledger.cumulative(PhaseId.BUILD) == 300

    def test_hard_stop_blocks_dispatch(self):
        invoker = MockInvoker(tokens_used=100)
        orchestrator = make_orchestrator(invoker=invoker)
        ledger = BudgetLedger(
            {PhaseId.PLAN: 150, PhaseId.BUILD: 150, PhaseId.REVIEW: 150},
            policy=BudgetPolicy.HARD_STOP,
        )

        orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        assert orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger).budget_warning

        with pytest.raises(BudgetExceededError):
            orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)

        # Other phases are unaffected
        orchestrator.arbitrate("find auth", PhaseId.REVIEW, ledger)
        orchestrator.close()

        assert invoker.call_count() == 3
        assert len(ledger.entries(PhaseId.BUILD)) == 2


class TestHealthFeedback:
    """Dispatch outcomes drive backend health."""

    def test_repeated_failures_take_backend_offline(self):
        clock = FakeClock()
        invoker = MockInvoker(failing={"exact"})
        orchestrator = make_orchestrator(
            invoker=invoker,
            health=HealthTracker(HealthConfig(failure_threshold=3, recovery_seconds=60), clock=clock),
        )
        ledger = BudgetLedger(CEILINGS)

        for _ in range(3):
            orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        assert orchestrator.registry.get("exact").health == HealthStatus.UNAVAILABLE

        result = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        assert result.attempts_made == 1
        assert invoker.call_count("exact") == 3

        # After resting, exact gets a trial
        clock.now = 60
        invoker.failing.clear()
        result = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        orchestrator.close()

        assert result.chosen_backend == "exact"
        assert orchestrator.registry.get("exact").health == HealthStatus.HEALTHY

    def test_operator_override_is_not_recovered(self):
        """Marking a backend unavailable by hand survives the recovery timer."""
        clock = FakeClock()
        invoker = MockInvoker(failing={"exact"})
        orchestrator = make_orchestrator(
            invoker=invoker,
            health=HealthTracker(HealthConfig(failure_threshold=3, recovery_seconds=60), clock=clock),
        )
        ledger = BudgetLedger(CEILINGS)

        for _ in range(3):
            orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        orchestrator.set_health("exact", HealthStatus.UNAVAILABLE)

        clock.now = 600
        invoker.failing.clear()
        result = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)

        assert result.chosen_backend == "semantic"
        assert orchestrator.registry.get("exact").health == HealthStatus.UNAVAILABLE
        assert invoker.call_count("exact") == 3

        orchestrator.set_health("exact", HealthStatus.HEALTHY)
        result = orchestrator.arbitrate("find auth", PhaseId.BUILD, ledger)
        orchestrator.close()

        assert result.chosen_backend == "exact"


class RandomTokens(BackendInvoker):
    def __init__(self, seed):
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def invoke(self, backend_id, query):
        with self._lock:
            return InvocationResult(tokens_used=self._rng.randint(0, 1000))


class TestConcurrency:
    """Concurrent arbitration keeps quota and ledger consistent."""

    def test_shared_quota_never_oversubscribed(self):
        """Fifty concurrent queries against a ten-unit backend."""
        invoker = MockInvoker(delays={"only": 0.01})
        orchestrator = make_orchestrator(backends=(("only", {EXACT}),), invoker=invoker, limit=10)
        ledger = BudgetLedger(CEILINGS)

        def run(_):
            try:
                return orchestrator.arbitrate("find auth", PhaseId.PLAN, ledger)
            except NoAdmissibleBackendError as e:
                return e

        with ThreadPoolExecutor(max_workers=16) as executor:
            outcomes = list(executor.map(run, range(50)))
        orchestrator.close()

        succeeded = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(succeeded) == 10
        assert invoker.call_count() == 10
        assert orchestrator.quota.snapshot("only").consumed == 10
        assert len(ledger.entries(PhaseId.PLAN)) == 10

    def test_ledger_sums_match(self):
        """N successful queries leave N entries that sum to the phase total."""
        orchestrator = make_orchestrator(invoker=RandomTokens(seed=3), limit=1000)
        ledger = BudgetLedger(CEILINGS)

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(
                lambda _: orchestrator.arbitrate("find auth", PhaseId.REVIEW, ledger),
                range(40),
            ))
        orchestrator.close()

        entries = ledger.entries(PhaseId.REVIEW)
        assert len(entries) == 40
        assert sum(e.tokens_used for e in entries) == ledger.cumulative(PhaseId.REVIEW)
        assert sum(r.tokens_used for r in results) == ledger.cumulative(PhaseId.REVIEW)

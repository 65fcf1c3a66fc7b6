"""
Arbiter - pick the right code search backend, within quota and budget.

Simple usage:
    from arbiter import create_orchestrator, session

    orchestrator = create_orchestrator()

    with session(orchestrator) as s:
        r = s.arbitrate("Where do we handle authentication?")
        print(r.chosen_backend)   # "mgrep" (semantic question)
        print(r.attempts_made)    # 1
        print(r.tokens_used)      # 412
        print(r.budget_warning)   # False

Phases:
    from arbiter import PhaseId

    with session(orchestrator, phase_id=PhaseId.PLAN) as s:
        s.arbitrate("UserService")       # plan: read-only search
        s.transition(PhaseId.BUILD)      # explicit, never inferred
        s.arbitrate("handle_call/3")

Classification only:
    from arbiter import classify_query

    classify_query("find auth")  # [EXACT, SEMANTIC, CROSS_REFERENCE]
"""

from typing import Optional

from arbiter.schemas import (
    ArbiterError,
    ArbitrationResult,
    Backend,
    BudgetLedgerEntry,
    BudgetPolicy,
    Capability,
    DispatchOutcome,
    HealthStatus,
    InvocationResult,
    OrchestratorState,
    Phase,
    PhaseId,
    QuotaWindow,
)
from arbiter.config import ArbiterConfig, get_config, set_config, load_config, reset_config
from arbiter.registry import BackendRegistry, DuplicateBackendError, UnknownBackendError
from arbiter.quota import QuotaTracker, QuotaTier, QuotaExceededError
from arbiter.ledger import BudgetLedger, BudgetExceededError
from arbiter.phase_gate import PhaseGate, PhaseRule, InvalidTransitionError
from arbiter.classifier import QueryClassifier, PriorContext, classify_query
from arbiter.health import HealthTracker, HealthConfig
from arbiter.invoker import BackendInvoker, MockInvoker, CommandInvoker, InvocationError
from arbiter.metrics import MetricsCollector
from arbiter.orchestrator import (
    FallbackOrchestrator,
    NoAdmissibleBackendError,
    DispatchCancelledError,
    DispatchTimeoutError,
)
from arbiter.session import Session, SessionStats
from arbiter.validation import ValidationError


def create_orchestrator(
    config: Optional[ArbiterConfig] = None,
    invoker: Optional[BackendInvoker] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FallbackOrchestrator:
    """Build an orchestrator from config (the global default if omitted)."""
    return FallbackOrchestrator.from_config(
        config or load_config(),
        invoker=invoker,
        metrics=metrics,
    )


def session(
    orchestrator: FallbackOrchestrator,
    session_id: Optional[str] = None,
    phase_id: PhaseId = PhaseId.PLAN,
    config: Optional[ArbiterConfig] = None,
) -> Session:
    """Create a session on a shared orchestrator.

    Args:
        orchestrator: Orchestrator holding backends and quota
        session_id: Optional identifier
        phase_id: Starting phase
        config: Ceilings and budget policy (global default if omitted)

    Returns:
        Session context manager
    """
    return Session(
        orchestrator,
        config=config,
        session_id=session_id,
        phase_id=phase_id,
    )


__version__ = "0.1.0"
__all__ = [
    # Entry points
    "create_orchestrator",
    "session",
    "Session",
    "SessionStats",
    "FallbackOrchestrator",
    # Components
    "BackendRegistry",
    "QuotaTracker",
    "QuotaTier",
    "BudgetLedger",
    "PhaseGate",
    "PhaseRule",
    "QueryClassifier",
    "PriorContext",
    "classify_query",
    "HealthTracker",
    "HealthConfig",
    "BackendInvoker",
    "MockInvoker",
    "CommandInvoker",
    "MetricsCollector",
    # Config
    "ArbiterConfig",
    "get_config",
    "set_config",
    "load_config",
    "reset_config",
    # Data
    "ArbitrationResult",
    "Backend",
    "BudgetLedgerEntry",
    "BudgetPolicy",
    "Capability",
    "DispatchOutcome",
    "HealthStatus",
    "InvocationResult",
    "OrchestratorState",
    "Phase",
    "PhaseId",
    "QuotaWindow",
    # Errors
    "ArbiterError",
    "ValidationError",
    "DuplicateBackendError",
    "UnknownBackendError",
    "QuotaExceededError",
    "BudgetExceededError",
    "InvalidTransitionError",
    "InvocationError",
    "NoAdmissibleBackendError",
    "DispatchCancelledError",
    "DispatchTimeoutError",
]

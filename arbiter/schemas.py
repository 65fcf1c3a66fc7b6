"""
Data schemas for Arbiter.

Backends, quota windows, phases, ledger entries, queries and the
arbitration result handed back to the calling workflow.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional
import uuid


class Capability(str, Enum):
    """Capability tags a backend can carry."""
    EXACT = "exact"
    SEMANTIC = "semantic"
    CROSS_REFERENCE = "cross_reference"
    WRITE = "write"


# Relative cost used to break ranking ties (lower is cheaper)
CAPABILITY_COST: dict[Capability, int] = {
    Capability.EXACT: 0,
    Capability.CROSS_REFERENCE: 1,
    Capability.SEMANTIC: 2,
    Capability.WRITE: 3,
}


class HealthStatus(str, Enum):
    """Backend health."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class PhaseId(str, Enum):
    """Development phases."""
    PLAN = "plan"
    BUILD = "build"
    REVIEW = "review"


class BudgetPolicy(str, Enum):
    """What happens once a phase goes over its token ceiling."""
    SOFT_WARN = "soft_warn"    # Flag the result, keep dispatching
    HARD_STOP = "hard_stop"    # Refuse further dispatch in the phase


class DispatchOutcome(str, Enum):
    """Outcome recorded on a ledger entry."""
    SUCCESS = "success"
    FAILURE = "failure"
    FALLBACK = "fallback"      # Succeeded, but not on the first candidate


class OrchestratorState(str, Enum):
    """Per-query arbitration states."""
    READY = "ready"
    DISPATCHING = "dispatching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class Backend:
    """
    A search capability provider.

    Identity and tags are fixed at registration; only health changes.
    """
    backend_id: str
    tags: frozenset[Capability]
    quota_tier: str
    health: HealthStatus = HealthStatus.HEALTHY
    units_per_query: int = 1

    def __post_init__(self):
        self.tags = frozenset(Capability(t) for t in self.tags)

    def has(self, tag: Capability) -> bool:
        return Capability(tag) in self.tags


@dataclass
class QuotaWindow:
    """Current usage period for one backend."""
    backend_id: str
    window_start: float
    window_end: float
    consumed: int
    limit: int
    reserved: int = 0  # In-flight dispatches admitted but not yet committed

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed - self.reserved)


@dataclass
class Phase:
    """A development phase and its current budget position."""
    phase_id: PhaseId
    permitted: frozenset[Capability]
    token_ceiling: int
    cumulative_tokens: int = 0
    allows_write: bool = False

    @property
    def remaining_tokens(self) -> int:
        return max(0, self.token_ceiling - self.cumulative_tokens)


@dataclass(frozen=True)
class BudgetLedgerEntry:
    """Immutable record of one arbitration's cost."""
    phase_id: PhaseId
    tokens_used: int
    backend_id: Optional[str]
    outcome: DispatchOutcome
    query_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class InvocationResult:
    """What a backend invocation hands back."""
    tokens_used: int
    payload: Any = None


@dataclass
class AttemptRecord:
    """One candidate tried while arbitrating a query."""
    backend_id: str
    dispatched: bool
    succeeded: bool
    latency_ms: int = 0
    error: Optional[str] = None


@dataclass
class Query:
    """
    A single arbitration request.

    Lives only until its ledger entry is written.
    """
    text: str
    session_id: str
    phase_id: PhaseId
    ranking: list[Capability] = field(default_factory=list)
    chosen_backend: Optional[str] = None
    latency_ms: int = 0
    outcome: Optional[DispatchOutcome] = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    states: list[OrchestratorState] = field(
        default_factory=lambda: [OrchestratorState.READY]
    )
    query_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class ArbitrationResult:
    """Result returned to the calling workflow for one query."""
    chosen_backend: str
    attempts_made: int
    tokens_used: int
    budget_warning: bool
    payload: Any = None
    query_id: str = ""
    phase_id: Optional[PhaseId] = None
    ranking: list[Capability] = field(default_factory=list)
    latency_ms: int = 0
    fallback_used: bool = False
    why: str = ""
    states: list[OrchestratorState] = field(default_factory=list)


class ArbiterError(Exception):
    """Base class for arbitration errors."""
    pass

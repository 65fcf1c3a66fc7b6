"""
Budget ledger for Arbiter.

Append-only record of token consumption, with a running total and a token
ceiling per phase. Going over budget is a warning by default; under the
hard-stop policy it blocks further dispatch in that phase.
"""

from threading import Lock
from typing import Optional

from arbiter.schemas import (
    ArbiterError,
    BudgetLedgerEntry,
    BudgetPolicy,
    DispatchOutcome,
    PhaseId,
)
from arbiter.validation import validate_tokens


class BudgetExceededError(ArbiterError):
    """Raised under the hard-stop policy when a phase is over its ceiling."""
    def __init__(self, phase_id: PhaseId, spent: int, ceiling: int):
        self.phase_id = PhaseId(phase_id)
        self.spent = spent
        self.ceiling = ceiling
        super().__init__(
            f"Phase '{self.phase_id.value}' is over budget: "
            f"{spent} tokens spent of {ceiling} ceiling"
        )


class BudgetLedger:
    """
    Token ledger keyed by phase.

    Each phase has its own lock; recording in ``build`` never waits on
    ``plan``.

    Example:
        ```python
        ledger = BudgetLedger({PhaseId.PLAN: 20_000, PhaseId.BUILD: 100_000})
        ledger.record(PhaseId.PLAN, BudgetLedgerEntry(
            phase_id=PhaseId.PLAN,
            tokens_used=350,
            backend_id="mgrep",
            outcome=DispatchOutcome.SUCCESS,
        ))
        ledger.remaining(PhaseId.PLAN)  # 19650
        ```
    """

    def __init__(
        self,
        ceilings: dict[PhaseId, int],
        policy: BudgetPolicy = BudgetPolicy.SOFT_WARN,
        warn_ratio: float = 0.8,
    ):
        """
        Initialize the ledger.

        Args:
            ceilings: Token ceiling per phase.
            policy: Soft warning (default) or hard stop once over budget.
            warn_ratio: Fraction of the ceiling at which usage is reported
                as approaching the limit.
        """
        self._ceilings = {PhaseId(p): c for p, c in ceilings.items()}
        self.policy = BudgetPolicy(policy)
        self.warn_ratio = warn_ratio

        self._entries: dict[PhaseId, list[BudgetLedgerEntry]] = {
            p: [] for p in self._ceilings
        }
        self._cumulative: dict[PhaseId, int] = {p: 0 for p in self._ceilings}
        self._locks: dict[PhaseId, Lock] = {p: Lock() for p in self._ceilings}

    def record(self, phase_id: PhaseId, entry: BudgetLedgerEntry) -> BudgetLedgerEntry:
        """Append an entry and add its tokens to the phase total."""
        phase_id = PhaseId(phase_id)
        if entry.phase_id != phase_id:
            raise ValueError(
                f"Entry belongs to phase '{entry.phase_id.value}', "
                f"not '{phase_id.value}'"
            )
        validate_tokens(entry.tokens_used)

        with self._lock_for(phase_id):
            self._entries[phase_id].append(entry)
            self._cumulative[phase_id] += entry.tokens_used
        return entry

    def cumulative(self, phase_id: PhaseId) -> int:
        """Tokens recorded so far in a phase."""
        phase_id = PhaseId(phase_id)
        with self._lock_for(phase_id):
            return self._cumulative[phase_id]

    def ceiling(self, phase_id: PhaseId) -> int:
        return self._ceilings[PhaseId(phase_id)]

    def remaining(self, phase_id: PhaseId) -> int:
        """Ceiling minus spend, floored at zero."""
        phase_id = PhaseId(phase_id)
        return max(0, self.ceiling(phase_id) - self.cumulative(phase_id))

    def is_over_budget(self, phase_id: PhaseId) -> bool:
        """True once spend is strictly above the ceiling."""
        phase_id = PhaseId(phase_id)
        return self.cumulative(phase_id) > self.ceiling(phase_id)

    def check(self, phase_id: PhaseId) -> list[str]:
        """
        Check a phase's budget before dispatching.

        Returns:
            Warning strings (empty when comfortably within budget).

        Raises:
            BudgetExceededError: If over budget and the policy is hard stop.
        """
        phase_id = PhaseId(phase_id)
        spent = self.cumulative(phase_id)
        ceiling = self.ceiling(phase_id)
        warnings = []

        if spent > ceiling:
            if self.policy == BudgetPolicy.HARD_STOP:
                raise BudgetExceededError(phase_id, spent, ceiling)
            warnings.append(
                f"{phase_id.value} budget exceeded: {spent} of {ceiling} tokens"
            )
        elif ceiling and spent > ceiling * self.warn_ratio:
            warnings.append(
                f"{phase_id.value} budget at {(spent / ceiling) * 100:.0f}%: "
                f"{spent} of {ceiling} tokens"
            )

        return warnings

    def entries(self, phase_id: Optional[PhaseId] = None) -> tuple[BudgetLedgerEntry, ...]:
        """Entries for one phase, or for every phase in phase order."""
        if phase_id is not None:
            phase_id = PhaseId(phase_id)
            with self._lock_for(phase_id):
                return tuple(self._entries[phase_id])

        collected: list[BudgetLedgerEntry] = []
        for pid in self._ceilings:
            with self._locks[pid]:
                collected.extend(self._entries[pid])
        return tuple(collected)

    def fallback_rate(self, phase_id: PhaseId) -> float:
        """Share of a phase's entries that needed a fallback or failed."""
        entries = self.entries(phase_id)
        if not entries:
            return 0.0
        rerouted = sum(
            1 for e in entries
            if e.outcome in (DispatchOutcome.FALLBACK, DispatchOutcome.FAILURE)
        )
        return rerouted / len(entries)

    def get_summary(self) -> dict:
        """Spend, ceiling and entry counts for every phase."""
        summary = {}
        for pid in self._ceilings:
            entries = self.entries(pid)
            summary[pid.value] = {
                "cumulative_tokens": self.cumulative(pid),
                "ceiling": self.ceiling(pid),
                "remaining": self.remaining(pid),
                "over_budget": self.is_over_budget(pid),
                "entries": len(entries),
                "fallback_rate": self.fallback_rate(pid),
            }
        return summary

    def _lock_for(self, phase_id: PhaseId) -> Lock:
        lock = self._locks.get(phase_id)
        if lock is None:
            raise KeyError(f"No budget configured for phase '{phase_id.value}'")
        return lock

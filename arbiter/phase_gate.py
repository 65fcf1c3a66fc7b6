"""
Phase gate for Arbiter.

Maps the active phase to the capabilities it may use and validates phase
transitions. Transitions are only ever made on explicit request; nothing
here looks at query content.
"""

from dataclasses import dataclass
from typing import Iterable

from arbiter.schemas import ArbiterError, Capability, PhaseId


# plan -> build -> review, with a way back to plan from either later phase
ALLOWED_TRANSITIONS: frozenset[tuple[PhaseId, PhaseId]] = frozenset({
    (PhaseId.PLAN, PhaseId.BUILD),
    (PhaseId.BUILD, PhaseId.REVIEW),
    (PhaseId.BUILD, PhaseId.PLAN),
    (PhaseId.REVIEW, PhaseId.PLAN),
})


class InvalidTransitionError(ArbiterError):
    """Raised for a phase change that is not an allowed edge."""
    def __init__(self, current: PhaseId, requested: PhaseId):
        self.current = PhaseId(current)
        self.requested = PhaseId(requested)
        super().__init__(
            f"Cannot move from '{self.current.value}' to '{self.requested.value}'"
        )


@dataclass(frozen=True)
class PhaseRule:
    """What a phase is allowed to touch."""
    phase_id: PhaseId
    permitted: frozenset[Capability]
    allows_write: bool = False


class PhaseGate:
    """
    Static phase -> capability mapping.

    Example:
        ```python
        gate = PhaseGate([
            PhaseRule(PhaseId.PLAN, frozenset({Capability.EXACT})),
            PhaseRule(PhaseId.BUILD, frozenset(Capability), allows_write=True),
            PhaseRule(PhaseId.REVIEW, frozenset({Capability.EXACT, Capability.CROSS_REFERENCE})),
        ])
        gate.permitted_capabilities(PhaseId.PLAN)  # {Capability.EXACT}
        ```
    """

    def __init__(
        self,
        rules: Iterable[PhaseRule],
        transitions: frozenset[tuple[PhaseId, PhaseId]] = ALLOWED_TRANSITIONS,
    ):
        self._rules = {rule.phase_id: rule for rule in rules}
        missing = set(PhaseId) - set(self._rules)
        if missing:
            names = ", ".join(sorted(p.value for p in missing))
            raise ValueError(f"No rule configured for phase(s): {names}")
        self._transitions = transitions

    def permitted_capabilities(self, phase_id: PhaseId) -> frozenset[Capability]:
        return self._rules[PhaseId(phase_id)].permitted

    def allows_write(self, phase_id: PhaseId) -> bool:
        return self._rules[PhaseId(phase_id)].allows_write

    def is_permitted(self, phase_id: PhaseId, tag: Capability) -> bool:
        return Capability(tag) in self.permitted_capabilities(phase_id)

    def can_transition(self, current: PhaseId, requested: PhaseId) -> bool:
        return (PhaseId(current), PhaseId(requested)) in self._transitions

    def transition(self, session, new_phase_id: PhaseId) -> PhaseId:
        """
        Move ``session`` to a new phase.

        Args:
            session: Anything with a mutable ``phase_id`` attribute.
            new_phase_id: Requested phase.

        Returns:
            The phase the session was in before the move.

        Raises:
            InvalidTransitionError: If the edge is not allowed. The session
                keeps its current phase.
        """
        new_phase_id = PhaseId(new_phase_id)
        current = session.phase_id
        if not self.can_transition(current, new_phase_id):
            raise InvalidTransitionError(current, new_phase_id)
        session.phase_id = new_phase_id
        return current

    def edges(self) -> list[tuple[PhaseId, PhaseId]]:
        """Allowed transitions, sorted for display."""
        order = list(PhaseId)
        return sorted(self._transitions, key=lambda e: (order.index(e[0]), order.index(e[1])))

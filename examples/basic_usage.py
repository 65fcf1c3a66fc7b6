"""
Basic usage examples for Arbiter.

All examples use the mock invoker, so no search tools need to be installed.
"""

from arbiter import (
    MockInvoker,
    NoAdmissibleBackendError,
    PhaseId,
    classify_query,
    create_orchestrator,
    session,
)


def example_basic():
    """One query in the plan phase."""
    print("=" * 60)
    print("Example 1: Basic Usage")
    print("=" * 60)

    orchestrator = create_orchestrator(invoker=MockInvoker())

    with session(orchestrator) as s:
        result = s.arbitrate("Where do we handle authentication?")

    print(f"Backend: {result.chosen_backend}")
    print(f"Attempts: {result.attempts_made}")
    print(f"Tokens: {result.tokens_used}")
    print(f"Why: {result.why}")
    print()
    orchestrator.close()


def example_classification():
    """Ranking without dispatching."""
    print("=" * 60)
    print("Example 2: Classification")
    print("=" * 60)

    for query in ["find auth", "UserService.create", "how does login work?", "callers of handle_call/3"]:
        ranking = " > ".join(c.value for c in classify_query(query))
        print(f"{query!r:35} {ranking}")
    print()


def example_fallback():
    """Exhausted quota on the preferred backend."""
    print("=" * 60)
    print("Example 3: Quota Fallback")
    print("=" * 60)

    orchestrator = create_orchestrator(invoker=MockInvoker())
    window = orchestrator.quota.snapshot("mgrep")
    orchestrator.quota.record("mgrep", window.remaining)

    with session(orchestrator, phase_id=PhaseId.BUILD) as s:
        result = s.arbitrate("Where do we handle authentication?")

    print(f"Backend: {result.chosen_backend}")
    print(f"Fallback used: {result.fallback_used}")
    print(f"Why: {result.why}")
    print()
    orchestrator.close()


def example_phases():
    """Moving through plan, build and review."""
    print("=" * 60)
    print("Example 4: Phases")
    print("=" * 60)

    orchestrator = create_orchestrator(invoker=MockInvoker(tokens_used=250))

    with session(orchestrator) as s:
        s.arbitrate("how are sessions stored?")
        s.transition(PhaseId.BUILD)
        s.arbitrate("SessionStore.put")
        s.transition(PhaseId.REVIEW)
        s.arbitrate("callers of SessionStore.put")

    stats = s.get_stats()
    print(f"Queries: {stats.total_queries}")
    print(f"Tokens by phase: {stats.tokens_by_phase}")
    print(f"Backends used: {stats.backends_used}")
    print()
    orchestrator.close()


def example_exhausted():
    """Nothing admissible."""
    print("=" * 60)
    print("Example 5: No Admissible Backend")
    print("=" * 60)

    orchestrator = create_orchestrator(invoker=MockInvoker(failing={"ripgrep", "mgrep"}))

    with session(orchestrator) as s:
        try:
            s.arbitrate("find auth")
        except NoAdmissibleBackendError as e:
            print(f"Caught: {e}")
    print()
    orchestrator.close()


if __name__ == "__main__":
    example_basic()
    example_classification()
    example_fallback()
    example_phases()
    example_exhausted()

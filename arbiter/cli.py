"""
Command-line interface for Arbiter.

Provides commands for:
- Classifying a query
- Routing a query through the full arbitration path
- Showing the effective configuration
- Showing the phase table
"""

import argparse
import json
import logging
import sys
from typing import Optional

from arbiter.classifier import QueryClassifier
from arbiter.config import load_config
from arbiter.invoker import MockInvoker
from arbiter.ledger import BudgetExceededError
from arbiter.orchestrator import FallbackOrchestrator, NoAdmissibleBackendError
from arbiter.phase_gate import PhaseGate
from arbiter.schemas import PhaseId
from arbiter.session import Session
from arbiter.validation import ValidationError


def cmd_classify(args) -> int:
    """Classify a single query."""
    classification = QueryClassifier().explain(args.query)

    print("\n" + "=" * 60)
    print("ARBITER CLASSIFICATION")
    print("=" * 60)
    print(f"\nQuery: {args.query[:100]}")
    print(f"Ranking: {' > '.join(c.value for c in classification.ranking)}")
    print(f"Reason: {classification.reason}")
    print(f"Identifiers: {', '.join(classification.identifiers) or '-'}")
    print(f"Structural markers: {'yes' if classification.has_structure else 'no'}")
    print(f"Question: {'yes' if classification.is_question else 'no'}")
    print(f"Heuristic: {classification.heuristic_version}")
    print("=" * 60)
    return 0


def cmd_route(args) -> int:
    """Arbitrate a query against the configured backends."""
    config = load_config(args.config)
    invoker = MockInvoker() if args.dry_run else None
    orchestrator = FallbackOrchestrator.from_config(config, invoker=invoker)

    try:
        with Session(orchestrator, config=config, phase_id=PhaseId(args.phase)) as s:
            result = s.arbitrate(args.query)
    except (NoAdmissibleBackendError, BudgetExceededError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        orchestrator.close()

    print("\n" + "=" * 60)
    print("ARBITER ROUTING")
    print("=" * 60)
    print(f"\nQuery: {args.query[:100]}")
    print(f"Phase: {args.phase}")
    print(f"Ranking: {' > '.join(c.value for c in result.ranking)}")
    print()
    print("-" * 60)
    print("RESULT")
    print("-" * 60)
    print(f"Backend: {result.chosen_backend}")
    print(f"Attempts: {result.attempts_made}")
    print(f"Tokens: {result.tokens_used}")
    print(f"Latency: {result.latency_ms}ms")
    print(f"Budget warning: {'yes' if result.budget_warning else 'no'}")
    print(f"\nWHY: {result.why}")
    print("=" * 60)

    if args.show_payload and result.payload is not None:
        print(result.payload)
    return 0


def cmd_config(args) -> int:
    """Print the effective configuration."""
    config = load_config(args.config)
    print(json.dumps(config.model_dump(mode="json"), indent=2))
    return 0


def cmd_phases(args) -> int:
    """Print the phase table and allowed transitions."""
    config = load_config(args.config)
    gate = PhaseGate(config.phase_rules())
    ceilings = config.ceilings()

    print(f"{'PHASE':<8} {'CEILING':>10}  {'WRITE':<5}  CAPABILITIES")
    for phase_id in PhaseId:
        caps = ", ".join(sorted(c.value for c in gate.permitted_capabilities(phase_id)))
        write = "yes" if gate.allows_write(phase_id) else "no"
        print(f"{phase_id.value:<8} {ceilings[phase_id]:>10}  {write:<5}  {caps}")
    print()
    print("Transitions:")
    for src, dst in gate.edges():
        print(f"  {src.value} -> {dst.value}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="arbiter",
        description="Search backend arbitration with quota and budget governance",
    )
    parser.add_argument("--config", "-c", help="Path to JSON configuration")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    cls_parser = subparsers.add_parser("classify", help="Rank capabilities for a query")
    cls_parser.add_argument("query", help="Query text")

    route_parser = subparsers.add_parser("route", help="Arbitrate a query")
    route_parser.add_argument("query", help="Query text")
    route_parser.add_argument("--phase", "-p", default="plan",
                              choices=[p.value for p in PhaseId])
    route_parser.add_argument("--dry-run", action="store_true",
                              help="Use a mock backend instead of running tools")
    route_parser.add_argument("--show-payload", action="store_true",
                              help="Print the backend output")
    route_parser.add_argument("--config", "-c", default=argparse.SUPPRESS,
                              help="Path to JSON configuration")

    subparsers.add_parser("config", help="Show effective configuration")
    subparsers.add_parser("phases", help="Show phases and transitions")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "classify": cmd_classify,
        "route": cmd_route,
        "config": cmd_config,
        "phases": cmd_phases,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())

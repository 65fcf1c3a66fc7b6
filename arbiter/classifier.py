"""
Query Classifier for Arbiter.

Ranks capability tags for a query with fixed text heuristics. The same
query and context always produce the same ranking for a given
HEURISTIC_VERSION.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from arbiter.schemas import Capability


HEURISTIC_VERSION = "v1"


@dataclass(frozen=True)
class PriorContext:
    """What earlier queries in the session established."""
    known_symbols: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Classification:
    """A ranking plus the signals that produced it."""
    ranking: tuple[Capability, ...]
    identifiers: tuple[str, ...]
    has_structure: bool
    is_question: bool
    wants_references: bool
    reason: str
    heuristic_version: str = HEURISTIC_VERSION


class QueryClassifier:
    """
    Decides whether a query is better served by exact or semantic search.

    Signals:
    - Identifier-like tokens (CamelCase, snake_case, Module.Path, fun/2)
    - Structural markers (quoted literals, regex or glob syntax)
    - Question phrasing about behavior or location
    - Requests for references/callers of a symbol
    """

    def __init__(self):
        self._identifier_patterns = [
            # mixedCase / PascalCase with at least one inner capital
            re.compile(r'\b[A-Za-z][a-z0-9]+(?:[A-Z][A-Za-z0-9]*)+\b'),
            # snake_case, _private, SCREAMING_CASE
            re.compile(r'\b_?[A-Za-z][A-Za-z0-9]*(?:_[A-Za-z0-9]+)+\b'),
            # Dotted module paths: Accounts.User, MyApp.Repo.insert
            re.compile(r'\b[A-Z]\w*(?:\.\w+)+\b'),
            # Function with arity or call syntax: handle_call/3, get(
            re.compile(r'\b[a-z_]\w*[?!]?/\d+\b'),
            re.compile(r'\b\w+\.\w+\('),
            re.compile(r'\b\w+::\w+\b'),
        ]
        self._structure_pattern = re.compile(
            r'"[^"]+"'              # "quoted literal"
            r"|(?<!\w)'[^'\s][^']*'(?!\w)"  # 'quoted literal', not an apostrophe
            r'|`[^`]+`'             # `code`
            r'|\.[*+?]'             # .* .+ .?
            r'|\\[bdswBDSW]'        # \b \d \w
            r'|\^\w|\w\$'           # anchors
            r'|\[[^\]\s]+\]'        # [a-z]
            r'|\(\?[:=!]'           # (?: (?=
            r'|\w\|\w'              # alternation a|b
            r'|\*\.\w+'             # *.ex
        )
        self._question_pattern = re.compile(
            r'\b(where|how|why|which|explain|'
            r'what\s+(?:handles|does|is|are|happens|calls|controls|decides))\b',
            re.IGNORECASE
        )
        self._reference_pattern = re.compile(
            r'\b(callers?\s+of|references?\s+to|usages?\s+of|who\s+calls|'
            r'calls\s+to|uses\s+of)\b',
            re.IGNORECASE
        )
        self._word_pattern = re.compile(r'[A-Za-z_][\w.]*')

    def classify(
        self,
        query: str,
        prior_context: Optional[PriorContext] = None,
    ) -> list[Capability]:
        """
        Rank capability tags for a query, best first.

        Args:
            query: Raw query text.
            prior_context: Symbols already seen in the session.

        Returns:
            Capability tags in preference order.
        """
        return list(self.explain(query, prior_context).ranking)

    def explain(
        self,
        query: str,
        prior_context: Optional[PriorContext] = None,
    ) -> Classification:
        """Classify a query and report why."""
        prior_context = prior_context or PriorContext()

        identifiers = self._find_identifiers(query, prior_context)
        has_structure = bool(self._structure_pattern.search(query))
        is_question = bool(self._question_pattern.search(query)) or query.rstrip().endswith("?")
        wants_references = bool(self._reference_pattern.search(query))

        literal = bool(identifiers) or has_structure

        if wants_references and literal:
            first = [Capability.CROSS_REFERENCE, Capability.EXACT, Capability.SEMANTIC]
            reason = "reference lookup on a concrete symbol"
        elif literal and not is_question:
            first = [Capability.EXACT, Capability.SEMANTIC]
            reason = "identifier or structural marker"
        elif is_question and not literal:
            first = [Capability.SEMANTIC, Capability.EXACT]
            reason = "behavior/location question without identifiers"
        else:
            # Mixed or no signal: cheaper deterministic search first
            first = [Capability.EXACT, Capability.SEMANTIC]
            reason = "ambiguous, preferring lower-cost backend"

        ranking = first + [c for c in (Capability.CROSS_REFERENCE,) if c not in first]

        return Classification(
            ranking=tuple(ranking),
            identifiers=tuple(identifiers),
            has_structure=has_structure,
            is_question=is_question,
            wants_references=wants_references,
            reason=reason,
        )

    def extract_symbols(self, query: str) -> frozenset[str]:
        """Identifier-like tokens in a query, for building prior context."""
        return frozenset(self._find_identifiers(query, PriorContext()))

    def _find_identifiers(self, query: str, prior_context: PriorContext) -> list[str]:
        found: list[str] = []
        for pattern in self._identifier_patterns:
            for match in pattern.finditer(query):
                token = match.group(0).rstrip("(")
                if token not in found:
                    found.append(token)

        if prior_context.known_symbols:
            for word in self._word_pattern.findall(query):
                word = word.rstrip(".")
                if word in prior_context.known_symbols and word not in found:
                    found.append(word)

        return found


def classify_query(query: str, prior_context: Optional[PriorContext] = None) -> list[Capability]:
    """
    Convenience function to classify a query.

    Args:
        query: Raw query text.
        prior_context: Optional session context.

    Returns:
        Ranked capability tags.
    """
    return QueryClassifier().classify(query, prior_context)

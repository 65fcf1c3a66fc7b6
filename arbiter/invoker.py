"""
Backend invocation for Arbiter.

The orchestrator never runs a search itself; it calls an invoker. This
module is designed to be pluggable - use the command invoker against real
tools (ripgrep, mgrep) or the mock invoker for tests and dry runs.
"""

import subprocess
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from threading import Lock
from typing import Optional

from arbiter.schemas import ArbiterError, InvocationResult


class InvocationError(ArbiterError):
    """Raised by an invoker when a backend fails to answer."""
    def __init__(self, backend_id: str, message: str):
        self.backend_id = backend_id
        super().__init__(f"Backend '{backend_id}' failed: {message}")


class BackendInvoker(ABC):
    """Abstract base class for search backend invocation."""

    @abstractmethod
    def invoke(self, backend_id: str, query: str) -> InvocationResult:
        """
        Run ``query`` against ``backend_id``.

        Raises:
            Exception: Any error means the dispatch failed.
        """
        pass


class MockInvoker(BackendInvoker):
    """
    Scripted invoker for tests.

    Every backend answers with ``tokens_used`` tokens unless it is listed in
    ``failing`` (always raises), ``fail_first`` (raises for its first N
    calls) or ``delays`` (sleeps before answering).
    """

    def __init__(
        self,
        tokens_used: int = 100,
        tokens: Optional[dict[str, int]] = None,
        failing: Optional[set[str]] = None,
        fail_first: Optional[dict[str, int]] = None,
        delays: Optional[dict[str, float]] = None,
    ):
        self.tokens_used = tokens_used
        self.tokens = dict(tokens or {})
        self.failing = set(failing or ())
        self.fail_first = dict(fail_first or {})
        self.delays = dict(delays or {})

        self._lock = Lock()
        self.calls: list[tuple[str, str]] = []
        self._call_counts: dict[str, int] = defaultdict(int)

    def invoke(self, backend_id: str, query: str) -> InvocationResult:
        with self._lock:
            self.calls.append((backend_id, query))
            self._call_counts[backend_id] += 1
            call_number = self._call_counts[backend_id]

        delay = self.delays.get(backend_id, 0.0)
        if delay:
            time.sleep(delay)

        if backend_id in self.failing:
            raise InvocationError(backend_id, "simulated failure")
        if call_number <= self.fail_first.get(backend_id, 0):
            raise InvocationError(backend_id, f"simulated failure on call {call_number}")

        return InvocationResult(
            tokens_used=self.tokens.get(backend_id, self.tokens_used),
            payload=f"[mock results from {backend_id} for {query!r}]",
        )

    def call_count(self, backend_id: Optional[str] = None) -> int:
        with self._lock:
            if backend_id is None:
                return len(self.calls)
            return self._call_counts[backend_id]


class CommandInvoker(BackendInvoker):
    """
    Runs a search tool as a subprocess.

    Each backend maps to an argument list; ``{query}`` is replaced with the
    query text. Tokens are estimated at ~4 characters of output per token.

    Example:
        ```python
        invoker = CommandInvoker({
            "ripgrep": ["rg", "--line-number", "--", "{query}"],
            "mgrep": ["mgrep", "{query}"],
        }, cwd="/path/to/project")
        ```
    """

    def __init__(
        self,
        commands: dict[str, list[str]],
        cwd: Optional[str] = None,
        no_match_codes: frozenset[int] = frozenset({1}),
        timeout_seconds: Optional[float] = None,
    ):
        self.commands = {k: list(v) for k, v in commands.items()}
        self.cwd = cwd
        self.no_match_codes = no_match_codes
        self.timeout_seconds = timeout_seconds

    def invoke(self, backend_id: str, query: str) -> InvocationResult:
        template = self.commands.get(backend_id)
        if template is None:
            raise InvocationError(backend_id, "no command configured")

        args = [part.replace("{query}", query) for part in template]
        try:
            completed = subprocess.run(
                args,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise InvocationError(backend_id, f"command not found: {args[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise InvocationError(backend_id, "command timed out") from e

        if completed.returncode != 0 and completed.returncode not in self.no_match_codes:
            stderr = (completed.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else f"exit code {completed.returncode}"
            raise InvocationError(backend_id, detail)

        output = completed.stdout or ""
        return InvocationResult(
            tokens_used=self._estimate_tokens(output),
            payload=output,
        )

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        """Rough estimate: ~4 chars per token."""
        if not text:
            return 0
        return max(1, len(text) // 4)

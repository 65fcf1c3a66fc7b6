"""
Input validation for Arbiter.

Rejects bad queries and numbers before they reach quota or budget state.
"""

from typing import Optional


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


MAX_QUERY_LENGTH = 10_000  # characters
MAX_ATTEMPT_TIMEOUT_SECONDS = 600.0  # 10 minutes


def validate_query(text: str) -> None:
    """
    Validate query text.

    Args:
        text: Raw query text

    Raises:
        ValidationError: If the query is invalid
    """
    if not isinstance(text, str):
        raise ValidationError(f"Query must be a string, got {type(text).__name__}")

    if not text or not text.strip():
        raise ValidationError("Query cannot be empty or whitespace-only")

    if len(text) > MAX_QUERY_LENGTH:
        raise ValidationError(
            f"Query too long: {len(text):,} characters "
            f"(max: {MAX_QUERY_LENGTH:,})"
        )


def validate_tokens(tokens_used: int) -> None:
    """
    Validate a token count reported by a backend.

    Raises:
        ValidationError: If the count is not a non-negative integer
    """
    if isinstance(tokens_used, bool) or not isinstance(tokens_used, int):
        raise ValidationError(
            f"tokens_used must be an integer, got {type(tokens_used).__name__}"
        )

    if tokens_used < 0:
        raise ValidationError(f"tokens_used cannot be negative, got {tokens_used}")


def validate_timeout(timeout_seconds: Optional[float]) -> None:
    """
    Validate a per-attempt timeout.

    Raises:
        ValidationError: If the timeout is invalid
    """
    if timeout_seconds is None:
        return

    if not isinstance(timeout_seconds, (int, float)):
        raise ValidationError(
            f"timeout must be a number, got {type(timeout_seconds).__name__}"
        )

    if timeout_seconds <= 0:
        raise ValidationError(f"timeout must be positive, got {timeout_seconds}")

    if timeout_seconds > MAX_ATTEMPT_TIMEOUT_SECONDS:
        raise ValidationError(
            f"timeout too large: {timeout_seconds}s "
            f"(max: {MAX_ATTEMPT_TIMEOUT_SECONDS}s)"
        )


def validate_max_attempts(max_attempts: Optional[int]) -> None:
    """
    Validate the retry bound.

    Raises:
        ValidationError: If the bound is not a positive integer
    """
    if max_attempts is None:
        return

    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ValidationError(
            f"max_attempts must be an integer, got {type(max_attempts).__name__}"
        )

    if max_attempts < 1:
        raise ValidationError(f"max_attempts must be at least 1, got {max_attempts}")

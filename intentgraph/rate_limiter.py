"""Rate-limit detection and backoff policy for chat backend calls.

The predicates here are pure functions of the error object so the retry loop
in ``LLMClient.call`` stays a plain attempt counter with a computed wait.

Usage:
    >>> if is_rate_limit_error(exc):
    ...     wait = backoff_delay(attempt, retry_after_seconds(exc))
"""

import re
from typing import Any

from litellm.exceptions import RateLimitError

from intentgraph.config import settings

# A stated retry hint of zero seconds is treated as this many seconds.
ZERO_HINT_WAIT_SECONDS = 60.0

_RETRY_PATTERNS = (
    re.compile(r"wait (\d+(?:\.\d+)?) seconds?", re.IGNORECASE),
    re.compile(r"try again in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
    re.compile(r"retry after (\d+(?:\.\d+)?)", re.IGNORECASE),
)


class RateLimitExhaustedError(Exception):
    """Raised when a rate-limited call still fails after every retry."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Rate limited after {attempts} attempts: {last_error}"
        )


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_rate_limit_error(error: BaseException) -> bool:
    """True when the backend signalled a 429-equivalent condition."""
    if isinstance(error, RateLimitError):
        return True
    return _status_code(error) == 429


def _header_value(error: BaseException) -> Any:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        return headers.get("retry-after") or headers.get("Retry-After")
    except AttributeError:
        return None


def _hint_to_seconds(value: Any) -> float | None:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return seconds if seconds > 0 else ZERO_HINT_WAIT_SECONDS


def retry_after_seconds(error: BaseException) -> float | None:
    """Extract the backend's suggested wait from an error, if it gave one.

    Checks, in order, a ``retry_after`` attribute, a ``Retry-After`` response
    header and the error message ("wait N seconds", "try again in Ns").
    """
    hint = _hint_to_seconds(getattr(error, "retry_after", None))
    if hint is not None:
        return hint

    hint = _hint_to_seconds(_header_value(error))
    if hint is not None:
        return hint

    message = str(error)
    for pattern in _RETRY_PATTERNS:
        match = pattern.search(message)
        if match:
            return _hint_to_seconds(match.group(1))
    return None


def backoff_delay(
    attempt: int,
    hint: float | None = None,
    base: float | None = None,
    max_wait: float | None = None,
) -> float:
    """Seconds to wait before retry number ``attempt + 1``.

    Uses the backend hint when present, else ``base * 2**attempt``; either
    way the wait is capped at ``max_wait``.
    """
    base = settings.llm_backoff_base_seconds if base is None else base
    max_wait = settings.llm_max_retry_wait_seconds if max_wait is None else max_wait
    delay = hint if hint is not None else base * (2 ** attempt)
    return min(delay, max_wait)

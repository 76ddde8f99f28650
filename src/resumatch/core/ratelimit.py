"""Rate-limit classification and backoff scheduling for inference calls.

The upstream error shape is not uniform (SDK exceptions, raw HTTP errors,
plain messages), so classification accepts any one of several signals.
"""

from __future__ import annotations

import logging
import random
import re
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any, TypeVar

import openai

from resumatch.db.base import utcnow
from resumatch.errors import RateLimitExhaustedError, TransientQuotaError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS = 429
RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "429")
RESET_HEADERS = ("x-ratelimit-reset-requests", "x-ratelimit-reset-tokens")

FALLBACK_WINDOW_SEC = 60.0
FALLBACK_JITTER_RATIO = 0.1
HINT_JITTER_SEC = 1.0

_MINUTES = re.compile(r"(\d+)m(?!s)")
_SECONDS = re.compile(r"(\d+(?:\.\d+)?)s")


def is_rate_limit_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if isinstance(error, (TransientQuotaError, openai.RateLimitError)):
        return True

    for attr in ("status_code", "status"):
        if getattr(error, attr, None) == RATE_LIMIT_STATUS:
            return True

    message = str(error).lower()
    return any(phrase in message for phrase in RATE_LIMIT_PHRASES)


def parse_duration(value: str | None) -> float:
    """Parse reset durations such as ``1s``, ``6m0s`` or ``1m30s`` into seconds."""
    if not value:
        return 0.0

    seconds = 0.0
    minutes_match = _MINUTES.search(value)
    seconds_match = _SECONDS.search(value)
    if minutes_match:
        seconds += int(minutes_match.group(1)) * 60
    if seconds_match:
        seconds += float(seconds_match.group(1))
    return seconds


def _error_headers(error: BaseException) -> Mapping[str, Any] | None:
    headers = getattr(error, "headers", None)
    if headers is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    if headers is None or not hasattr(headers, "items"):
        return None
    return {str(key).lower(): value for key, value in headers.items()}


def parse_rate_limit_reset(error: BaseException | None, now: datetime | None = None) -> datetime | None:
    """Return when both the request and token windows will have reset, if the error says."""
    if error is None:
        return None

    headers = _error_headers(error)
    if not headers:
        return None

    try:
        wait = max(parse_duration(str(headers.get(name) or "")) for name in RESET_HEADERS)
    except (TypeError, ValueError):
        return None
    if wait <= 0:
        return None
    return (now or utcnow()) + timedelta(seconds=wait)


def compute_next_retry(
    attempt_number: int,
    error: BaseException | None = None,
    now: datetime | None = None,
) -> datetime:
    """
    When a failed unit of work should next be tried.

    Reset hints from the error win; jitter of +-1s keeps concurrent workers
    from retrying in lockstep. Without hints the fixed 60s window gets +-10%.
    """
    now = now or utcnow()
    reset_at = parse_rate_limit_reset(error, now=now)
    if reset_at is not None:
        return reset_at + timedelta(seconds=random.uniform(-HINT_JITTER_SEC, HINT_JITTER_SEC))

    jitter = FALLBACK_WINDOW_SEC * FALLBACK_JITTER_RATIO * random.uniform(-1.0, 1.0)
    return now + timedelta(seconds=FALLBACK_WINDOW_SEC + jitter)


def retry_with_backoff(
    action: Callable[[], T],
    max_attempts: int = 3,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``action`` on the request path, sleeping through classified rate limits.

    Non rate-limit errors propagate immediately. After ``max_attempts``
    retries a ``RateLimitExhaustedError`` is raised so the caller can queue.
    """
    for attempt in range(max_attempts + 1):
        try:
            return action()
        except Exception as exc:
            if not is_rate_limit_error(exc):
                raise

            retry_after = parse_rate_limit_reset(exc)
            if attempt >= max_attempts:
                raise RateLimitExhaustedError(
                    f"Rate limit exceeded after {max_attempts} retries",
                    retry_after=retry_after,
                ) from exc

            next_retry = retry_after or compute_next_retry(attempt, exc)
            delay = max(0.0, (next_retry - utcnow()).total_seconds())
            logger.warning(
                "Rate limit hit, retrying in %ss (attempt %s/%s)",
                round(delay),
                attempt + 1,
                max_attempts,
            )
            sleep(delay)

    raise AssertionError("unreachable")

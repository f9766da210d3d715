"""Failure classification and retry backoff."""

import random
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from conn_jobs.errors import ConfigurationError

_STATUS_IN_MESSAGE = re.compile(r"\((\d{3})\)")

NON_RETRYABLE_AUTH_STATUSES = frozenset({401, 403})

MAX_BACKOFF_SECONDS = 3600


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry classification policy.

    Attributes:
        retry_on_unknown: Treat failures without a parseable upstream status
            (timeouts, malformed responses) as retryable.
        extra_retryable_statuses: Provider specific "temporarily unavailable"
            codes outside the 5xx range.
    """

    retry_on_unknown: bool = False
    extra_retryable_statuses: FrozenSet[int] = field(default_factory=frozenset)


DEFAULT_RETRY_POLICY = RetryPolicy()


def extract_status_code(error: BaseException) -> Optional[int]:
    """Find the upstream HTTP status carried by an error, if any."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)

    match = _STATUS_IN_MESSAGE.search(str(error))
    if match:
        return int(match.group(1))
    return None


def is_retryable(
    error: BaseException, policy: RetryPolicy = DEFAULT_RETRY_POLICY
) -> bool:
    """Decide whether a failed operation should be retried."""
    if isinstance(error, ConfigurationError):
        return False

    status = extract_status_code(error)
    if status is None:
        return policy.retry_on_unknown
    if status in NON_RETRYABLE_AUTH_STATUSES:
        return False
    if status == 429:
        return True
    if 500 <= status < 600:
        return True
    if status in policy.extra_retryable_statuses:
        return True
    return False


def calculate_backoff(backoff_policy: Dict[str, Any], attempt: int) -> int:
    """
    Calculate backoff delay based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration
        attempt: Current attempt number (1-indexed)

    Returns:
        Backoff delay in seconds
    """
    policy_type = backoff_policy.get("type", "exponential")
    base_seconds = backoff_policy.get("base_seconds", 10)
    attempt = max(1, attempt)

    if policy_type == "linear":
        delay = base_seconds * attempt
    elif policy_type == "constant":
        return base_seconds
    else:
        # exponential, also the fallback for unknown types
        delay = base_seconds * (2 ** (attempt - 1))
    return min(delay, MAX_BACKOFF_SECONDS)


def calculate_backoff_with_jitter(backoff_policy: Dict[str, Any], attempt: int) -> int:
    """Backoff with +/-20% jitter, never below one second."""
    base_delay = calculate_backoff(backoff_policy, attempt)
    jitter_factor = 1.0 + random.uniform(-0.2, 0.2)
    return max(1, int(base_delay * jitter_factor))

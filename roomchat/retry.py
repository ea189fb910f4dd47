# =============================================================================
# roomchat -- Connect Retry Policy
# =============================================================================
#
# Retries wrap the session from the outside: each attempt is a fresh
# IDLE -> CONNECTING pass, the state machine itself never loops.
# =============================================================================

from __future__ import annotations

import asyncio
import itertools
import random
from typing import TYPE_CHECKING, Callable

from ._logging import logger
from .constants import RETRY_ABSOLUTE_CAP
from .errors import ChatConnectionError, ChatSubscriptionError, ChatTimeoutError
from .types import RetryMode, RetryPolicy

if TYPE_CHECKING:
    from .session import ChatSession

RETRYABLE = (ChatConnectionError, ChatSubscriptionError, ChatTimeoutError)
_GROWTH_LIMIT = 64  # keeps factor ** n finite on endless retries

_GROWTH: dict[RetryMode, Callable[[RetryPolicy, int], float]] = {
    RetryMode.EXPONENTIAL: lambda policy, n: policy.factor ** min(n - 1, _GROWTH_LIMIT),
    RetryMode.LINEAR: lambda policy, n: float(n),
    RetryMode.FIBONACCI: lambda policy, n: float(_fib(min(n, _GROWTH_LIMIT))),
}


def calculate_delay(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait before connect attempt number *attempt*.

    Attempts are counted from 1, so attempt 2 is the first retry and
    waits ``base_delay`` in every mode. Later waits grow by *factor*
    (exponential), by ``base_delay`` (linear) or along the Fibonacci
    numbers, capped at ``max_delay``.
    """
    retries = max(1, attempt - 1)
    growth = _GROWTH.get(policy.mode, _GROWTH[RetryMode.EXPONENTIAL])

    delay = min(policy.base_delay * growth(policy, retries), policy.max_delay, RETRY_ABSOLUTE_CAP)
    if policy.jitter:
        delay *= 1.0 + random.uniform(-0.1, 0.1)
    return max(0.0, delay)


async def connect_with_retry(
    session: ChatSession,
    room_id: str,
    sender: str,
    policy: RetryPolicy | None = None,
    *,
    timeout: float | None = None,
) -> int:
    """Connect *session*, re-attempting after retryable failures.

    Returns:
        The number of attempts it took.

    Raises:
        The last connect error once ``policy.max_attempts`` is used up.
        ``ChatSessionError`` is never retried.
    """
    policy = policy or RetryPolicy()
    attempts = itertools.count() if policy.max_attempts < 0 else range(policy.max_attempts)
    last_exc: Exception | None = None

    for attempt in attempts:
        if attempt > 0:
            delay = calculate_delay(policy, attempt + 1)
            logger.info(
                "Retrying connect to %s in %.1fs (attempt %d/%s)",
                room_id,
                delay,
                attempt + 1,
                policy.max_attempts if policy.max_attempts >= 0 else "inf",
            )
            await asyncio.sleep(delay)
        try:
            await session.connect(room_id, sender, timeout=timeout)
            return attempt + 1
        except RETRYABLE as exc:
            last_exc = exc
            logger.debug("Connect attempt %d failed: %s", attempt + 1, exc)

    if last_exc is None:
        raise ValueError("RetryPolicy.max_attempts must be -1 or at least 1")
    logger.error("Giving up on %s after %d attempts", room_id, policy.max_attempts)
    raise last_exc


def _fib(n: int) -> int:
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a

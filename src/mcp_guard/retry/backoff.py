"""Exponential backoff with jitter.

Pure decision functions plus :func:`with_retry`, the async driver used by
the server supervisor for (re)connection attempts.

Example:
    >>> policy = RetryPolicy(max_attempts=3, initial_delay=500, jitter=False)
    >>> calculate_retry_delay(1, policy), calculate_retry_delay(3, policy)
    (500.0, 2000.0)
"""

from __future__ import annotations

import asyncio
import errno
import inspect
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from mcp_guard.errors import OperationCancelledError
from mcp_guard.retry.policy import DEFAULT_RETRY_POLICY, RetryPolicy, RetryState

__all__ = [
    "TRANSIENT_MESSAGE_PATTERNS",
    "OnRetry",
    "calculate_retry_delay",
    "error_code",
    "create_initial_retry_state",
    "is_transient_error",
    "run_cancellable",
    "should_retry",
    "update_retry_state",
    "with_retry",
]

T = TypeVar("T")

OnRetry = Callable[[int, BaseException, float], Any]
"""``on_retry(attempt, error, delay_ms)``; may return an awaitable."""

TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "connection timeout",
    "network unreachable",
    "host unreachable",
    "temporarily unavailable",
    "service unavailable",
    "timeout",
    "connection aborted",
)

JITTER_RATIO = 0.25


# =============================================================================
# Classification
# =============================================================================


def error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None) or getattr(error, "errno", None)
    if code is None:
        return None
    if isinstance(code, int) and not isinstance(code, bool):
        return errno.errorcode.get(code)
    return str(code)


def _is_transient_single(error: BaseException, policy: RetryPolicy) -> bool:
    if isinstance(error, TimeoutError):
        return True

    code = error_code(error)
    if code and code in policy.transient_error_codes:
        return True

    message = str(getattr(error, "message", None) or error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


def is_transient_error(error: BaseException, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> bool:
    """Classify ``error`` as transient (worth retrying) or permanent.

    The error's ``code``/``errno`` is matched against the policy's transient
    codes (integer errno values are translated, so a ``ConnectionRefusedError``
    matches ``ECONNREFUSED``), then its message is searched for well known
    network failure phrases. The ``__cause__`` chain is followed, and an
    exception group is transient if any member is.
    """
    return _is_transient(error, policy, set())


def _is_transient(error: BaseException, policy: RetryPolicy, seen: set[int]) -> bool:
    if id(error) in seen:
        return False
    seen.add(id(error))

    if isinstance(error, BaseExceptionGroup):
        return any(_is_transient(e, policy, seen) for e in error.exceptions)

    if _is_transient_single(error, policy):
        return True

    cause = error.__cause__
    return cause is not None and _is_transient(cause, policy, seen)


# =============================================================================
# Delay calculation and state
# =============================================================================


def calculate_retry_delay(attempt: int, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> float:
    """Delay in ms before retry number ``attempt`` (numbered from 1)."""
    base = policy.initial_delay * policy.backoff_multiplier ** (attempt - 1)
    delay = float(min(base, policy.max_delay))

    if policy.jitter:
        spread = delay * JITTER_RATIO
        return delay + random.uniform(-spread, spread)

    return delay


def create_initial_retry_state() -> RetryState:
    return RetryState(is_retrying=False, current_attempt=0, backoff_intervals=[])


def update_retry_state(
    state: RetryState,
    error: BaseException,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    now: float | None = None,
) -> RetryState:
    """Return the state following a failed attempt.

    Once the attempt count passes ``max_attempts`` the returned state is
    terminal: no new delay is scheduled.
    """
    next_attempt = state.current_attempt + 1

    if next_attempt > policy.max_attempts:
        return RetryState(
            is_retrying=False,
            current_attempt=next_attempt,
            next_retry_at=None,
            backoff_intervals=list(state.backoff_intervals),
            last_error=error,
        )

    delay_ms = calculate_retry_delay(next_attempt, policy)
    now = time.time() if now is None else now
    return RetryState(
        is_retrying=True,
        current_attempt=next_attempt,
        next_retry_at=now + delay_ms / 1000.0,
        backoff_intervals=[*state.backoff_intervals, delay_ms],
        last_error=error,
    )


def should_retry(error: BaseException, state: RetryState, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> bool:
    if state.current_attempt >= policy.max_attempts:
        return False
    return is_transient_error(error, policy)


# =============================================================================
# Drivers
# =============================================================================


async def _backoff_wait(delay_s: float, cancel_event: asyncio.Event | None) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay_s)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_s)
    except asyncio.TimeoutError:
        return
    raise OperationCancelledError("retry backoff")


async def run_cancellable(
    aw: Awaitable[T],
    cancel_event: asyncio.Event | None = None,
    *,
    operation: str = "operation",
) -> T:
    """Await ``aw`` unless ``cancel_event`` fires first.

    When the event wins, the inner task is cancelled and awaited before
    :class:`OperationCancelledError` is raised.
    """
    if cancel_event is None:
        return await aw

    if cancel_event.is_set():
        if inspect.iscoroutine(aw):
            aw.close()
        raise OperationCancelledError(operation)

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise OperationCancelledError(operation)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    on_retry: OnRetry | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Call ``fn`` until it succeeds, a permanent error occurs, or attempts run out.

    ``fn`` is called at most ``policy.max_attempts`` times. Before each
    backoff wait ``on_retry(attempt, error, delay_ms)`` is invoked with the
    number of the attempt that just failed. Setting ``cancel_event`` ends a
    pending wait immediately with :class:`OperationCancelledError`; task
    cancellation propagates untouched.

    Raises:
        The last error raised by ``fn``.
    """
    state = create_initial_retry_state()

    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("retry loop")

        try:
            return await fn()
        except OperationCancelledError:
            raise
        except Exception as exc:
            error = exc

        if attempt >= policy.max_attempts or not should_retry(error, state, policy):
            raise error

        state = update_retry_state(state, error, policy)
        if not state.is_retrying:
            raise error

        delay_ms = state.backoff_intervals[-1]
        if on_retry is not None:
            outcome = on_retry(attempt, error, delay_ms)
            if inspect.isawaitable(outcome):
                await outcome

        await _backoff_wait(max(delay_ms, 0.0) / 1000.0, cancel_event)

"""Tests for the backoff policy engine."""

from __future__ import annotations

import asyncio
import errno
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mcp_guard.errors import ConfigurationError, MCPConnectionError, MCPTimeoutError, OperationCancelledError
from mcp_guard.retry import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    RetryState,
    calculate_retry_delay,
    create_initial_retry_state,
    is_transient_error,
    run_cancellable,
    should_retry,
    update_retry_state,
    with_retry,
)


class CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def transient() -> CodedError:
    return CodedError("connect failed", "ECONNREFUSED")


# =============================================================================
# RetryPolicy
# =============================================================================


class TestRetryPolicy:
    def test_defaults(self):
        policy = DEFAULT_RETRY_POLICY
        assert policy.max_attempts == 5
        assert policy.initial_delay == 1000
        assert policy.max_delay == 30000
        assert policy.backoff_multiplier == 2
        assert policy.jitter is True
        assert "ECONNREFUSED" in policy.transient_error_codes
        assert len(policy.transient_error_codes) == 8

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_delay": -1},
            {"initial_delay": 100, "max_delay": 50},
            {"backoff_multiplier": 1},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ConfigurationError):
            RetryPolicy(**kwargs)

    def test_codes_stored_as_frozenset(self):
        policy = RetryPolicy(transient_error_codes=["EPIPE"])
        assert policy.transient_error_codes == frozenset({"EPIPE"})

    def test_is_immutable(self):
        with pytest.raises(AttributeError):
            DEFAULT_RETRY_POLICY.max_attempts = 10  # type: ignore[misc]


# =============================================================================
# Classification
# =============================================================================


class TestIsTransientError:
    def test_code_in_policy(self):
        assert is_transient_error(transient())

    def test_permanent_error(self):
        assert not is_transient_error(Exception("Invalid credentials"))

    def test_integer_errno_translated(self):
        err = ConnectionRefusedError(errno.ECONNREFUSED, "refused")
        assert is_transient_error(err)

    @pytest.mark.parametrize(
        "message",
        [
            "Connection refused by peer",
            "connection RESET",
            "503 Service Unavailable",
            "Resource temporarily unavailable",
            "request timeout",
            "Network unreachable",
        ],
    )
    def test_message_patterns(self, message):
        assert is_transient_error(RuntimeError(message))

    def test_timeout_errors_are_transient(self):
        assert is_transient_error(TimeoutError())
        assert is_transient_error(MCPTimeoutError("slow", operation="connect", timeout=1.0))

    def test_cause_is_inspected(self):
        try:
            try:
                raise ConnectionResetError(errno.ECONNRESET, "reset")
            except ConnectionResetError as inner:
                raise MCPConnectionError("Failed to connect", "weather") from inner
        except MCPConnectionError as outer:
            assert is_transient_error(outer)

    def test_group_cause_is_inspected(self):
        group = ExceptionGroup(
            "unhandled errors in a TaskGroup",
            [ConnectionRefusedError(errno.ECONNREFUSED, "refused")],
        )
        wrapped = MCPConnectionError("Failed to connect to stdio: weather-mcp", "weather")
        wrapped.__cause__ = group

        assert is_transient_error(wrapped)

    def test_group_cause_with_permanent_members(self):
        wrapped = MCPConnectionError("Failed to connect", "weather")
        wrapped.__cause__ = ExceptionGroup("boom", [ValueError("Invalid credentials")])

        assert not is_transient_error(wrapped)

    def test_cyclic_cause_chain_terminates(self):
        first = ValueError("Invalid credentials")
        second = RuntimeError("bad config")
        first.__cause__ = second
        second.__cause__ = first

        assert not is_transient_error(first)

    def test_exception_group_with_transient_member(self):
        group = ExceptionGroup("boom", [ValueError("bad"), transient()])
        assert is_transient_error(group)

    def test_custom_policy_codes(self):
        policy = RetryPolicy(transient_error_codes={"EBUSY"})
        assert is_transient_error(CodedError("busy", "EBUSY"), policy)
        assert not is_transient_error(CodedError("nope", "ECONNREFUSED"), policy)


# =============================================================================
# Delay calculation and state
# =============================================================================


class TestCalculateRetryDelay:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(jitter=False)
        delays = [calculate_retry_delay(n, policy) for n in range(1, 7)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 30000]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(initial_delay=500, max_delay=1500, jitter=False)
        assert calculate_retry_delay(10, policy) == 1500

    def test_jitter_within_25_percent(self):
        policy = RetryPolicy(jitter=True)
        for attempt in (1, 3, 6):
            base = min(1000 * 2 ** (attempt - 1), 30000)
            for _ in range(200):
                delay = calculate_retry_delay(attempt, policy)
                assert base * 0.75 <= delay <= base * 1.25


class TestRetryState:
    def test_initial_state(self):
        state = create_initial_retry_state()
        assert state == RetryState(is_retrying=False, current_attempt=0, backoff_intervals=[])

    def test_update_schedules_next_retry(self):
        policy = RetryPolicy(max_attempts=3, jitter=False)
        error = transient()

        state = update_retry_state(create_initial_retry_state(), error, policy, now=100.0)

        assert state.is_retrying
        assert state.current_attempt == 1
        assert state.backoff_intervals == [1000]
        assert state.next_retry_at == pytest.approx(101.0)
        assert state.last_error is error

    def test_update_does_not_mutate_input(self):
        original = create_initial_retry_state()
        update_retry_state(original, transient(), RetryPolicy(jitter=False))
        assert original.current_attempt == 0
        assert original.backoff_intervals == []

    def test_terminal_after_max_attempts(self):
        policy = RetryPolicy(max_attempts=2, jitter=False)
        state = create_initial_retry_state()
        for _ in range(3):
            state = update_retry_state(state, transient(), policy)

        assert state.current_attempt == 3
        assert not state.is_retrying
        assert state.next_retry_at is None
        assert state.backoff_intervals == [1000, 2000]

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=2)
        assert should_retry(transient(), RetryState(current_attempt=1), policy)
        assert not should_retry(transient(), RetryState(current_attempt=2), policy)
        assert not should_retry(ValueError("bad input"), RetryState(), policy)


# =============================================================================
# with_retry
# =============================================================================


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_immediate_success_calls_once(self, fast_policy):
        fn = AsyncMock(return_value="ok")
        assert await with_retry(fn, fast_policy) == "ok"
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, fast_policy):
        fn = AsyncMock(side_effect=[transient(), transient(), "ok"])
        assert await with_retry(fn, fast_policy) == "ok"
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausts_attempts_and_raises_last_error(self, fast_policy):
        errors = [transient() for _ in range(3)]
        fn = AsyncMock(side_effect=errors)

        with pytest.raises(CodedError) as exc_info:
            await with_retry(fn, fast_policy)

        assert exc_info.value is errors[-1]
        assert fn.await_count == fast_policy.max_attempts

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, fast_policy):
        fn = AsyncMock(side_effect=ValueError("Invalid credentials"))
        with pytest.raises(ValueError):
            await with_retry(fn, fast_policy)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_receives_attempt_error_delay(self, fast_policy):
        err = transient()
        fn = AsyncMock(side_effect=[err, "ok"])
        on_retry = MagicMock()

        await with_retry(fn, fast_policy, on_retry)

        on_retry.assert_called_once_with(1, err, 1.0)

    @pytest.mark.asyncio
    async def test_async_on_retry_is_awaited(self, fast_policy):
        fn = AsyncMock(side_effect=[transient(), transient(), "ok"])
        on_retry = AsyncMock()

        await with_retry(fn, fast_policy, on_retry)

        assert on_retry.await_count == 2

    @pytest.mark.asyncio
    async def test_no_wait_after_final_attempt(self):
        policy = RetryPolicy(max_attempts=3, initial_delay=1000, jitter=False)
        fn = AsyncMock(side_effect=[transient(), transient(), transient()])

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(CodedError):
                await with_retry(fn, policy)

        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_cancel_event_during_backoff(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=10_000, max_delay=10_000, jitter=False)
        fn = AsyncMock(side_effect=transient())
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(with_retry(fn, policy, cancel_event=cancel), timeout=2)

        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_event_already_set(self, fast_policy):
        fn = AsyncMock(return_value="ok")
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await with_retry(fn, fast_policy, cancel_event=cancel)
        fn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=10_000, max_delay=10_000, jitter=False)
        fn = AsyncMock(side_effect=transient())
        task = asyncio.create_task(with_retry(fn, policy))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert fn.await_count == 1


class TestRunCancellable:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 42

        assert await run_cancellable(work(), asyncio.Event()) == 42

    @pytest.mark.asyncio
    async def test_without_event(self):
        async def work():
            return "done"

        assert await run_cancellable(work()) == "done"

    @pytest.mark.asyncio
    async def test_cancel_stops_inner_work(self):
        finished = False

        async def slow():
            nonlocal finished
            await asyncio.sleep(10)
            finished = True

        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(OperationCancelledError, match="tool call"):
            await run_cancellable(slow(), cancel, operation="tool call")
        assert not finished

    @pytest.mark.asyncio
    async def test_inner_error_propagates(self):
        async def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await run_cancellable(broken(), asyncio.Event())

from mcp_guard.retry.backoff import (
    TRANSIENT_MESSAGE_PATTERNS,
    calculate_retry_delay,
    create_initial_retry_state,
    is_transient_error,
    run_cancellable,
    should_retry,
    update_retry_state,
    with_retry,
)
from mcp_guard.retry.policy import (
    DEFAULT_RETRY_POLICY,
    DEFAULT_TRANSIENT_ERROR_CODES,
    RetryPolicy,
    RetryState,
)

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "DEFAULT_TRANSIENT_ERROR_CODES",
    "TRANSIENT_MESSAGE_PATTERNS",
    "RetryPolicy",
    "RetryState",
    "calculate_retry_delay",
    "create_initial_retry_state",
    "is_transient_error",
    "run_cancellable",
    "should_retry",
    "update_retry_state",
    "with_retry",
]

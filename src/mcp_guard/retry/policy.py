"""Retry policy and retry state types.

Delays are expressed in milliseconds to match the values users put in
server settings; the retry driver converts to seconds only when sleeping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mcp_guard.errors import ConfigurationError

__all__ = [
    "DEFAULT_TRANSIENT_ERROR_CODES",
    "DEFAULT_RETRY_POLICY",
    "RetryPolicy",
    "RetryState",
]

DEFAULT_TRANSIENT_ERROR_CODES: frozenset[str] = frozenset(
    {
        "ECONNREFUSED",
        "ECONNRESET",
        "ETIMEDOUT",
        "ENOTFOUND",
        "ECONNABORTED",
        "EPIPE",
        "ENETUNREACH",
        "EHOSTUNREACH",
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Attributes:
        max_attempts: Total number of calls allowed, including the first.
        initial_delay: Delay before the first retry, in ms.
        max_delay: Upper bound for any single delay, in ms.
        backoff_multiplier: Growth factor between consecutive delays.
        jitter: Perturb each delay by up to +/-25%.
        transient_error_codes: errno-style codes that are worth retrying.
    """

    max_attempts: int = 5
    initial_delay: float = 1000.0
    max_delay: float = 30000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    transient_error_codes: frozenset[str] = DEFAULT_TRANSIENT_ERROR_CODES

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be >= 1, got {self.max_attempts}",
                details={"max_attempts": self.max_attempts},
            )
        if self.initial_delay < 0:
            raise ConfigurationError(
                f"initial_delay must be >= 0, got {self.initial_delay}",
                details={"initial_delay": self.initial_delay},
            )
        if self.max_delay < self.initial_delay:
            raise ConfigurationError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})",
                details={"max_delay": self.max_delay, "initial_delay": self.initial_delay},
            )
        if self.backoff_multiplier <= 1:
            raise ConfigurationError(
                f"backoff_multiplier must be > 1, got {self.backoff_multiplier}",
                details={"backoff_multiplier": self.backoff_multiplier},
            )
        # Accept any iterable of codes but store a frozenset.
        if not isinstance(self.transient_error_codes, frozenset):
            object.__setattr__(self, "transient_error_codes", frozenset(self.transient_error_codes))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "jitter": self.jitter,
            "transient_error_codes": sorted(self.transient_error_codes),
        }


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class RetryState:
    """Progress of one retry sequence.

    Attributes:
        is_retrying: A retry is scheduled.
        current_attempt: Number of failed attempts recorded so far.
        next_retry_at: Epoch seconds of the scheduled retry.
        backoff_intervals: Delays used so far, in ms.
        last_error: Most recent failure.
    """

    is_retrying: bool = False
    current_attempt: int = 0
    next_retry_at: float | None = None
    backoff_intervals: list[float] = field(default_factory=list)
    last_error: BaseException | None = None

    def copy(self) -> RetryState:
        return RetryState(
            is_retrying=self.is_retrying,
            current_attempt=self.current_attempt,
            next_retry_at=self.next_retry_at,
            backoff_intervals=list(self.backoff_intervals),
            last_error=self.last_error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "is_retrying": self.is_retrying,
            "current_attempt": self.current_attempt,
            "next_retry_at": self.next_retry_at,
            "backoff_intervals": list(self.backoff_intervals),
            "last_error": str(self.last_error) if self.last_error else None,
        }

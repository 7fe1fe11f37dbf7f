"""
Retry policy module - How a tool call is retried after a failure
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .enums import BackoffStrategy


DEFAULT_RETRYABLE_ERRORS = ["timeout", "rate_limit", "network_error"]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy of a tool.

    Attributes:
        max_retries: Retries allowed after the first attempt
        backoff: linear, exponential or fixed
        base_delay: Base delay in milliseconds
        max_delay: Upper bound of any single delay in milliseconds
        retryable_errors: Error classes (or message tokens) that may be retried
    """
    max_retries: int = 3
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: int = 1000
    max_delay: int = 10000
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays cannot be negative")
        if not isinstance(self.backoff, BackoffStrategy):
            object.__setattr__(self, "backoff", BackoffStrategy(self.backoff))

    def delay_ms(self, attempt: int) -> int:
        """
        Delay before retry number ``attempt + 1`` (attempt counts from 0).

        linear: base * (attempt + 1); exponential: base * 2**attempt; fixed: base.
        """
        if self.backoff == BackoffStrategy.LINEAR:
            delay = self.base_delay * (attempt + 1)
        elif self.backoff == BackoffStrategy.EXPONENTIAL:
            delay = self.base_delay * (2 ** attempt)
        else:
            delay = self.base_delay
        return min(delay, self.max_delay)

    def is_retryable(self, error_class: str, message: str = "") -> bool:
        """An error is retryable when its class, or a token in its message, is listed."""
        if error_class in self.retryable_errors:
            return True
        lowered = message.lower()
        return any(token.lower() in lowered for token in self.retryable_errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff": self.backoff.value,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "retryable_errors": list(self.retryable_errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            backoff=BackoffStrategy(data.get("backoff", "exponential")),
            base_delay=int(data.get("base_delay", 1000)),
            max_delay=int(data.get("max_delay", 10000)),
            retryable_errors=list(data.get("retryable_errors", DEFAULT_RETRYABLE_ERRORS)),
        )


class RetryPresets:
    """Common retry policies."""

    CONSERVATIVE = RetryPolicy(
        max_retries=3,
        backoff=BackoffStrategy.EXPONENTIAL,
        base_delay=1000,
        max_delay=10000,
        retryable_errors=["timeout", "rate_limit", "network_error"],
    )

    AGGRESSIVE = RetryPolicy(
        max_retries=5,
        backoff=BackoffStrategy.LINEAR,
        base_delay=500,
        max_delay=5000,
        retryable_errors=["timeout", "rate_limit", "network_error", "server_error"],
    )

    NONE = RetryPolicy(
        max_retries=0,
        backoff=BackoffStrategy.FIXED,
        base_delay=0,
        max_delay=0,
        retryable_errors=[],
    )

    @classmethod
    def get(cls, name: str) -> RetryPolicy:
        presets = {
            "conservative": cls.CONSERVATIVE,
            "aggressive": cls.AGGRESSIVE,
            "none": cls.NONE,
        }
        if name not in presets:
            raise ValueError(f"Unknown retry preset '{name}', expected one of {sorted(presets)}")
        return presets[name]

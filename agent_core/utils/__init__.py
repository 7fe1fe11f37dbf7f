"""
Utilities module - Logging, exceptions and call budgets
"""

from .logger import get_logger, configure_logging
from .exceptions import (
    AgentCoreError,
    ConfigurationError,
    DependencyCycleError,
    UnknownDependencyError,
    ValidationError,
    UnknownToolError,
    PreconditionError,
    ToolExecutionError,
    ToolTimeoutError,
    RetryExhaustedError,
    BudgetExceededError,
    DependencyDeadlockError,
    DelegationDepthExceededError,
    OracleError,
    NoViableOptionError,
    MemoryBackendError,
    is_retryable,
    wrap_exception,
    classify_error,
)
from .rate_limiter import CallBudget, AsyncRateLimiter

__all__ = [
    "get_logger",
    "configure_logging",
    "AgentCoreError",
    "ConfigurationError",
    "DependencyCycleError",
    "UnknownDependencyError",
    "ValidationError",
    "UnknownToolError",
    "PreconditionError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "RetryExhaustedError",
    "BudgetExceededError",
    "DependencyDeadlockError",
    "DelegationDepthExceededError",
    "OracleError",
    "NoViableOptionError",
    "MemoryBackendError",
    "is_retryable",
    "wrap_exception",
    "classify_error",
    "CallBudget",
    "AsyncRateLimiter",
]

"""
Standardized Exception Hierarchy for the Agent Execution Core

This module provides the exception hierarchy used by the scheduler, the
reasoning loop, the tool registry, the memory store and the decision pipeline.

Exception Categories:
- Configuration Errors: invalid settings or an invalid task graph
- Validation Errors: malformed tool calls (never retried)
- Precondition Errors: unmet tool preconditions (recoverable or not)
- Execution Errors: tool failures, timeouts, exhausted retries
- Budget Errors: step and LLM-call budgets (always fatal to the owning task)
- Scheduling Errors: dependency deadlock, delegation depth

Every exception carries a class-level ``retryable`` flag. The scheduler reads
it to decide between re-queueing a task and failing it permanently.

Usage:
    from agent_core.utils.exceptions import (
        AgentCoreError,
        ToolExecutionError,
        BudgetExceededError,
    )

    try:
        result = await registry.execute("read_file", args, context)
    except ToolExecutionError as e:
        if e.retryable:
            ...
"""

from typing import Optional, Any, Dict, List


# ============================================================================
# Base Exception
# ============================================================================

class AgentCoreError(Exception):
    """
    Base exception for all execution core errors.

    All custom exceptions inherit from this class to enable centralized
    error handling, logging and retry classification.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            error_code: Optional error code for categorization
            details: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details
        }

    def __str__(self) -> str:
        """String representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(AgentCoreError):
    """Raised when there's an issue with configuration or the task graph."""

    def __init__(
        self,
        setting_name: str,
        message: str,
        expected_value: Optional[Any] = None,
        actual_value: Optional[Any] = None,
        error_code: str = "CONFIG_ERROR"
    ):
        details: Dict[str, Any] = {"setting_name": setting_name}
        if expected_value is not None:
            details["expected_value"] = str(expected_value)
        if actual_value is not None:
            details["actual_value"] = str(actual_value)

        super().__init__(
            message=f"Configuration error for '{setting_name}': {message}",
            error_code=error_code,
            details=details
        )
        self.setting_name = setting_name


class DependencyCycleError(ConfigurationError):
    """Raised when the depends-on relation of a task set contains a cycle."""

    def __init__(self, cycle: List[str]):
        super().__init__(
            "dependencies",
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            error_code="DEPENDENCY_CYCLE"
        )
        self.details["cycle"] = list(cycle)
        self.cycle = list(cycle)


class UnknownDependencyError(ConfigurationError):
    """Raised when a task depends on itself or on a task that does not exist."""

    def __init__(self, task_id: str, dependency_id: str):
        reason = (
            "task cannot depend on itself" if task_id == dependency_id
            else f"unknown dependency '{dependency_id}'"
        )
        super().__init__(
            "dependencies",
            f"Task '{task_id}': {reason}",
            error_code="UNKNOWN_DEPENDENCY"
        )
        self.details.update({"task_id": task_id, "dependency_id": dependency_id})
        self.task_id = task_id
        self.dependency_id = dependency_id


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(AgentCoreError):
    """Raised when a tool call carries malformed arguments. Never retried."""

    def __init__(
        self,
        tool_name: str,
        message: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: str = "INVALID_ARGS"
    ):
        details: Dict[str, Any] = {"tool_name": tool_name}
        if errors:
            details["errors"] = errors
        super().__init__(
            message=f"Invalid call to '{tool_name}': {message}",
            error_code=error_code,
            details=details
        )
        self.tool_name = tool_name
        self.errors = errors or []


class UnknownToolError(ValidationError):
    """Raised when a tool call names a tool that is not registered."""

    def __init__(self, tool_name: str, available: Optional[List[str]] = None):
        super().__init__(
            tool_name,
            "tool is not registered",
            error_code="UNKNOWN_TOOL"
        )
        if available is not None:
            self.details["available_tools"] = sorted(available)


# ============================================================================
# Precondition Errors
# ============================================================================

class PreconditionError(AgentCoreError):
    """Raised when a tool precondition does not hold and cannot be recovered."""

    def __init__(
        self,
        tool_name: str,
        reason: str,
        recoverable: bool = False,
        recovery_attempted: bool = False
    ):
        super().__init__(
            message=f"Precondition failed for '{tool_name}': {reason}",
            error_code="PRECONDITION_FAILED",
            details={
                "tool_name": tool_name,
                "recoverable": recoverable,
                "recovery_attempted": recovery_attempted
            }
        )
        self.tool_name = tool_name
        self.reason = reason
        self.recoverable = recoverable
        self.recovery_attempted = recovery_attempted


# ============================================================================
# Execution Errors
# ============================================================================

class ToolExecutionError(AgentCoreError):
    """
    Raised when a tool body fails.

    ``error_class`` is the retry classification token matched against a
    RetryPolicy's retryable error classes (e.g. "timeout", "rate_limit").
    """

    retryable = True

    def __init__(
        self,
        tool_name: str,
        message: str,
        error_class: str = "execution_error",
        original_error: Optional[Exception] = None,
        attempts: int = 1,
        error_code: str = "TOOL_EXECUTION_FAILED"
    ):
        details: Dict[str, Any] = {
            "tool_name": tool_name,
            "error_class": error_class,
            "attempts": attempts
        }
        if original_error is not None:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__
        super().__init__(
            message=f"Tool '{tool_name}' failed: {message}",
            error_code=error_code,
            details=details
        )
        self.tool_name = tool_name
        self.error_class = error_class
        self.original_error = original_error
        self.attempts = attempts


class ToolTimeoutError(ToolExecutionError):
    """Raised when a tool execution exceeds its declared timeout."""

    def __init__(self, tool_name: str, timeout_ms: int, attempts: int = 1):
        super().__init__(
            tool_name,
            f"timed out after {timeout_ms}ms",
            error_class="timeout",
            attempts=attempts,
            error_code="TOOL_TIMEOUT"
        )
        self.details["timeout_ms"] = timeout_ms
        self.timeout_ms = timeout_ms


class RetryExhaustedError(ToolExecutionError):
    """Raised once every permitted retry of a tool call has failed."""

    retryable = False

    def __init__(self, tool_name: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(
            tool_name,
            f"giving up after {attempts} attempt(s): {last_error}",
            error_class=getattr(last_error, "error_class", "execution_error"),
            original_error=last_error,
            attempts=attempts,
            error_code="RETRY_EXHAUSTED"
        )


# ============================================================================
# Budget and Scheduling Errors
# ============================================================================

class BudgetExceededError(AgentCoreError):
    """
    Raised when a task exhausts its step budget or the run exhausts the
    shared LLM-call budget. Always fatal to the owning task.
    """

    MAX_SUB_STEPS_REACHED = "MAX_SUB_STEPS_REACHED"
    LLM_BUDGET_EXCEEDED = "LLM_BUDGET_EXCEEDED"

    def __init__(self, error_code: str, limit: int, task_id: Optional[str] = None):
        if error_code == self.MAX_SUB_STEPS_REACHED:
            message = f"Maximum sub-steps ({limit}) reached"
        else:
            message = f"LLM call budget ({limit}) exhausted for this run"
        details: Dict[str, Any] = {"limit": limit}
        if task_id:
            details["task_id"] = task_id
        super().__init__(message=message, error_code=error_code, details=details)
        self.limit = limit
        self.task_id = task_id


class DependencyDeadlockError(AgentCoreError):
    """Raised when no task is running but some remain blocked. Fatal to the run."""

    def __init__(self, blocked_task_ids: List[str]):
        super().__init__(
            message=f"Dependency deadlock: {len(blocked_task_ids)} task(s) can never start",
            error_code="DEPENDENCY_DEADLOCK",
            details={"blocked_task_ids": list(blocked_task_ids)}
        )
        self.blocked_task_ids = list(blocked_task_ids)


class DelegationDepthExceededError(AgentCoreError):
    """Raised when a delegation would exceed the maximum agent depth."""

    def __init__(self, max_depth: int, task_id: Optional[str] = None):
        super().__init__(
            message=(
                f"Error: Maximum agent depth reached ({max_depth}). "
                f"Cannot spawn further sub-agents."
            ),
            error_code="DELEGATION_DEPTH_EXCEEDED",
            details={"max_depth": max_depth, "task_id": task_id}
        )
        self.max_depth = max_depth


# ============================================================================
# Oracle, Decision and Memory Errors
# ============================================================================

class OracleError(AgentCoreError):
    """Raised when the reasoning oracle fails or answers outside the protocol."""

    retryable = True

    def __init__(self, message: str, raw_response: Optional[str] = None):
        details: Dict[str, Any] = {}
        if raw_response is not None:
            details["raw_response"] = raw_response[:500]
        super().__init__(message=message, error_code="ORACLE_ERROR", details=details)
        self.raw_response = raw_response


class NoViableOptionError(AgentCoreError):
    """Raised when every candidate action is excluded by constraint checks."""

    def __init__(self, goal: str, rejected: Optional[Dict[str, List[str]]] = None):
        super().__init__(
            message=f"No viable action for goal: {goal}",
            error_code="NO_VIABLE_OPTION",
            details={"rejected": rejected or {}}
        )
        self.goal = goal


class MemoryBackendError(AgentCoreError):
    """Raised when a durable memory backend cannot serve a request."""

    def __init__(self, operation: str, message: str, original_error: Optional[Exception] = None):
        details: Dict[str, Any] = {"operation": operation}
        if original_error is not None:
            details["original_error"] = str(original_error)
        super().__init__(
            message=f"Memory backend {operation} failed: {message}",
            error_code="MEMORY_BACKEND_ERROR",
            details=details
        )
        self.operation = operation
        self.original_error = original_error


# ============================================================================
# Helpers
# ============================================================================

def is_retryable(error: BaseException) -> bool:
    """Return whether an error may be answered by re-running its task."""
    if isinstance(error, AgentCoreError):
        return error.retryable
    return isinstance(error, (TimeoutError, ConnectionError))


def wrap_exception(
    exc: Exception,
    tool_name: Optional[str] = None,
    error_class: Optional[str] = None
) -> AgentCoreError:
    """
    Wrap a foreign exception into the hierarchy.

    Args:
        exc: Original exception
        tool_name: Tool that raised it, when wrapping a tool failure
        error_class: Override for the retry classification token

    Returns:
        AgentCoreError instance (the original one if already typed)
    """
    if isinstance(exc, AgentCoreError):
        return exc

    if tool_name is not None:
        return ToolExecutionError(
            tool_name,
            str(exc) or type(exc).__name__,
            error_class=error_class or classify_error(exc),
            original_error=exc
        )

    return AgentCoreError(
        message=str(exc) or type(exc).__name__,
        error_code="UNEXPECTED_ERROR",
        details={"original_error_type": type(exc).__name__}
    )


def classify_error(exc: BaseException) -> str:
    """
    Derive a retry classification token from an arbitrary exception.

    Explicit ``error_class`` attributes win; otherwise the exception type and
    message are inspected for the usual transient-failure markers.
    """
    explicit = getattr(exc, "error_class", None)
    if isinstance(explicit, str) and explicit:
        return explicit
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, ConnectionError):
        return "network_error"

    text = f"{type(exc).__name__} {exc}".lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "rate limit" in text or "rate_limit" in text or "429" in text:
        return "rate_limit"
    if "connection" in text or "network" in text:
        return "network_error"
    if "server error" in text or "503" in text or "502" in text or "500" in text:
        return "server_error"
    return "execution_error"

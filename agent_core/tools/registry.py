"""
Tool Registry - Contract enforcement around every side-effecting capability

Execution order of ``execute``:
1. Resolve the tool (unknown names are rejected)
2. Validate arguments against the tool's pydantic model
3. Check every precondition (recoverable ones get one recovery attempt)
4. Run the handler under its timeout, retrying per RetryPolicy
5. Validate the return value (when a return model is declared)
6. Record the declared effects in the caller's rollback journal
7. Always record the execution in a bounded history

Failures surface as typed exceptions (ValidationError, PreconditionError,
ToolExecutionError and subclasses); success returns a ToolResult.
"""

import asyncio
import inspect
import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from agent_core.models.policy import RetryPolicy
from agent_core.models.task import now_ms
from agent_core.tools.contract import (
    AppliedEffect,
    Tool,
    ToolContext,
    ToolExecution,
    ToolResult,
    maybe_await,
)
from agent_core.utils.exceptions import (
    AgentCoreError,
    ConfigurationError,
    PreconditionError,
    RetryExhaustedError,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
    ValidationError,
    wrap_exception,
)
from agent_core.utils.logger import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """
    Name-keyed set of tools plus execution history and an effect journal.

    Usage:
        registry = ToolRegistry(retry_overrides=config.tool_retry_policies)
        registry.register(tool)
        result = await registry.execute("read_file", {"path": "a.txt"}, context)
        print(result.output, result.retries)
    """

    def __init__(
        self,
        retry_overrides: Optional[Dict[str, RetryPolicy]] = None,
        history_size: int = 1000,
    ):
        self._tools: Dict[str, Tool] = {}
        self._retry_overrides: Dict[str, RetryPolicy] = dict(retry_overrides or {})
        self._history: Deque[ToolExecution] = deque(maxlen=history_size)
        self._journal: Dict[str, List[AppliedEffect]] = defaultdict(list)

    # ============================================================================
    # Registration
    # ============================================================================

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ConfigurationError("tools", f"Tool {tool.name} already registered")
        self._tools[tool.name] = tool
        logger.debug(f"[TOOLS] Registered tool: {tool.name}")

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list(self) -> List[Tool]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def policy_for(self, tool: Tool) -> RetryPolicy:
        return self._retry_overrides.get(tool.name, tool.retry)

    # ============================================================================
    # Execution
    # ============================================================================

    def validate(self, name: str, args: Optional[Dict[str, Any]]) -> Any:
        """
        Resolve ``name`` and validate ``args`` against its argument model.

        Raises:
            UnknownToolError: tool is not registered
            ValidationError: arguments do not match the model
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name, available=self.names())
        if args is not None and not isinstance(args, dict):
            raise ValidationError(name, f"arguments must be an object, got {type(args).__name__}")
        try:
            return tool.args_model.model_validate(args or {})
        except PydanticValidationError as e:
            errors = [
                {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                for err in e.errors()
            ]
            summary = "; ".join(f"{err['loc'] or '<root>'}: {err['msg']}" for err in errors)
            raise ValidationError(name, summary, errors=errors) from e

    async def execute(
        self,
        name: str,
        args: Optional[Dict[str, Any]] = None,
        context: Optional[ToolContext] = None,
    ) -> ToolResult:
        """
        Execute a tool under its contract.

        Args:
            name: Registered tool name
            args: Raw arguments (validated before use)
            context: Execution context (a default one when omitted)

        Returns:
            ToolResult with the handler output and retry bookkeeping

        Raises:
            UnknownToolError, ValidationError: before any precondition check
            PreconditionError: unmet precondition, no attempt was made
            ToolExecutionError: handler failure not covered by the retry policy
            ToolTimeoutError: handler exceeded its timeout (and was not retried)
            RetryExhaustedError: retryable failures outlasted the retry policy
        """
        context = context or ToolContext()
        started_at = now_ms()
        started = time.monotonic()
        attempts = 0
        retries = 0
        raw_args = dict(args or {})

        try:
            validated = self.validate(name, raw_args)
            tool = self._tools[name]
            await self._check_preconditions(tool, validated, context)
            output, attempts, retries = await self._run_with_retry(tool, validated, context)
            output = self._validate_result(tool, output, attempts)
        except AgentCoreError as e:
            self._record(ToolExecution(
                tool_name=name,
                args=raw_args,
                task_id=context.task_id,
                success=False,
                started_at=started_at,
                duration_ms=int((time.monotonic() - started) * 1000),
                attempts=max(attempts, getattr(e, "attempts", 0)),
                retries=max(retries, getattr(e, "attempts", 1) - 1),
                error=e.message,
                error_code=e.error_code,
            ))
            raise

        self._apply_effects(tool, validated, output, context)
        duration_ms = int((time.monotonic() - started) * 1000)
        self._record(ToolExecution(
            tool_name=name,
            args=raw_args,
            task_id=context.task_id,
            success=True,
            started_at=started_at,
            duration_ms=duration_ms,
            attempts=attempts,
            retries=retries,
            output=output,
        ))
        return ToolResult(output=output, duration_ms=duration_ms, attempts=attempts, retries=retries)

    async def _check_preconditions(self, tool: Tool, args: Any, context: ToolContext) -> None:
        if tool.allowed_roles and context.agent_role not in tool.allowed_roles:
            raise PreconditionError(
                tool.name,
                f"role '{context.agent_role}' is not allowed (allowed: {', '.join(tool.allowed_roles)})",
            )

        for precondition in tool.preconditions:
            if await self._holds(tool, precondition.check, args, context):
                continue

            if not precondition.recoverable:
                logger.warning(f"[TOOLS] {tool.name}: precondition failed: {precondition.message}")
                raise PreconditionError(tool.name, precondition.message, recoverable=False)

            recovered = False
            if precondition.recover is not None:
                logger.info(f"[TOOLS] {tool.name}: attempting recovery for '{precondition.message}'")
                try:
                    await maybe_await(precondition.recover, context, args)
                except Exception as e:
                    logger.warning(f"[TOOLS] {tool.name}: recovery hook raised: {e}")
                else:
                    recovered = await self._holds(tool, precondition.check, args, context)

            if not recovered:
                raise PreconditionError(
                    tool.name,
                    precondition.message,
                    recoverable=True,
                    recovery_attempted=precondition.recover is not None,
                )

    async def _holds(self, tool: Tool, check: Any, args: Any, context: ToolContext) -> bool:
        try:
            return bool(await maybe_await(check, context, args))
        except Exception as e:
            logger.warning(f"[TOOLS] {tool.name}: precondition check raised: {e}")
            return False

    @staticmethod
    async def _invoke(tool: Tool, args: Any, context: ToolContext) -> Any:
        """Run the handler; synchronous handlers run in a worker thread so the timeout applies."""
        if inspect.iscoroutinefunction(tool.handler):
            return await tool.handler(args, context)
        result = await asyncio.to_thread(tool.handler, args, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run_with_retry(self, tool: Tool, args: Any, context: ToolContext):
        policy = self.policy_for(tool)
        timeout = tool.timeout_ms / 1000
        attempt = 0

        while True:
            try:
                output = await asyncio.wait_for(self._invoke(tool, args, context), timeout)
                return output, attempt + 1, attempt
            except asyncio.TimeoutError:
                error: ToolExecutionError = ToolTimeoutError(tool.name, tool.timeout_ms, attempts=attempt + 1)
            except ToolExecutionError as e:
                error = e
            except AgentCoreError:
                raise
            except Exception as e:
                error = wrap_exception(e, tool_name=tool.name)  # type: ignore[assignment]

            message = str(error.original_error or error.message)
            if not policy.is_retryable(error.error_class, message):
                logger.warning(f"[TOOLS] {tool.name} failed ({error.error_class}), not retryable: {message}")
                error.attempts = attempt + 1
                error.details["attempts"] = attempt + 1
                raise error

            if attempt >= policy.max_retries:
                if attempt == 0:
                    raise error
                logger.error(f"[TOOLS] {tool.name} failed after {attempt + 1} attempts: {message}")
                raise RetryExhaustedError(tool.name, attempt + 1, last_error=error)

            delay_ms = policy.delay_ms(attempt)
            logger.info(
                f"[TOOLS] {tool.name} failed ({error.error_class}), retry "
                f"{attempt + 1}/{policy.max_retries} in {delay_ms}ms"
            )
            await asyncio.sleep(delay_ms / 1000)
            attempt += 1

    def _validate_result(self, tool: Tool, output: Any, attempts: int) -> Any:
        if tool.returns_model is None:
            return output
        try:
            tool.returns_model.model_validate(output)
        except PydanticValidationError as e:
            raise ToolExecutionError(
                tool.name,
                f"returned a value that does not match its declared shape: {e.error_count()} error(s)",
                error_class="invalid_result",
                original_error=e,
                attempts=attempts,
            ) from e
        return output

    # ============================================================================
    # Effects and Rollback
    # ============================================================================

    def _apply_effects(self, tool: Tool, args: Any, output: Any, context: ToolContext) -> None:
        if not tool.effects:
            return
        journal_key = context.task_id or context.session_id
        for effect in tool.effects:
            self._journal[journal_key].append(AppliedEffect(
                tool_name=tool.name,
                effect=effect,
                args=args,
                result=output,
                context=context,
            ))
            logger.debug(f"[TOOLS] {tool.name}: {effect.type.value} {effect.target}")

    def applied_effects(self, journal_key: str) -> List[AppliedEffect]:
        return list(self._journal.get(journal_key, []))

    async def rollback(self, journal_key: str) -> int:
        """
        Undo the reversible effects recorded under ``journal_key`` (a task id
        or session id) in reverse application order.

        Rollback is best-effort: failures are logged and skipped.

        Returns:
            Number of effects rolled back successfully
        """
        applied = self._journal.pop(journal_key, [])
        rolled_back = 0
        for record in reversed(applied):
            effect = record.effect
            if not effect.reversible or effect.rollback is None:
                continue
            try:
                await maybe_await(effect.rollback, record)
                rolled_back += 1
                logger.info(f"[TOOLS] Rolled back {record.tool_name}: {effect.type.value} {effect.target}")
            except Exception as e:
                logger.error(
                    f"[TOOLS] Rollback of {record.tool_name} ({effect.type.value} {effect.target}) failed: {e}"
                )
        return rolled_back

    def forget(self, journal_key: str) -> None:
        """Drop the journal of a task that completed successfully."""
        self._journal.pop(journal_key, None)

    # ============================================================================
    # History
    # ============================================================================

    def _record(self, execution: ToolExecution) -> None:
        self._history.append(execution)

    def get_execution_history(self, tool_name: Optional[str] = None) -> List[ToolExecution]:
        if tool_name is None:
            return list(self._history)
        return [record for record in self._history if record.tool_name == tool_name]

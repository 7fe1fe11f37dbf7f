"""
Tests for tool contracts and the tool registry.
"""

import asyncio
import time
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel

from agent_core.config import MemoryConfig
from agent_core.memory import InMemoryBackend, MemoryStore
from agent_core.models import BackoffStrategy, EffectType, RetryPolicy, RetryPresets
from agent_core.tools import (
    Effect,
    Precondition,
    PreconditionFactory,
    Tool,
    ToolContext,
    ToolRegistry,
    register_memory_tools,
)
from agent_core.models.enums import PreconditionType
from agent_core.utils.exceptions import (
    ConfigurationError,
    PreconditionError,
    RetryExhaustedError,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
    ValidationError,
)


class PathArgs(BaseModel):
    path: str


class CountResult(BaseModel):
    count: int


def run(coro):
    return asyncio.run(coro)


class TestRegistration:
    """register / unregister / lookups"""

    def setup_method(self):
        self.registry = ToolRegistry()
        self.tool = Tool(name="echo", description="Echo arguments", handler=lambda args, ctx: args.model_dump())

    def test_register_and_lookup(self):
        self.registry.register(self.tool)

        assert "echo" in self.registry
        assert self.registry.get("echo") is self.tool
        assert self.registry.names() == ["echo"]

    def test_duplicate_rejected(self):
        self.registry.register(self.tool)
        with pytest.raises(ConfigurationError):
            self.registry.register(self.tool)

    def test_unregister(self):
        self.registry.register(self.tool)
        assert self.registry.unregister("echo") is True
        assert self.registry.unregister("echo") is False

    def test_retry_override_wins(self):
        registry = ToolRegistry(retry_overrides={"echo": RetryPresets.NONE})
        registry.register(self.tool)

        assert registry.policy_for(self.tool) is RetryPresets.NONE

    def test_describe_includes_schema(self):
        tool = Tool(name="read", description="Read", handler=lambda a, c: None, args_model=PathArgs)
        description = tool.describe()

        assert description["name"] == "read"
        assert "path" in description["parameters"]["properties"]


class TestValidationAndPreconditions:
    """Argument validation, preconditions, roles"""

    def setup_method(self):
        self.registry = ToolRegistry()
        self.handler = MagicMock(return_value="ok")

    def test_unknown_tool(self):
        with pytest.raises(UnknownToolError):
            run(self.registry.execute("missing", {}))

    def test_validation_precedes_preconditions(self):
        check = MagicMock(return_value=True)
        self.registry.register(Tool(
            name="read",
            description="Read",
            handler=self.handler,
            args_model=PathArgs,
            preconditions=[Precondition(type=PreconditionType.DATA, check=check, message="never")],
        ))

        with pytest.raises(ValidationError) as exc_info:
            run(self.registry.execute("read", {"path": 42, "extra": True}))

        assert exc_info.value.errors
        check.assert_not_called()
        self.handler.assert_not_called()

    def test_missing_permission(self):
        self.registry.register(Tool(
            name="write",
            description="Write",
            handler=self.handler,
            preconditions=[PreconditionFactory.has_permission("fs:write")],
        ))

        with pytest.raises(PreconditionError) as exc_info:
            run(self.registry.execute("write", {}, ToolContext(permissions={"fs:read"})))

        assert exc_info.value.recoverable is False
        self.handler.assert_not_called()
        history = self.registry.get_execution_history("write")
        assert len(history) == 1
        assert history[0].success is False
        assert history[0].error_code == "PRECONDITION_FAILED"

    def test_recoverable_precondition_recovers(self):
        def recover(context, args):
            context.resources["ready"] = True

        self.registry.register(Tool(
            name="deploy",
            description="Deploy",
            handler=self.handler,
            preconditions=[PreconditionFactory.state_equals("ready", True, recover=recover)],
        ))

        result = run(self.registry.execute("deploy", {}, ToolContext()))

        assert result.output == "ok"
        self.handler.assert_called_once()

    def test_recoverable_precondition_without_hook(self):
        self.registry.register(Tool(
            name="deploy",
            description="Deploy",
            handler=self.handler,
            preconditions=[PreconditionFactory.state_equals("ready", True)],
        ))

        with pytest.raises(PreconditionError) as exc_info:
            run(self.registry.execute("deploy", {}))

        assert exc_info.value.recoverable is True
        assert exc_info.value.recovery_attempted is False

    def test_role_restriction(self):
        self.registry.register(Tool(
            name="admin_only",
            description="Admin",
            handler=self.handler,
            allowed_roles=["admin"],
        ))

        with pytest.raises(PreconditionError):
            run(self.registry.execute("admin_only", {}, ToolContext(agent_role="worker")))

        result = run(self.registry.execute("admin_only", {}, ToolContext(agent_role="admin")))
        assert result.output == "ok"


class TestRetries:
    """Timeouts and retry policies"""

    def setup_method(self):
        self.registry = ToolRegistry()
        self.calls = 0

    def test_fixed_retry_then_success(self):
        def flaky(args, context):
            self.calls += 1
            if self.calls <= 2:
                raise ConnectionError("connection reset")
            return "data"

        self.registry.register(Tool(
            name="fetch",
            description="Fetch",
            handler=flaky,
            retry=RetryPolicy(
                max_retries=2,
                backoff=BackoffStrategy.FIXED,
                base_delay=10,
                max_delay=10,
                retryable_errors=["network_error"],
            ),
        ))

        result = run(self.registry.execute("fetch", {}))

        assert result.output == "data"
        assert result.attempts == 3
        assert result.retries == 2

    def test_retries_exhausted(self):
        def always_down(args, context):
            self.calls += 1
            raise ConnectionError("connection refused")

        self.registry.register(Tool(
            name="fetch",
            description="Fetch",
            handler=always_down,
            retry=RetryPolicy(max_retries=1, backoff=BackoffStrategy.FIXED, base_delay=1, max_delay=1),
        ))

        with pytest.raises(RetryExhaustedError) as exc_info:
            run(self.registry.execute("fetch", {}))

        assert self.calls == 2
        assert exc_info.value.attempts == 2
        assert exc_info.value.retryable is False

    def test_non_retryable_error_single_attempt(self):
        def broken(args, context):
            self.calls += 1
            raise ValueError("bad input file")

        self.registry.register(Tool(name="parse", description="Parse", handler=broken))

        with pytest.raises(ToolExecutionError) as exc_info:
            run(self.registry.execute("parse", {}))

        assert self.calls == 1
        assert exc_info.value.error_class == "execution_error"
        assert not isinstance(exc_info.value, RetryExhaustedError)

    def test_timeout(self):
        async def slow(args, context):
            await asyncio.sleep(1)

        self.registry.register(Tool(
            name="slow",
            description="Slow",
            handler=slow,
            timeout_ms=20,
            retry=RetryPresets.NONE,
        ))

        with pytest.raises(ToolTimeoutError):
            run(self.registry.execute("slow", {}))

    def test_timeout_applies_to_blocking_sync_handler(self):
        def blocking(args, context):
            time.sleep(0.3)
            return "finished"

        self.registry.register(Tool(
            name="blocking",
            description="Blocks the calling thread",
            handler=blocking,
            timeout_ms=20,
            retry=RetryPresets.NONE,
        ))

        started = time.monotonic()
        with pytest.raises(ToolTimeoutError):
            run(self.registry.execute("blocking", {}))

        # asyncio.run waits for the worker thread on shutdown, so only the
        # timeout error itself is checked here
        assert time.monotonic() - started < 1.0

    def test_sync_handler_does_not_block_event_loop(self):
        def blocking(args, context):
            time.sleep(0.1)
            return "done"

        self.registry.register(Tool(name="blocking", description="Blocks", handler=blocking))
        ticks = []

        async def ticker():
            for _ in range(5):
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        async def main():
            tick_task = asyncio.ensure_future(ticker())
            result = await self.registry.execute("blocking", {})
            await tick_task
            return result

        result = run(main())

        assert result.output == "done"
        assert len(ticks) == 5
        assert ticks[-1] - ticks[0] < 0.09

    def test_result_shape_checked(self):
        self.registry.register(Tool(
            name="count",
            description="Count",
            handler=lambda args, ctx: {"count": "many"},
            returns_model=CountResult,
        ))

        with pytest.raises(ToolExecutionError) as exc_info:
            run(self.registry.execute("count", {}))

        assert exc_info.value.error_class == "invalid_result"


class TestEffectsAndHistory:
    """Effect journal, rollback and bounded history"""

    def setup_method(self):
        self.registry = ToolRegistry(history_size=2)
        self.undone = []

    def _reversible_tool(self, name):
        return Tool(
            name=name,
            description=name,
            handler=lambda args, ctx: name,
            effects=[Effect(
                type=EffectType.CREATE,
                target=name,
                reversible=True,
                rollback=lambda applied: self.undone.append(applied.tool_name),
            )],
        )

    def test_rollback_in_reverse_order(self):
        self.registry.register(self._reversible_tool("first"))
        self.registry.register(self._reversible_tool("second"))
        context = ToolContext(task_id="t1")

        run(self.registry.execute("first", {}, context))
        run(self.registry.execute("second", {}, context))
        assert len(self.registry.applied_effects("t1")) == 2

        assert run(self.registry.rollback("t1")) == 2
        assert self.undone == ["second", "first"]
        assert self.registry.applied_effects("t1") == []

    def test_failed_rollback_is_skipped(self):
        def explode(applied):
            raise RuntimeError("cannot undo")

        self.registry.register(self._reversible_tool("first"))
        self.registry.register(Tool(
            name="fragile",
            description="fragile",
            handler=lambda args, ctx: None,
            effects=[Effect(type=EffectType.UPDATE, target="x", reversible=True, rollback=explode)],
        ))
        context = ToolContext(task_id="t2")
        run(self.registry.execute("first", {}, context))
        run(self.registry.execute("fragile", {}, context))

        assert run(self.registry.rollback("t2")) == 1
        assert self.undone == ["first"]

    def test_forget_drops_journal(self):
        self.registry.register(self._reversible_tool("first"))
        run(self.registry.execute("first", {}, ToolContext(task_id="t3")))

        self.registry.forget("t3")

        assert run(self.registry.rollback("t3")) == 0

    def test_history_is_bounded(self):
        self.registry.register(Tool(name="noop", description="noop", handler=lambda a, c: None))
        for _ in range(3):
            run(self.registry.execute("noop", {}))

        history = self.registry.get_execution_history()
        assert len(history) == 2
        assert all(record.success for record in history)


class TestMemoryTools:
    """Built-in memory tools"""

    def setup_method(self):
        self.store = MemoryStore(MemoryConfig(), backend=InMemoryBackend())
        self.registry = ToolRegistry()
        register_memory_tools(self.registry, self.store)

    def test_registered(self):
        assert {"memory_save", "memory_retrieve", "memory_search", "memory_delete"} <= set(self.registry.names())

    def test_save_retrieve_search(self):
        run(self.registry.execute("memory_save", {"key": "db", "value": {"host": "localhost"}}))

        retrieved = run(self.registry.execute("memory_retrieve", {"key": "db"}))
        found = run(self.registry.execute("memory_search", {"query": "localhost"}))

        assert retrieved.output == {"host": "localhost"}
        assert found.output[0]["key"] == "db"

    def test_save_is_rolled_back(self):
        context = ToolContext(task_id="t1")
        run(self.registry.execute("memory_save", {"key": "k", "value": 1, "scope": "working"}, context))

        run(self.registry.rollback("t1"))

        assert self.store.read("working", "k") is None

    def test_rollback_restores_previous_value(self):
        self.store.write("longterm", "k", "old")
        context = ToolContext(task_id="t1")
        run(self.registry.execute("memory_save", {"key": "k", "value": "new"}, context))

        run(self.registry.rollback("t1"))

        assert self.store.read("longterm", "k") == "old"

    def test_delete(self):
        self.store.write("longterm", "k", "v")
        result = run(self.registry.execute("memory_delete", {"key": "k"}))

        assert "Deleted" in result.output
        assert self.store.read("longterm", "k") is None

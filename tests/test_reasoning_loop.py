"""
Tests for the per-task reasoning loop, driven through the scheduler with a
scripted oracle.
"""

import asyncio
from unittest.mock import MagicMock

from pydantic import BaseModel

from agent_core.config import AgentConfig, MemoryConfig
from agent_core.core import EventBus, TaskScheduler
from agent_core.memory import InMemoryBackend, MemoryStore
from agent_core.models import (
    EffectType,
    FinishSignal,
    LogStatus,
    NextStep,
    TaskStatus,
    ToolCall,
    new_task,
)
from agent_core.models.messages import AGENT_SPAWNED, ARTIFACT_CREATED
from agent_core.tools import ARTIFACT_TOOL, DELEGATE_TOOL, Effect, RetryPresets, Tool, ToolRegistry
from agent_core.utils.exceptions import OracleError


class EchoArgs(BaseModel):
    text: str


class ScriptedOracle:
    """
    Replays a list of responses per task title. Items may be responses,
    exceptions to raise, or callables ``(task, sub_steps, artifacts)``.
    Unscripted consultations finish the task.
    """

    def __init__(self, scripts=None, default=None, delay=0.0):
        self.scripts = {title: list(items) for title, items in (scripts or {}).items()}
        self.default = default
        self.delay = delay
        self.calls = []

    async def next_step(self, task, sub_steps, artifacts):
        self.calls.append(task.title)
        if self.delay:
            await asyncio.sleep(self.delay)
        script = self.scripts.get(task.title)
        item = script.pop(0) if script else self.default
        if item is None:
            return FinishSignal(f"{task.title} done")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(task, sub_steps, artifacts)
        return item


def echo_step(text, thought="echo it"):
    return NextStep(thought=thought, tool_call=ToolCall("echo", {"text": text}))


def make_registry():
    registry = ToolRegistry()
    registry.register(Tool(
        name="echo",
        description="Echo text back",
        handler=lambda args, ctx: args.text,
        args_model=EchoArgs,
        retry=RetryPresets.NONE,
    ))
    return registry


def run_tasks(scheduler, tasks):
    outcome = asyncio.run(scheduler.run(tasks))
    return outcome, {task.id: task for task in outcome.tasks}


class TestToolSteps:
    """Thought/act/observe iterations"""

    def setup_method(self):
        self.registry = make_registry()
        self.config = AgentConfig(task_retry_delay=0.0)

    def _scheduler(self, oracle, **kwargs):
        return TaskScheduler(self.config, self.registry, oracle=oracle, **kwargs)

    def test_tool_then_finish(self):
        oracle = ScriptedOracle({"Greet": [echo_step("hello"), FinishSignal("said hello")]})
        outcome, tasks = run_tasks(self._scheduler(oracle), [new_task("Greet", task_id="t1")])

        task = tasks["t1"]
        assert outcome.success is True
        assert task.status == TaskStatus.DONE
        assert task.result == "said hello"
        assert [step.observation for step in task.sub_steps] == ["hello"]
        messages = [entry.message for entry in task.logs]
        assert "[Executor] Starting task: Greet" in messages
        assert "[Executor] Thought: echo it" in messages
        assert task.logs[-1].status == LogStatus.SUCCESS
        assert task.logs[-1].message == "[Executor] Task complete."

    def test_invalid_arguments_become_observation(self):
        bad = NextStep(thought="oops", tool_call=ToolCall("echo", {"wrong": 1}))
        oracle = ScriptedOracle({"Greet": [bad, FinishSignal("recovered")]})
        outcome, tasks = run_tasks(self._scheduler(oracle), [new_task("Greet", task_id="t1")])

        observation = tasks["t1"].sub_steps[0].observation
        assert observation.startswith("Error executing tool 'echo'")
        assert tasks["t1"].status == TaskStatus.DONE

    def test_unknown_tool_becomes_observation(self):
        missing = NextStep(thought="try", tool_call=ToolCall("does_not_exist", {}))
        oracle = ScriptedOracle({"Greet": [missing, FinishSignal("ok")]})
        outcome, tasks = run_tasks(self._scheduler(oracle), [new_task("Greet", task_id="t1")])

        assert "does_not_exist" in tasks["t1"].sub_steps[0].observation
        assert outcome.success is True

    def test_step_budget(self):
        config = AgentConfig(task_retry_delay=0.0, max_sub_steps_per_task=2)
        oracle = ScriptedOracle(default=echo_step("again"))
        scheduler = TaskScheduler(config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Loop forever", task_id="t1")])

        task = tasks["t1"]
        assert task.status == TaskStatus.ERROR
        assert task.error["error_code"] == "MAX_SUB_STEPS_REACHED"
        assert len(task.sub_steps) == 2
        assert len(oracle.calls) == 2
        assert outcome.success is False

    def test_approval_denied(self):
        handler = MagicMock(return_value="deployed")
        self.registry.register(Tool(name="deploy", description="Deploy", handler=handler, requires_approval=True))
        step = NextStep(thought="ship it", tool_call=ToolCall("deploy", {}))
        oracle = ScriptedOracle({"Release": [step, FinishSignal("not shipped")]})
        scheduler = self._scheduler(oracle, approval_gate=lambda task, call: False)

        outcome, tasks = run_tasks(scheduler, [new_task("Release", task_id="t1")])

        assert tasks["t1"].sub_steps[0].observation == "Error: approval denied for tool 'deploy'"
        handler.assert_not_called()

    def test_approval_granted(self):
        self.registry.register(Tool(name="deploy", description="Deploy", handler=lambda a, c: "deployed",
                                    requires_approval=True))
        step = NextStep(thought="ship it", tool_call=ToolCall("deploy", {}))
        oracle = ScriptedOracle({"Release": [step, FinishSignal("shipped")]})

        async def approve(task, call):
            return call.name == "deploy"

        outcome, tasks = run_tasks(self._scheduler(oracle, approval_gate=approve), [new_task("Release", task_id="t1")])

        assert tasks["t1"].sub_steps[0].observation == "deployed"


class TestFailures:
    """Retries of oracle and tool failures"""

    def setup_method(self):
        self.registry = make_registry()
        self.config = AgentConfig(task_retry_delay=0.0)
        self.attempts = 0

    def test_oracle_error_retried(self):
        oracle = ScriptedOracle({"Plan": [OracleError("garbled"), FinishSignal("planned")]})
        scheduler = TaskScheduler(self.config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Plan", task_id="t1", max_retries=1)])

        task = tasks["t1"]
        assert task.status == TaskStatus.DONE
        assert task.retry_count == 1
        assert any(entry.status == LogStatus.WARN and "Retrying (1/1)" in entry.message for entry in task.logs)

    def test_oracle_error_without_retries(self):
        oracle = ScriptedOracle({"Plan": [OracleError("garbled")]})
        scheduler = TaskScheduler(self.config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Plan", task_id="t1", max_retries=0)])

        assert tasks["t1"].status == TaskStatus.ERROR
        assert tasks["t1"].error["error_code"] == "ORACLE_ERROR"

    def test_oracle_timeout(self):
        config = AgentConfig(task_retry_delay=0.0, oracle_timeout=0.05)
        oracle = ScriptedOracle(delay=1.0)
        scheduler = TaskScheduler(config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Slow", task_id="t1", max_retries=0)])

        assert tasks["t1"].status == TaskStatus.ERROR
        assert "did not respond" in tasks["t1"].error["message"]

    def test_tool_failure_retried_within_task(self):
        def flaky(args, context):
            self.attempts += 1
            if self.attempts == 1:
                raise ValueError("disk busy")
            return "written"

        self.registry.register(Tool(name="save", description="Save", handler=flaky, retry=RetryPresets.NONE))
        step = NextStep(thought="save", tool_call=ToolCall("save", {}))
        oracle = ScriptedOracle({"Persist": [step, FinishSignal("saved")]})
        scheduler = TaskScheduler(self.config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Persist", task_id="t1", max_retries=2)])

        task = tasks["t1"]
        assert task.status == TaskStatus.DONE
        assert task.retry_count == 1
        assert self.attempts == 2
        assert [step.observation for step in task.sub_steps] == ["written"]

    def test_exhausted_tool_failure_rolls_back(self):
        undone = []
        self.registry.register(Tool(
            name="touch",
            description="Create a marker",
            handler=lambda args, ctx: "touched",
            effects=[Effect(type=EffectType.CREATE, target="marker", reversible=True,
                            rollback=lambda applied: undone.append(applied.tool_name))],
        ))

        def broken(args, context):
            raise ValueError("permission denied")

        self.registry.register(Tool(name="broken", description="Broken", handler=broken, retry=RetryPresets.NONE))
        oracle = ScriptedOracle({"Work": [
            NextStep(thought="mark", tool_call=ToolCall("touch", {})),
            NextStep(thought="break", tool_call=ToolCall("broken", {})),
        ]})
        scheduler = TaskScheduler(self.config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Work", task_id="t1", max_retries=0)])

        task = tasks["t1"]
        assert task.status == TaskStatus.ERROR
        assert task.error["error_code"] == "RETRY_EXHAUSTED"
        assert task.sub_steps[-1].observation.startswith("Error executing tool 'broken'")
        assert undone == ["touch"]


class TestDelegationAndArtifacts:
    """Loop-handled tool calls"""

    def setup_method(self):
        self.registry = make_registry()
        self.memory = MemoryStore(MemoryConfig(), backend=InMemoryBackend())
        self.bus = EventBus(history_max_size=5000)

    def test_delegation_resumes_parent_with_child_result(self):
        delegate = NextStep(thought="need research", tool_call=ToolCall(DELEGATE_TOOL, {
            "agent_name": "Researcher",
            "agent_instructions": "Be thorough",
            "task_description": "Collect sources",
        }))
        oracle = ScriptedOracle({
            "Write paper": [delegate, lambda task, steps, artifacts: FinishSignal(steps[-1].observation)],
            "[Level 1] Researcher": [FinishSignal("three sources")],
        })
        scheduler = TaskScheduler(AgentConfig(task_retry_delay=0.0), self.registry, self.memory, oracle, bus=self.bus)

        outcome, tasks = run_tasks(scheduler, [new_task("Write paper", task_id="p1")])

        assert outcome.success is True
        child = next(task for task in tasks.values() if task.delegator_task_id == "p1")
        assert child.title == "[Level 1] Researcher"
        assert child.details == "Collect sources"
        assert child.agent.instructions == "Be thorough"
        parent = tasks["p1"]
        assert parent.status == TaskStatus.DONE
        assert "Result from sub-agent 'Researcher'" in parent.sub_steps[0].observation
        assert "three sources" in parent.result
        spawned = self.bus.events([AGENT_SPAWNED])
        assert [event["payload"]["name"] for event in spawned] == ["Researcher"]

    def test_delegation_depth_limit(self):
        def always_delegate(task, steps, artifacts):
            if not steps:
                return NextStep(thought="go deeper", tool_call=ToolCall(DELEGATE_TOOL, {
                    "agent_name": f"Agent{len(task.title)}",
                    "task_description": "Go one level deeper",
                }))
            return FinishSignal(steps[-1].observation)

        oracle = ScriptedOracle(default=always_delegate)
        config = AgentConfig(task_retry_delay=0.0, max_agent_depth=3)
        scheduler = TaskScheduler(config, self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Root", task_id="root")])

        assert len(tasks) == 4
        deepest = [task for task in tasks.values() if task.title.startswith("[Level 3]")]
        assert len(deepest) == 1
        assert "maximum agent depth" in deepest[0].sub_steps[0].observation.lower()
        assert outcome.success is True

    def test_artifact_published_and_stored(self):
        step = NextStep(thought="publish", tool_call=ToolCall(ARTIFACT_TOOL, {
            "title": "Final Report",
            "type": "markdown",
            "content": "# Report",
        }))
        oracle = ScriptedOracle({"Report": [step, FinishSignal("published")]})
        scheduler = TaskScheduler(AgentConfig(), self.registry, self.memory, oracle, bus=self.bus)

        outcome, tasks = run_tasks(scheduler, [new_task("Report", task_id="t1")])

        assert [artifact.title for artifact in outcome.artifacts] == ["Final Report"]
        assert tasks["t1"].sub_steps[0].observation == "Artifact 'Final Report' (markdown) created."
        assert self.memory.read("longterm", "artifact_t1_final_report")["content"] == "# Report"
        assert self.bus.events([ARTIFACT_CREATED])[0]["payload"]["taskId"] == "t1"

    def test_invalid_artifact_becomes_observation(self):
        step = NextStep(thought="publish", tool_call=ToolCall(ARTIFACT_TOOL, {"title": "x"}))
        oracle = ScriptedOracle({"Report": [step, FinishSignal("gave up")]})
        scheduler = TaskScheduler(AgentConfig(), self.registry, oracle=oracle)

        outcome, tasks = run_tasks(scheduler, [new_task("Report", task_id="t1")])

        assert tasks["t1"].sub_steps[0].observation.startswith(f"Error executing tool '{ARTIFACT_TOOL}'")
        assert outcome.artifacts == []

    def test_steps_recorded_in_memory(self):
        oracle = ScriptedOracle({"Greet": [echo_step("hi"), FinishSignal("done")]})
        scheduler = TaskScheduler(AgentConfig(), self.registry, self.memory, oracle)

        run_tasks(scheduler, [new_task("Greet", task_id="t1")])

        record = self.memory.read("episodic", "action_t1_0")
        assert record["type"] == "action"
        assert record["tool"] == "echo"
        assert record["success"] is True
        assert self.memory.keys("working") == []


class TestCancellation:
    """Cooperative cancellation of a running loop"""

    def test_cancel_during_consultation(self):
        registry = make_registry()
        holder = {}

        def cancel_self(task, steps, artifacts):
            holder["cancelled"] = holder["scheduler"].cancel(task.id)
            return echo_step("never runs")

        oracle = ScriptedOracle({"Doomed": [cancel_self]})
        scheduler = TaskScheduler(AgentConfig(), registry, oracle=oracle)
        holder["scheduler"] = scheduler

        outcome, tasks = run_tasks(scheduler, [new_task("Doomed", task_id="t1")])

        assert holder["cancelled"] == ["t1"]
        assert tasks["t1"].status == TaskStatus.CANCELLED
        assert tasks["t1"].sub_steps == []
        assert registry.get_execution_history() == []

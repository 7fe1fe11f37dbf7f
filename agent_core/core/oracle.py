"""
Reasoning oracles - Next-step proposals for the reasoning loop

Protocol (one JSON object per consultation):
    {"thought": "...", "toolCall": {"name": "...", "args": {...}}}
or
    {"isFinished": true, "finalThought": "..."}

Two implementations:
- LLMOracle: any LangChain chat model (Anthropic by default)
- DecisionPipelineOracle: the DecisionPipeline, no language model involved
"""

import json
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from agent_core.config.agent_config import LLMConfig, LLMProvider
from agent_core.decision.pipeline import DecisionPipeline
from agent_core.models.decision import FinishSignal, Goal, NextStep, OracleResponse
from agent_core.models.task import Artifact, SubStep, Task, ToolCall
from agent_core.tools.builtin import ARTIFACT_TOOL, DELEGATE_TOOL, ArtifactArgs, DelegateArgs
from agent_core.tools.registry import ToolRegistry
from agent_core.utils.exceptions import ConfigurationError, NoViableOptionError, OracleError
from agent_core.utils.logger import get_logger
from agent_core.utils.rate_limiter import AsyncRateLimiter

logger = get_logger(__name__)

# Observations that start with this prefix describe a failed step.
ERROR_OBSERVATION_PREFIX = "Error"

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class ReasoningOracle(Protocol):
    """Anything that proposes the next step of a task."""

    async def next_step(
        self,
        task: Task,
        sub_steps: Sequence[SubStep],
        artifacts: Sequence[Artifact],
    ) -> OracleResponse:
        ...


def parse_oracle_response(text: str) -> OracleResponse:
    """
    Parse an oracle reply into a FinishSignal or NextStep.

    Accepts bare JSON, JSON inside a markdown code fence, or JSON surrounded
    by prose.

    Raises:
        OracleError: reply does not contain a valid protocol object
    """
    candidate = text.strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end <= start:
        raise OracleError("Oracle response contains no JSON object", raw_response=text)

    try:
        data = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError as e:
        raise OracleError(f"Oracle response is not valid JSON: {e}", raw_response=text) from e
    if not isinstance(data, dict):
        raise OracleError("Oracle response must be a JSON object", raw_response=text)

    if data.get("isFinished") is True:
        return FinishSignal(final_thought=str(data.get("finalThought", "")))

    tool_call = data.get("toolCall")
    if not isinstance(tool_call, dict) or not isinstance(tool_call.get("name"), str) or not tool_call["name"]:
        raise OracleError("Oracle response has neither isFinished nor a valid toolCall", raw_response=text)
    args = tool_call.get("args") or {}
    if not isinstance(args, dict):
        raise OracleError("toolCall.args must be an object", raw_response=text)

    return NextStep(thought=str(data.get("thought", "")), tool_call=ToolCall(name=tool_call["name"], args=args))


# ============================================================================
# LLM Oracle
# ============================================================================

def build_chat_model(llm_config: LLMConfig) -> Any:
    """
    Initialize a LangChain chat model for the configured provider.

    Returns:
        Chat model exposing ``ainvoke(messages)``
    """
    provider = llm_config.provider.lower()

    if provider == LLMProvider.ANTHROPIC.value:
        from langchain_anthropic import ChatAnthropic

        kwargs: Dict[str, Any] = {
            "model": llm_config.model_name,
            "temperature": llm_config.temperature,
            "timeout": llm_config.timeout,
        }
        if llm_config.max_tokens:
            kwargs["max_tokens"] = llm_config.max_tokens
        if llm_config.api_key:
            kwargs["api_key"] = llm_config.api_key
        if llm_config.base_url:
            kwargs["base_url"] = llm_config.base_url
        return ChatAnthropic(**kwargs)

    if provider == LLMProvider.OPENAI.value:
        try:
            from langchain_openai import ChatOpenAI
        except ImportError as e:
            raise ConfigurationError(
                "llm.provider",
                "OpenAI provider requires the 'openai' extra (pip install agent-execution-core[openai])",
            ) from e

        kwargs = {
            "model": llm_config.model_name,
            "temperature": llm_config.temperature,
            "timeout": llm_config.timeout,
        }
        if llm_config.max_tokens:
            kwargs["max_tokens"] = llm_config.max_tokens
        if llm_config.api_key:
            kwargs["api_key"] = llm_config.api_key
        if llm_config.base_url:
            kwargs["base_url"] = llm_config.base_url
        return ChatOpenAI(**kwargs)

    raise ConfigurationError("llm.provider", f"Unsupported LLM provider: {llm_config.provider}")


class LLMOracle:
    """
    ReAct oracle backed by a LangChain chat model.

    Usage:
        oracle = LLMOracle(build_chat_model(config.llm), registry,
                           rate_limiter=AsyncRateLimiter.from_config(config.rate_limit))
    """

    def __init__(
        self,
        chat_model: Any,
        registry: ToolRegistry,
        rate_limiter: Optional[AsyncRateLimiter] = None,
        max_observation_chars: int = 2000,
    ):
        self.chat_model = chat_model
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.max_observation_chars = max_observation_chars

    async def next_step(
        self,
        task: Task,
        sub_steps: Sequence[SubStep],
        artifacts: Sequence[Artifact],
    ) -> OracleResponse:
        if self.rate_limiter is not None:
            await self.rate_limiter.wait()

        messages = [
            SystemMessage(content=self.build_system_prompt(task)),
            HumanMessage(content=self.build_task_prompt(task, sub_steps, artifacts)),
        ]
        try:
            response = await self.chat_model.ainvoke(messages)
        except Exception as e:
            logger.error(f"[ORACLE] Chat model call failed for task {task.id}: {e}")
            raise OracleError(f"Chat model call failed: {e}") from e

        text = self._response_text(response)
        logger.debug(f"[ORACLE] Raw response for {task.id}: {text[:500]}")
        return parse_oracle_response(text)

    def tool_descriptions(self) -> List[Dict[str, Any]]:
        described = [tool.describe() for tool in self.registry.list()]
        described.append({
            "name": DELEGATE_TOOL,
            "description": "Create a new specialized agent and delegate a sub-task to it. "
                           "Execution of this task pauses until the sub-agent finishes.",
            "parameters": DelegateArgs.model_json_schema(),
        })
        described.append({
            "name": ARTIFACT_TOOL,
            "description": "Publish a named artifact (code, markdown or preview) as an output of this task.",
            "parameters": ArtifactArgs.model_json_schema(),
        })
        return described

    def build_system_prompt(self, task: Task) -> str:
        agent = task.agent
        lines = [
            f"You are {agent.name}, acting as {agent.role}.",
        ]
        if agent.instructions:
            lines.append(f"Instructions: {agent.instructions}")
        lines.extend([
            "",
            "Work step by step. At each step either call exactly one tool or declare the task finished.",
            "",
            "Available tools:",
            json.dumps(self.tool_descriptions(), indent=2),
            "",
            "Respond with ONLY one JSON object, either",
            '{"thought": "<reasoning>", "toolCall": {"name": "<tool>", "args": {...}}}',
            "or, when the task is complete,",
            '{"isFinished": true, "finalThought": "<summary of the result>"}',
        ])
        return "\n".join(lines)

    def build_task_prompt(self, task: Task, sub_steps: Sequence[SubStep], artifacts: Sequence[Artifact]) -> str:
        parts = [f"Task: {task.title}"]
        if task.details:
            parts.append(f"Details: {task.details}")

        if artifacts:
            parts.append("\nShared artifacts:")
            for artifact in artifacts:
                parts.append(f"- {artifact.title} ({artifact.type.value}) from task {artifact.task_id}")

        if sub_steps:
            parts.append("\nPrevious steps:")
            for index, step in enumerate(sub_steps, start=1):
                observation = step.observation
                if len(observation) > self.max_observation_chars:
                    observation = observation[:self.max_observation_chars] + "... [truncated]"
                parts.append(f"{index}. Thought: {step.thought}")
                parts.append(f"   Action: {step.tool_call.name} {json.dumps(step.tool_call.args, default=str)}")
                parts.append(f"   Observation: {observation}")

        parts.append("\nWhat is the next step?")
        return "\n".join(parts)

    @staticmethod
    def _response_text(response: Any) -> str:
        content = getattr(response, "content", response)
        if isinstance(content, list):
            # Anthropic returns content blocks
            return "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        return str(content)


# ============================================================================
# Decision Pipeline Oracle
# ============================================================================

class DecisionPipelineOracle:
    """
    Drives the loop with DecisionPipeline decisions.

    The first consultation runs the pipeline on the task description. A
    successful step finishes the task with its observation; a failed step
    moves on to the next untried alternative.
    """

    def __init__(self, pipeline: DecisionPipeline, constraints: Optional[List[str]] = None):
        self.pipeline = pipeline
        self.constraints = list(constraints or [])

    async def next_step(
        self,
        task: Task,
        sub_steps: Sequence[SubStep],
        artifacts: Sequence[Artifact],
    ) -> OracleResponse:
        if sub_steps and not sub_steps[-1].observation.startswith(ERROR_OBSERVATION_PREFIX):
            return FinishSignal(final_thought=sub_steps[-1].observation)

        goal = Goal(description=task.description, constraints=self.constraints, id=task.id)
        decision = self.pipeline.make_decision(goal)
        tried = {step.tool_call.name for step in sub_steps}

        if decision.tool not in tried:
            return NextStep(
                thought=f"Selected {decision.tool} (confidence {decision.confidence:.2f}, {decision.risk.value} risk)",
                tool_call=decision.to_tool_call(),
            )
        for alternative in decision.alternatives:
            if alternative.tool not in tried:
                return NextStep(
                    thought=f"Previous attempt failed, trying alternative {alternative.tool}",
                    tool_call=ToolCall(name=alternative.tool, args=dict(alternative.args)),
                )

        raise NoViableOptionError(goal.description, {name: ["already attempted"] for name in sorted(tried)})

"""
Workflow module - LangGraph construction of the per-task reasoning loop
"""

from typing import Literal, Optional, TypedDict

from langgraph.graph import StateGraph, END

from agent_core.models.decision import NextStep
from agent_core.tools.builtin import ARTIFACT_TOOL, DELEGATE_TOOL
from agent_core.utils.logger import get_logger

logger = get_logger(__name__)


class LoopState(TypedDict):
    """
    Graph state of one ReasoningLoop run.

    The task itself lives in the scheduler; the graph only carries the
    pending oracle proposal and the terminal outcome.
    """
    task_id: str
    pending: Optional[NextStep]
    outcome: Optional[str]
    final_thought: Optional[str]


class WorkflowBuilder:
    """
    Builds the LangGraph workflow that drives a single task.

    Workflow:
    1. Guard → Stop on cancellation, fail on an exhausted step budget
    2. Consult → Ask the oracle for a finish signal or the next tool call
    3. Act / Delegate / Artifact → Perform the proposed step
    4. Back to Guard, or END on finish, delegation or cancellation
    """

    def __init__(self, loop):
        """
        Args:
            loop: The ReasoningLoop whose node methods the graph calls
        """
        self.loop = loop

    def build(self) -> StateGraph:
        workflow = StateGraph(LoopState)

        workflow.add_node("guard", self.loop._guard)
        workflow.add_node("consult", self.loop._consult)
        workflow.add_node("act", self.loop._act)
        workflow.add_node("delegate", self.loop._delegate)
        workflow.add_node("artifact", self.loop._artifact)

        workflow.set_entry_point("guard")

        workflow.add_conditional_edges(
            "guard",
            self._route_after_guard,
            {
                "consult": "consult",
                "stop": END
            }
        )

        workflow.add_conditional_edges(
            "consult",
            self._route_after_consult,
            {
                "act": "act",
                "delegate": "delegate",
                "artifact": "artifact",
                "stop": END
            }
        )

        workflow.add_conditional_edges(
            "act",
            self._route_after_step,
            {
                "guard": "guard",
                "stop": END
            }
        )
        workflow.add_conditional_edges(
            "artifact",
            self._route_after_step,
            {
                "guard": "guard",
                "stop": END
            }
        )

        # A delegation that spawned a child ends this run; a rejected one continues
        workflow.add_conditional_edges(
            "delegate",
            self._route_after_step,
            {
                "guard": "guard",
                "stop": END
            }
        )

        return workflow

    def _route_after_guard(self, state: LoopState) -> Literal["consult", "stop"]:
        if state.get("outcome"):
            logger.debug(f"[LOOP] {state['task_id']}: stopping ({state['outcome']})")
            return "stop"
        return "consult"

    def _route_after_consult(self, state: LoopState) -> Literal["act", "delegate", "artifact", "stop"]:
        if state.get("outcome"):
            return "stop"
        pending = state.get("pending")
        if pending is None:
            logger.warning(f"[LOOP] {state['task_id']}: consult produced no step, stopping")
            return "stop"
        if pending.tool_call.name == DELEGATE_TOOL:
            return "delegate"
        if pending.tool_call.name == ARTIFACT_TOOL:
            return "artifact"
        return "act"

    def _route_after_step(self, state: LoopState) -> Literal["guard", "stop"]:
        return "stop" if state.get("outcome") else "guard"

"""
Decision Pipeline - From a natural-language goal to one tool invocation

Stages (strictly ordered):
1. Intent classification: type, confidence, entities and constraints
2. Context retrieval: playbooks, similar past cases, session context
3. Option generation: registered tools ranked by match with the intent
4. Constraint check: error-severity violations exclude an option
5. Selection: highest-confidence survivor plus up to 3 alternatives
6. Validation: low-confidence fallback to a lower-risk alternative, and
   approval flagging for tools that require a human in the loop

Usage:
    pipeline = DecisionPipeline(registry, memory=store)
    decision = pipeline.make_decision(Goal("read /etc/hosts quickly"))
    print(decision.tool, decision.args, decision.confidence)
"""

import re
from typing import Any, Dict, List, Optional, Tuple, Union

from agent_core.memory.store import MemoryStore
from agent_core.models.decision import (
    ActionOption,
    Constraint,
    ConstraintViolation,
    Decision,
    Entity,
    Goal,
    Intent,
    RetrievalContext,
)
from agent_core.models.enums import (
    ConstraintType,
    EffectType,
    IntentType,
    MemoryScope,
    RiskLevel,
    Severity,
)
from agent_core.tools.contract import Tool
from agent_core.tools.registry import ToolRegistry
from agent_core.utils.exceptions import MemoryBackendError, NoViableOptionError
from agent_core.utils.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Keyword tables
# ============================================================================

INTENT_KEYWORDS: Dict[IntentType, List[str]] = {
    IntentType.QUERY: ['what', 'how', 'why', 'explain', 'tell', 'find', 'search'],
    IntentType.ACTION: ['run', 'execute', 'start', 'stop', 'restart', 'deploy'],
    IntentType.CREATE: ['create', 'make', 'build', 'write', 'generate', 'add'],
    IntentType.ANALYZE: ['analyze', 'check', 'review', 'examine', 'inspect'],
    IntentType.BROWSE: ['navigate', 'open', 'visit', 'go to', 'browse'],
}

TOOL_KEYWORDS: Dict[IntentType, List[str]] = {
    IntentType.QUERY: ['read', 'get', 'list', 'search'],
    IntentType.ACTION: ['execute', 'run', 'start', 'stop'],
    IntentType.CREATE: ['write', 'create', 'make', 'build'],
    IntentType.ANALYZE: ['analyze', 'check', 'validate'],
    IntentType.BROWSE: ['navigate', 'browse', 'visit'],
}

MATCH_THRESHOLD = 0.3
LOW_CONFIDENCE = 0.5
MAX_ALTERNATIVES = 3
FAST_DURATION_SECONDS = 30

UNATTENDED_MARKERS = ("unattended", "no approval", "without approval")
READ_ONLY_MARKERS = ("read-only", "readonly", "read only", "no side effects")

_PATH_RE = re.compile(r"(?<![\w:/])/[\w/.-]+")
_URL_RE = re.compile(r"https?://[\w./-]+")
_CODE_RE = re.compile(r"`([^`]+)`")


# ============================================================================
# Shared extraction helpers
# ============================================================================

def extract_entities(description: str) -> List[Entity]:
    """File paths, URLs and backtick code references found in the text."""
    entities = [Entity("url", url, 0.95) for url in _URL_RE.findall(description)]
    without_urls = _URL_RE.sub(" ", description)
    entities.extend(Entity("file_path", path, 0.9) for path in _PATH_RE.findall(without_urls))
    entities.extend(Entity("code", code, 0.85) for code in _CODE_RE.findall(description))
    return entities


def extract_constraints(goal: Goal) -> List[Constraint]:
    """
    Soft constraints from wording ("quickly", "carefully") and strict
    constraints from the goal's explicit constraint list.
    """
    constraints: List[Constraint] = []
    lowered = goal.description.lower()

    if 'quickly' in lowered or 'fast' in lowered:
        constraints.append(Constraint(ConstraintType.TIME, 'fast', strict=False))
    if 'carefully' in lowered or 'thorough' in lowered:
        constraints.append(Constraint(ConstraintType.QUALITY, 'high', strict=False))

    for raw in goal.constraints:
        text = raw.strip()
        if any(marker in text.lower() for marker in UNATTENDED_MARKERS):
            constraints.append(Constraint(ConstraintType.PERMISSION, text, strict=True))
        else:
            constraints.append(Constraint(ConstraintType.RESOURCE, text, strict=True))

    return constraints


class IntentClassifier:
    """Keyword intent classifier behind DecisionPipeline.classify_intent."""

    def __init__(self, keywords: Optional[Dict[IntentType, List[str]]] = None):
        self.keywords = keywords or INTENT_KEYWORDS

    def classify(self, goal: Union[Goal, str]) -> Intent:
        if isinstance(goal, str):
            goal = Goal(description=goal)

        best_type, best_score = self.detect_type(goal.description.lower())
        if goal.type is not None and best_score == 0:
            best_type = goal.type

        return Intent(
            type=best_type,
            confidence=min(best_score / 3, 1.0),
            entities=extract_entities(goal.description),
            constraints=extract_constraints(goal),
        )

    def detect_type(self, description: str) -> Tuple[IntentType, int]:
        """Highest keyword score wins; ties keep the earlier type, no match is a QUERY."""
        best_type, best_score = IntentType.QUERY, 0
        for intent_type, keywords in self.keywords.items():
            score = sum(1 for keyword in keywords if keyword in description)
            if score > best_score:
                best_type, best_score = intent_type, score
        return best_type, best_score


# ============================================================================
# Decision Pipeline
# ============================================================================

class DecisionPipeline:
    """Multi-stage decision making with constraint checking and a low-risk fallback."""

    def __init__(self, registry: ToolRegistry, memory: Optional[MemoryStore] = None):
        self.registry = registry
        self.memory = memory
        self.classifier = IntentClassifier()

    def make_decision(
        self,
        goal: Union[Goal, str],
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        """
        Run all six stages.

        Raises:
            NoViableOptionError: when no option survives constraint checking
        """
        if isinstance(goal, str):
            goal = Goal(description=goal)

        intent = self.classify_intent(goal)
        retrieval = self.retrieve_context(intent, goal, context or {})
        options = self.generate_options(intent, retrieval)
        valid, rejected, warnings = self.check_constraints(options, intent.constraints)
        if not valid:
            logger.warning(f"[DECISION] No viable option for '{goal.description}' ({len(options)} generated)")
            raise NoViableOptionError(goal.description, rejected)
        decision = self.select_best(valid)
        decision.warnings = warnings.get(decision.tool, [])
        return self.validate_decision(decision, valid, warnings)

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    def classify_intent(self, goal: Goal) -> Intent:
        return self.classifier.classify(goal)

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    def retrieve_context(self, intent: Intent, goal: Goal, context: Dict[str, Any]) -> RetrievalContext:
        """
        Explicit context wins; otherwise playbooks come from longterm memory,
        similar cases from episodic memory and the session from shortterm.
        """
        playbooks = list(context.get("playbooks", []))
        similar_cases = list(context.get("similar_cases", []))
        session = dict(context.get("session", {}))

        if self.memory is not None:
            try:
                if not playbooks:
                    playbooks = [m.value for m in self.memory.search(MemoryScope.LONG_TERM, intent.type.value, 5)]
                if not similar_cases:
                    similar_cases = [m.value for m in self.memory.search(MemoryScope.EPISODIC, goal.description, 3)]
                if not session:
                    session = self.memory.read(MemoryScope.SHORT_TERM, "session_context") or {}
            except MemoryBackendError as e:
                logger.warning(f"[DECISION] Context retrieval degraded: {e}")

        return RetrievalContext(
            intent=intent,
            playbooks=playbooks,
            similar_cases=similar_cases,
            session=session if isinstance(session, dict) else {"value": session},
        )

    # ------------------------------------------------------------------
    # Stage 3
    # ------------------------------------------------------------------

    def generate_options(self, intent: Intent, retrieval: RetrievalContext) -> List[ActionOption]:
        options = []
        for tool in self.registry.list():
            score = self.calculate_tool_match(tool, intent)
            if score <= MATCH_THRESHOLD:
                continue
            options.append(ActionOption(
                tool=tool.name,
                args=self.generate_tool_args(tool, intent, retrieval),
                expected_outcome=tool.description,
                confidence=score,
                risk=self.assess_risk(tool),
                estimated_duration=tool.timeout_ms / 1000,
                requires_approval=tool.requires_approval,
            ))
        options.sort(key=lambda option: option.confidence, reverse=True)
        return options

    @staticmethod
    def calculate_tool_match(tool: Tool, intent: Intent) -> float:
        description = tool.description.lower()
        score = sum(0.5 for keyword in TOOL_KEYWORDS[intent.type] if keyword in description)
        if intent.type.value in tool.name.lower():
            score += 0.3
        return min(score, 1.0)

    @staticmethod
    def generate_tool_args(tool: Tool, intent: Intent, retrieval: RetrievalContext) -> Dict[str, Any]:
        """Fill argument fields whose names match an extracted entity kind."""
        by_type: Dict[str, str] = {}
        for entity in intent.entities:
            by_type.setdefault(entity.type, entity.value)

        fields = getattr(tool.args_model, "model_fields", {})
        args: Dict[str, Any] = {}
        for name in fields:
            lowered = name.lower()
            if lowered in ("path", "file", "file_path", "filename") and "file_path" in by_type:
                args[name] = by_type["file_path"]
            elif lowered in ("url", "uri", "link") and "url" in by_type:
                args[name] = by_type["url"]
            elif lowered in ("code", "command", "snippet") and "code" in by_type:
                args[name] = by_type["code"]
            elif lowered in ("query", "q", "question"):
                args[name] = by_type.get("query") or retrieval.session.get("query", "")
        if not args and not fields:
            args["query"] = by_type.get("query", "")
        return args

    @staticmethod
    def assess_risk(tool: Tool) -> RiskLevel:
        if tool.requires_approval:
            return RiskLevel.HIGH
        if any(effect.type in (EffectType.DELETE, EffectType.CREATE) for effect in tool.effects):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # ------------------------------------------------------------------
    # Stage 4
    # ------------------------------------------------------------------

    def check_constraints(
        self,
        options: List[ActionOption],
        constraints: List[Constraint],
    ) -> Tuple[List[ActionOption], Dict[str, List[str]], Dict[str, List[str]]]:
        """
        Returns:
            (surviving options, rejection reasons by tool, warnings by tool)
        """
        valid: List[ActionOption] = []
        rejected: Dict[str, List[str]] = {}
        warnings: Dict[str, List[str]] = {}

        for option in options:
            violations = [
                violation for violation in
                (self.check_constraint(option, constraint) for constraint in constraints)
                if violation is not None
            ]
            errors = [v.reason for v in violations if v.severity == Severity.ERROR]
            soft = [v.reason for v in violations if v.severity == Severity.WARNING]
            if errors:
                rejected[option.tool] = errors
                logger.debug(f"[DECISION] Excluded {option.tool}: {'; '.join(errors)}")
                continue
            if soft:
                warnings[option.tool] = soft
            valid.append(option)

        return valid, rejected, warnings

    def check_constraint(self, option: ActionOption, constraint: Constraint) -> Optional[ConstraintViolation]:
        severity = Severity.ERROR if constraint.strict else Severity.WARNING

        if constraint.type == ConstraintType.TIME:
            if constraint.value == 'fast' and option.estimated_duration > FAST_DURATION_SECONDS:
                return ConstraintViolation(
                    constraint,
                    f"Tool takes {option.estimated_duration:g}s, expected fast",
                    severity,
                )

        elif constraint.type == ConstraintType.QUALITY:
            if constraint.value == 'high' and option.risk == RiskLevel.HIGH:
                return ConstraintViolation(
                    constraint,
                    "High-risk tool may not meet quality requirements",
                    Severity.WARNING,
                )

        elif constraint.type == ConstraintType.RESOURCE:
            tool = self.registry.get(option.tool)
            effect_types = {effect.type for effect in tool.effects} if tool else set()
            lowered = constraint.value.lower()
            if any(marker in lowered for marker in READ_ONLY_MARKERS) and effect_types:
                return ConstraintViolation(
                    constraint, f"{option.tool} has side effects under a read-only constraint", severity
                )
            for effect_type in effect_types:
                if f"no {effect_type.value}" in lowered:
                    return ConstraintViolation(
                        constraint, f"{option.tool} performs a forbidden {effect_type.value}", severity
                    )

        elif constraint.type == ConstraintType.PERMISSION:
            if option.requires_approval:
                return ConstraintViolation(
                    constraint, f"{option.tool} requires approval but the run is unattended", severity
                )

        return None

    # ------------------------------------------------------------------
    # Stages 5 and 6
    # ------------------------------------------------------------------

    @staticmethod
    def select_best(options: List[ActionOption]) -> Decision:
        if not options:
            raise NoViableOptionError("<unknown>")
        selected = options[0]
        return Decision(
            tool=selected.tool,
            args=selected.args,
            confidence=selected.confidence,
            alternatives=options[1:1 + MAX_ALTERNATIVES],
            risk=selected.risk,
            requires_approval=selected.requires_approval,
        )

    def validate_decision(
        self,
        decision: Decision,
        options: List[ActionOption],
        warnings: Optional[Dict[str, List[str]]] = None,
    ) -> Decision:
        """
        Fall back to a strictly lower-risk alternative when confidence is low.

        ``warnings`` maps tool names to the soft-constraint warnings from
        check_constraints; a fallback decision carries its own tool's warnings.
        """
        if decision.confidence < LOW_CONFIDENCE and decision.alternatives:
            logger.warning(f"[DECISION] Low confidence decision: {decision.confidence:.2f}")
            safest = min(decision.alternatives, key=lambda alt: (alt.risk.rank, -alt.confidence))
            if safest.risk.rank < decision.risk.rank:
                nominal = next(option for option in options if option.tool == decision.tool)
                alternatives = [nominal] + [alt for alt in decision.alternatives if alt is not safest]
                logger.info(f"[DECISION] Falling back from {decision.tool} to lower-risk {safest.tool}")
                decision = Decision(
                    tool=safest.tool,
                    args=safest.args,
                    confidence=safest.confidence,
                    alternatives=alternatives[:MAX_ALTERNATIVES],
                    risk=safest.risk,
                    requires_approval=safest.requires_approval,
                    warnings=list((warnings or {}).get(safest.tool, [])),
                )

        if decision.requires_approval:
            logger.info(f"[DECISION] Tool {decision.tool} requires human approval")
        return decision

"""
TaskDecomposer - turns a free-text task into a validated Plan.

Flow:
1. classify: one short call answering SIMPLE or COMPLEX
2. decompose: SIMPLE tasks become a single step for the default agent;
   COMPLEX tasks get one planning call returning JSON steps
3. validate: shape, agent binding, dependency edges; one correction
   round-trip before giving up with PlanInvalid
4. refine: merge the model's changed/added steps into an existing Plan
   without disturbing finished work the feedback does not name
"""

import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .agents.logging_config import get_logger
from .agents.profiles import AgentDirectory
from .agents.validation import (
    ValidationResult,
    invalidate_dependents,
    normalize_step_payload,
    validate_decomposition,
    validate_revision,
    validate_task_text,
)
from .conversation_store import ConversationStore
from .errors import ModelUnavailable, PlanInvalid
from .gateway import ModelGateway, append_user_message, turns_to_messages
from .plan import SETTLED, Complexity, Plan, Step, StepStatus
from .records import ConversationTurn
from .tools import ToolRegistry

logger = get_logger("decomposer")

PLANNER_ID = "planner"

FENCE_RE = re.compile(r"```json\s?|```")
STEP_REFERENCE_RE = re.compile(r"\bsteps?\s*#?\s*(\d+)", re.IGNORECASE)

CLASSIFY_PROMPT = (
    "Analyze if the following text requires a complex response with multiple steps "
    "or a simple direct answer. Respond with only the word COMPLEX or SIMPLE."
)

DECOMPOSE_PROMPT = """You are a task decomposition specialist. Your job is to break down complex tasks into manageable subtasks.

1. Decompose the given task into at most {max_steps} smaller, manageable subtasks.
2. Assign each subtask to the most appropriate agent or tool listed below.
3. Format your response as a JSON array where each object has: "description", "agent", \
"depends_on" (array of 1-based numbers of earlier subtasks it needs) and optionally \
"collaborator" (another agent that should review the result).
4. Do not include any markdown formatting or code block indicators in your response.

Agents:
{agents}
{tools}"""

REFINE_PROMPT = """You are a task decomposition specialist revising an existing plan based on user feedback.

Return a JSON array containing ONLY the subtasks you change or add. Each object has:
"index" (existing number to change, or the next free number to add), "description", "agent",
"depends_on" (array of earlier subtask numbers) and optionally "skip": true to drop a subtask.
Do not change completed subtasks unless the feedback names them.
Do not include any markdown formatting or code block indicators in your response.

Agents:
{agents}
{tools}"""

CORRECTION_MESSAGE = (
    "Your previous answer could not be used:\n{issues}\n"
    "Reply again with only the corrected JSON array."
)


@dataclass
class DecomposerConfig:
    """Configuration for planning calls."""
    max_steps: int = 8
    context_window: int = 10
    classify_max_tokens: int = 10
    plan_max_tokens: int = 1500


def strip_fences(text: str) -> str:
    return FENCE_RE.sub("", text or "").strip()


def parse_steps_payload(text: str) -> Any:
    """
    Parse model output into a list of raw step objects.

    Accepts a bare JSON array or an object with a "steps" array, with or
    without code fences around it.

    Raises:
        ValueError: If no JSON can be recovered
    """
    content = strip_fences(text)
    try:
        payload = json.loads(content)
    except ValueError:
        match = re.search(r"[\[{][\s\S]*[\]}]", content)
        if not match:
            raise ValueError("response is not JSON")
        payload = json.loads(match.group(0))

    if isinstance(payload, dict) and isinstance(payload.get("steps"), list):
        return payload["steps"]
    return payload


def referenced_steps(feedback: str) -> Set[int]:
    """Step numbers the feedback names explicitly ("step 2", "step #3")."""
    return {int(n) for n in STEP_REFERENCE_RE.findall(feedback or "")}


def plan_to_json(plan: Plan) -> str:
    return json.dumps(
        [
            {
                "index": s.index,
                "description": s.description,
                "agent": s.assigned_agent,
                "depends_on": sorted(s.depends_on),
                "status": s.status.value,
            }
            for s in sorted(plan.steps, key=lambda s: s.index)
        ],
        indent=2,
    )


class TaskDecomposer:
    """
    Plans tasks for a team of agents.

    Planning calls are not charged against the user's credit; the steps
    they produce are, when executed.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        conversations: ConversationStore,
        agents: AgentDirectory,
        tools: Optional[ToolRegistry] = None,
        config: Optional[DecomposerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.conversations = conversations
        self.agents = agents
        self.tools = tools or ToolRegistry()
        self.config = config or DecomposerConfig()
        self._clock = clock

    @property
    def assignees(self) -> Set[str]:
        return set(self.agents.ids()) | set(self.tools.names())

    def _system_prompt(self, template: str) -> str:
        tools = self.tools.describe()
        return template.format(
            max_steps=self.config.max_steps,
            agents=self.agents.describe(),
            tools=f"\nTools:\n{tools}" if tools else "",
        )

    async def _window(self, conversation_id: str, user_id: str) -> List[ConversationTurn]:
        return await self.conversations.get_window(conversation_id, user_id, self.config.context_window)

    async def classify(
        self,
        conversation_id: str,
        task_text: str,
        *,
        user_id: str,
        window: Optional[List[ConversationTurn]] = None,
    ) -> Complexity:
        """
        Decide whether a task needs decomposition.

        An unavailable upstream is treated as COMPLEX so the task still gets
        a plan; a rejected request propagates.
        """
        if window is None:
            window = await self._window(conversation_id, user_id)

        messages = append_user_message(turns_to_messages(window, PLANNER_ID), f"Text: {task_text}")
        try:
            answer = await self.gateway.complete(
                CLASSIFY_PROMPT,
                messages,
                purpose="classify",
                max_tokens=self.config.classify_max_tokens,
                temperature=0.0,
            )
        except ModelUnavailable as e:
            logger.warning(f"Classification unavailable for {conversation_id}, treating as COMPLEX: {e}")
            return Complexity.COMPLEX

        verdict = answer.strip().upper()
        if verdict.startswith("SIMPLE"):
            return Complexity.SIMPLE
        if not verdict.startswith("COMPLEX"):
            logger.warning(f"Unrecognized classification {answer!r}, treating as COMPLEX")
        return Complexity.COMPLEX

    async def decompose(self, conversation_id: str, task_text: str, *, user_id: str) -> Plan:
        """
        Produce a draft Plan for a task.

        Raises:
            PlanInvalid: Task text unusable, or the model's plan stayed invalid
            ModelUnavailable: Planning call failed after retries
            ModelRejected: Upstream refused the planning call
        """
        check = validate_task_text(task_text)
        if not check.valid:
            raise PlanInvalid(check.errors)

        window = await self._window(conversation_id, user_id)
        complexity = await self.classify(conversation_id, task_text, user_id=user_id, window=window)

        if complexity == Complexity.SIMPLE:
            steps = [Step(index=1, description=task_text.strip(), assigned_agent=self.agents.default_agent.agent_id)]
        else:
            steps = await self._request_steps(window, task_text)

        plan = Plan(
            plan_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            user_id=user_id,
            task=task_text.strip(),
            steps=steps,
            complexity=complexity,
            created_at=self._clock(),
        )
        logger.info(
            f"Decomposed task for {conversation_id} into {len(steps)} step(s) "
            f"({complexity.value}, plan {plan.plan_id})"
        )
        return plan

    async def _request_steps(self, window: List[ConversationTurn], task_text: str) -> List[Step]:
        system_prompt = self._system_prompt(DECOMPOSE_PROMPT)
        messages = append_user_message(
            turns_to_messages(window, PLANNER_ID),
            f"Decompose and analyze this task: {task_text}",
        )

        def check(text: str) -> Tuple[ValidationResult, List[Step]]:
            try:
                raw_steps = parse_steps_payload(text)
            except ValueError as e:
                return ValidationResult(valid=False, errors=[f"unparseable output: {e}"]), []
            return validate_decomposition(
                raw_steps,
                agents=self.assignees,
                default_agent=self.agents.default_agent.agent_id,
                max_steps=self.config.max_steps,
            )

        return await self._plan_with_correction(system_prompt, messages, "decompose", check)

    async def _plan_with_correction(self, system_prompt, messages, purpose, check):
        """Run a planning call, retrying once with the validation issues spelled out."""
        issues: List[str] = []
        for attempt in range(2):
            text = await self.gateway.complete(
                system_prompt,
                messages,
                purpose=purpose,
                max_tokens=self.config.plan_max_tokens,
            )
            result, steps = check(text)
            if result.valid:
                for warning in result.warnings:
                    logger.warning(f"[{purpose}] {warning}")
                return steps

            issues = result.errors
            logger.warning(f"[{purpose}] Attempt {attempt + 1} invalid: {'; '.join(issues)}")
            messages = messages + [
                {"role": "assistant", "content": text or "(empty)"},
                {"role": "user", "content": CORRECTION_MESSAGE.format(issues="\n".join(f"- {i}" for i in issues))},
            ]

        raise PlanInvalid(issues)

    async def refine(self, conversation_id: str, plan: Plan, feedback: str, *, user_id: str) -> Plan:
        """
        Revise a plan from user feedback.

        Returns:
            A copy of `plan` with revision + 1; the caller commits it

        Raises:
            PlanInvalid: The merged plan stayed invalid after one correction
        """
        window = await self._window(conversation_id, user_id)
        messages = append_user_message(
            turns_to_messages(window, PLANNER_ID),
            f"Current plan:\n{plan_to_json(plan)}\n\nFeedback: {feedback}",
        )
        named = referenced_steps(feedback)

        def check(text: str) -> Tuple[ValidationResult, List[Step]]:
            try:
                deltas = parse_steps_payload(text)
            except ValueError as e:
                return ValidationResult(valid=False, errors=[f"unparseable output: {e}"]), []
            if not isinstance(deltas, list):
                return ValidationResult(valid=False, errors=["expected a JSON array of steps"]), []
            result, steps = self._merge(plan, deltas, named)
            if result.valid:
                revision = validate_revision(steps, max_steps=self.config.max_steps)
                revision.warnings = result.warnings + revision.warnings
                return revision, steps
            return result, steps

        steps = await self._plan_with_correction(self._system_prompt(REFINE_PROMPT), messages, "refine", check)

        revised = plan.clone()
        revised.steps = steps
        revised.revision = plan.revision + 1
        revised.touch(self._clock())
        logger.info(f"Refined plan {plan.plan_id} to revision {revised.revision} ({len(steps)} step(s))")
        return revised

    def _merge(self, plan: Plan, deltas: List[Any], named: Set[int]) -> Tuple[ValidationResult, List[Step]]:
        """Apply changed/added steps onto a copy of the plan's steps."""
        result = ValidationResult(valid=True)
        merged: Dict[int, Step] = {s.index: s for s in plan.clone().steps}
        replaced: Set[int] = set()
        next_index = plan.max_index + 1
        default_agent = self.agents.default_agent.agent_id

        for raw in deltas:
            if not isinstance(raw, dict):
                result.errors.append(f"expected an object, got {type(raw).__name__}")
                continue
            try:
                index = int(raw["index"]) if raw.get("index") is not None else next_index
            except (TypeError, ValueError):
                result.errors.append(f"invalid step number {raw.get('index')!r}")
                continue
            skip = bool(raw.get("skip"))
            existing = merged.get(index)

            if existing is not None:
                if existing.status == StepStatus.RUNNING:
                    result.warnings.append(f"step {index} is running and was left unchanged")
                    continue
                if existing.status in SETTLED and index not in named:
                    result.warnings.append(f"step {index} is finished and not named in the feedback, kept")
                    continue
                payload = {
                    "description": raw.get("description") or existing.description,
                    "agent": raw.get("agent") or raw.get("assigned_agent") or existing.assigned_agent,
                    "depends_on": raw["depends_on"] if "depends_on" in raw else sorted(existing.depends_on),
                    "collaborator": raw["collaborator"] if "collaborator" in raw else existing.collaborator,
                }
            else:
                if index != next_index:
                    result.errors.append(f"step {index} does not continue the sequence (expected {next_index})")
                    continue
                payload = raw
                next_index += 1

            step = normalize_step_payload(
                payload, index, agents=self.assignees, default_agent=default_agent, result=result
            )
            if step is None:
                continue
            if skip:
                step.status = StepStatus.SKIPPED
            if existing is not None:
                replaced.add(index)
            merged[index] = step

        steps = [merged[i] for i in sorted(merged)]
        if not result.errors and replaced:
            invalidation = invalidate_dependents(steps, replaced)
            result.errors.extend(invalidation.errors)
            result.warnings.extend(invalidation.warnings)

        result.valid = not result.errors
        return result, steps

"""
WorkflowExecutor - drives Plans through their lifecycle.

State machine:
    draft → active → completed | failed
    active ↔ paused

Scheduling follows the dependency graph: whenever a slot frees, eligible
steps (all dependencies succeeded or skipped) are started under the plan's
lock, up to `max_concurrent` at a time. Steps run without holding any lock;
their results are committed under the lock again.

Each step is admitted by the CreditLedger before its model call or tool
runs. A credit denial fails only that step and lets independent branches
continue; any other persistent failure fails the plan, letting running
steps finish but starting nothing new.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .agents.error_context import create_step_error_context, format_error_summary
from .agents.logging_config import get_logger
from .agents.metrics import MetricsCollector
from .agents.profiles import AgentDirectory
from .agents.validation import invalidate_dependents
from .concurrency import KeyedLocks
from .conversation_store import ConversationStore
from .credit_ledger import CreditLedger
from .errors import (
    EmptyOutput,
    InsufficientCredit,
    PlanInvalid,
    PlanNotFound,
    StorageError,
    TeamflowError,
    ToolError,
    WorkflowStateError,
)
from .gateway import ModelGateway, append_user_message, turns_to_messages
from .persistence import Persistence
from .plan import Plan, PlanStatus, Step, StepStatus, WorkflowStatus
from .records import Role
from .router import AgentRouter
from .tools import ToolContext, ToolRegistry

logger = get_logger("workflow")

STEP_PROMPT = """Overall task: {task}

Your subtask (step {index}): {description}"""


@dataclass
class ExecutorConfig:
    """Configuration for plan execution."""
    max_concurrent: int = 4
    step_cost: int = 1
    step_retries: int = 1
    context_window: int = 10
    step_max_tokens: int = 1500


@dataclass(frozen=True)
class StepJob:
    """Everything a running step needs, captured when it was started."""
    plan_id: str
    conversation_id: str
    user_id: str
    task: str
    index: int
    description: str
    assigned_agent: str
    collaborator: Optional[str] = None
    dependency_outputs: Dict[int, str] = field(default_factory=dict)


@dataclass
class StepOutcome:
    index: int
    output: Optional[str] = None
    error: Optional[BaseException] = None
    attempts: int = 0


def _same_definition(a: Step, b: Step) -> bool:
    return a.to_dict() == b.to_dict()


class WorkflowExecutor:
    """
    Plan state machine and dependency-aware scheduler.

    Features:
    - Up to `max_concurrent` independent steps in flight per plan
    - Idempotent scheduling: eligibility is re-evaluated under the plan lock
    - Cooperative pause; in-flight calls are never aborted
    - Every transition persisted; reloaded plans come back paused
    """

    def __init__(
        self,
        persistence: Persistence,
        ledger: CreditLedger,
        conversations: ConversationStore,
        gateway: ModelGateway,
        agents: AgentDirectory,
        tools: Optional[ToolRegistry] = None,
        router: Optional[AgentRouter] = None,
        config: Optional[ExecutorConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.persistence = persistence
        self.ledger = ledger
        self.conversations = conversations
        self.gateway = gateway
        self.agents = agents
        self.tools = tools or ToolRegistry()
        self.router = router
        self.config = config or ExecutorConfig()
        self.metrics = metrics or MetricsCollector()
        self._clock = clock

        self._plans: Dict[str, Plan] = {}
        self._open: Dict[str, str] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    def _adopt(self, plan: Plan) -> Plan:
        """Cache a plan read from persistence, interrupting any stale run."""
        if not plan.status.is_terminal:
            for step in plan.steps:
                if step.status == StepStatus.RUNNING:
                    step.status = StepStatus.PENDING
            if plan.status == PlanStatus.ACTIVE:
                plan.status = PlanStatus.PAUSED
            self._open[plan.conversation_id] = plan.plan_id
        self._plans[plan.plan_id] = plan
        return plan

    async def recover(self) -> List[str]:
        """
        Load every persisted plan.

        Returns:
            Ids of non-terminal plans, now paused and ready to resume
        """
        recovered = []
        for plan_id in await self.persistence.read_plan_ids():
            if plan_id in self._plans:
                continue
            plan = await self.persistence.read_plan(plan_id)
            if plan is None:
                continue
            self._adopt(plan)
            if not plan.status.is_terminal:
                recovered.append(plan_id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} unfinished plan(s), paused")
        return recovered

    async def _get(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            loaded = await self.persistence.read_plan(plan_id)
            if loaded is None:
                raise PlanNotFound(f"no plan {plan_id}")
            plan = self._plans.get(plan_id) or self._adopt(loaded)
        return plan

    async def _save(self, plan: Plan):
        """Persist from inside the driver; the in-memory plan stays authoritative."""
        try:
            await self.persistence.upsert_plan(plan)
        except StorageError as e:
            logger.error(f"Plan {plan.plan_id} not persisted: {e}")

    async def _transition(self, plan: Plan, status: PlanStatus):
        """Apply a caller-requested transition; reverted if it cannot be persisted."""
        previous, previous_updated = plan.status, plan.updated_at
        plan.status = status
        plan.touch(self._clock())
        try:
            await self.persistence.upsert_plan(plan)
        except StorageError:
            plan.status, plan.updated_at = previous, previous_updated
            raise
        if status.is_terminal:
            self._release(plan)
            if plan.plan_id not in self._drivers:
                self.metrics.clear_plan(plan.plan_id)
        logger.info(f"Plan {plan.plan_id}: {previous.value} → {status.value}")

    def _release(self, plan: Plan):
        if self._open.get(plan.conversation_id) == plan.plan_id:
            del self._open[plan.conversation_id]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def open_plan_id(self, conversation_id: str) -> Optional[str]:
        """Id of the conversation's non-terminal plan, if any."""
        return self._open.get(conversation_id)

    async def register(self, plan: Plan) -> WorkflowStatus:
        """
        Persist a draft plan.

        Raises:
            WorkflowStateError: Plan is not a draft, or the conversation
                already has a non-terminal plan
            PlanInvalid: Step indices or dependency edges are malformed
            StorageError: Plan could not be persisted
        """
        if plan.status != PlanStatus.DRAFT:
            raise WorkflowStateError(f"only draft plans can be registered (got {plan.status.value})")
        if not plan.steps or not plan.validate():
            raise PlanInvalid(["step indices or dependencies are malformed"])

        async with self._locks.lock(("conversation", plan.conversation_id)):
            if plan.plan_id in self._plans:
                raise WorkflowStateError(f"plan {plan.plan_id} is already registered")
            open_id = self._open.get(plan.conversation_id)
            if open_id is not None and open_id != plan.plan_id:
                raise WorkflowStateError(
                    f"conversation {plan.conversation_id} already has an open plan {open_id}"
                )
            plan = plan.clone()
            await self.persistence.upsert_plan(plan)
            self._plans[plan.plan_id] = plan
            self._open[plan.conversation_id] = plan.plan_id

        logger.info(f"Registered plan {plan.plan_id} with {len(plan.steps)} step(s)")
        return WorkflowStatus.from_plan(plan)

    async def start(self, plan_id: str, *, wait: bool = True) -> WorkflowStatus:
        """
        Move a draft plan to active and drive it.

        Args:
            plan_id: Plan to start
            wait: Return only once the plan is terminal or paused

        Raises:
            WorkflowStateError: Plan is not a draft
        """
        async with self._locks.lock(plan_id):
            plan = await self._get(plan_id)
            if plan.status != PlanStatus.DRAFT:
                raise WorkflowStateError(f"plan {plan_id} is {plan.status.value}, not draft")
            await self._transition(plan, PlanStatus.ACTIVE)
            self._ensure_driver(plan_id)

        if wait:
            return await self.wait(plan_id)
        return await self.status(plan_id)

    async def pause(self, plan_id: str) -> WorkflowStatus:
        """Stop starting new steps; running steps finish and are committed."""
        async with self._locks.lock(plan_id):
            plan = await self._get(plan_id)
            if plan.status != PlanStatus.ACTIVE:
                raise WorkflowStateError(f"plan {plan_id} is {plan.status.value}, not active")
            await self._transition(plan, PlanStatus.PAUSED)
            return WorkflowStatus.from_plan(plan)

    async def resume(self, plan_id: str, *, wait: bool = False) -> WorkflowStatus:
        """Return a paused plan to active and re-evaluate eligibility."""
        async with self._locks.lock(plan_id):
            plan = await self._get(plan_id)
            if plan.status != PlanStatus.PAUSED:
                raise WorkflowStateError(f"plan {plan_id} is {plan.status.value}, not paused")
            await self._transition(plan, PlanStatus.ACTIVE)
            self._ensure_driver(plan_id)

        if wait:
            return await self.wait(plan_id)
        return await self.status(plan_id)

    async def continue_workflow(self, plan_id: str, *, wait: bool = False) -> WorkflowStatus:
        """Start a draft plan or resume a paused one."""
        plan = await self._get(plan_id)
        if plan.status == PlanStatus.DRAFT:
            return await self.start(plan_id, wait=wait)
        if plan.status == PlanStatus.PAUSED:
            return await self.resume(plan_id, wait=wait)
        raise WorkflowStateError(f"plan {plan_id} is {plan.status.value}; nothing to continue")

    async def complete(self, plan_id: str) -> WorkflowStatus:
        """
        Mark an active or paused plan completed.

        Residual pending steps stay pending; running steps still finish and
        their results are recorded.
        """
        async with self._locks.lock(plan_id):
            plan = await self._get(plan_id)
            if plan.status not in (PlanStatus.ACTIVE, PlanStatus.PAUSED):
                raise WorkflowStateError(f"plan {plan_id} is {plan.status.value}; cannot complete")
            await self._transition(plan, PlanStatus.COMPLETED)
            return WorkflowStatus.from_plan(plan)

    async def revise(self, plan_id: str, revised: Plan, *, base: Optional[Plan] = None) -> WorkflowStatus:
        """
        Commit a refined plan onto the live one.

        Steps that differ between `base` (the snapshot the refinement started
        from; defaults to the live plan) and `revised` replace the live step,
        except running steps, which are never replaced. Every other live step
        is kept as it is, including steps `revised` does not mention. Finished
        dependents of a replaced step return to pending.

        Raises:
            WorkflowStateError: Live plan is terminal
            PlanInvalid: The merged plan is malformed, or a replaced step has
                a running dependent
        """
        if revised.plan_id != plan_id:
            raise WorkflowStateError(f"revision belongs to plan {revised.plan_id}, not {plan_id}")

        async with self._locks.lock(plan_id):
            plan = await self._get(plan_id)
            if plan.status.is_terminal:
                raise WorkflowStateError(f"plan {plan_id} is {plan.status.value}; start a new plan instead")

            base_steps = {s.index: s for s in (base or plan).steps}
            steps_by_index = {s.index: s for s in plan.clone().steps}
            replaced = []
            for new_step in sorted(revised.clone().steps, key=lambda s: s.index):
                live = steps_by_index.get(new_step.index)
                old = base_steps.get(new_step.index)
                if live is not None and live.status == StepStatus.RUNNING:
                    continue
                if live is not None and old is not None and _same_definition(old, new_step):
                    continue
                steps_by_index[new_step.index] = new_step
                if live is not None:
                    replaced.append(new_step.index)

            merged = [steps_by_index[i] for i in sorted(steps_by_index)]
            invalidation = invalidate_dependents(merged, replaced)
            if not invalidation.valid:
                raise PlanInvalid(invalidation.errors)
            for warning in invalidation.warnings:
                logger.info(f"Plan {plan_id}: {warning}")

            candidate = plan.clone()
            candidate.steps = merged
            if not candidate.validate():
                raise PlanInvalid(["revised step indices or dependencies are malformed"])

            previous_steps, previous_revision = plan.steps, plan.revision
            plan.steps = merged
            plan.revision = max(revised.revision, plan.revision + 1)
            plan.touch(self._clock())
            try:
                await self.persistence.upsert_plan(plan)
            except StorageError:
                plan.steps, plan.revision = previous_steps, previous_revision
                raise

            logger.info(f"Plan {plan_id} revised to revision {plan.revision}")
            if plan.status == PlanStatus.ACTIVE:
                self._ensure_driver(plan_id)
            return WorkflowStatus.from_plan(plan)

    async def status(self, plan_id: str) -> WorkflowStatus:
        """Snapshot of the plan; identical across calls without a mutation in between."""
        return WorkflowStatus.from_plan(await self._get(plan_id))

    async def get_plan(self, plan_id: str) -> Plan:
        """Copy of the live plan."""
        return (await self._get(plan_id)).clone()

    async def wait(self, plan_id: str) -> WorkflowStatus:
        """Wait for the plan's driver to stop (terminal or paused)."""
        driver = self._drivers.get(plan_id)
        if driver is not None:
            await asyncio.shield(driver)
        return await self.status(plan_id)

    async def close(self):
        """Cancel every driver; interrupted steps resume from pending on reload."""
        drivers = list(self._drivers.values())
        for driver in drivers:
            driver.cancel()
        await asyncio.gather(*drivers, return_exceptions=True)
        self._drivers.clear()
        self._wakeups.clear()

    def get_status(self) -> Dict[str, int]:
        """Get current executor status."""
        return {
            "plans_loaded": len(self._plans),
            "open_plans": len(self._open),
            "active_drivers": len(self._drivers),
            "max_concurrent": self.config.max_concurrent,
        }

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _ensure_driver(self, plan_id: str):
        """Start a driver, or wake the running one to re-evaluate eligibility. Caller holds the plan lock."""
        if plan_id in self._drivers:
            self._wakeups[plan_id].set()
            return
        self._wakeups[plan_id] = asyncio.Event()
        self._drivers[plan_id] = asyncio.create_task(self._drive(plan_id))

    def _forget_driver(self, plan_id: str):
        self._drivers.pop(plan_id, None)
        self._wakeups.pop(plan_id, None)

    async def _drive(self, plan_id: str):
        """Run eligible steps until nothing is running and nothing can start."""
        running: Dict[asyncio.Task, int] = {}
        lock = self._locks.lock(plan_id)
        wakeup = self._wakeups[plan_id]
        try:
            while True:
                async with lock:
                    wakeup.clear()
                    plan = self._plans[plan_id]
                    if plan.status == PlanStatus.ACTIVE:
                        slots = self.config.max_concurrent - len(running)
                        started = []
                        for step in plan.get_ready_steps()[:max(slots, 0)]:
                            step.status = StepStatus.RUNNING
                            task = asyncio.create_task(self._run_step(self._job(plan, step)))
                            running[task] = step.index
                            started.append(step.index)
                        if started:
                            plan.touch(self._clock())
                            await self._save(plan)
                            logger.info(f"Plan {plan_id}: started step(s) {started}")

                    if not running:
                        if plan.status == PlanStatus.ACTIVE:
                            await self._settle(plan)
                        if plan.status.is_terminal:
                            self.metrics.clear_plan(plan_id)
                        self._forget_driver(plan_id)
                        return

                woken = asyncio.create_task(wakeup.wait())
                try:
                    done, _ = await asyncio.wait([*running, woken], return_when=asyncio.FIRST_COMPLETED)
                finally:
                    woken.cancel()
                done.discard(woken)
                if not done:
                    continue

                async with lock:
                    plan = self._plans[plan_id]
                    for task in done:
                        index = running.pop(task)
                        self._commit(plan, self._outcome(task, index))
                    plan.touch(self._clock())
                    await self._save(plan)
        except asyncio.CancelledError:
            await self._cancel_steps(running)
            self._forget_driver(plan_id)
            raise
        except Exception as e:
            await self._cancel_steps(running)
            self._forget_driver(plan_id)
            await self._abort(plan_id, e)

    @staticmethod
    async def _cancel_steps(running: Dict[asyncio.Task, int]):
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)

    async def _abort(self, plan_id: str, error: Exception):
        """The driver broke: fail the plan instead of leaving it active with no driver."""
        logger.exception(f"Plan {plan_id}: driver stopped by {type(error).__name__}: {error}")
        async with self._locks.lock(plan_id):
            plan = self._plans.get(plan_id)
            if plan is None or plan.status.is_terminal:
                return
            for step in plan.get_running_steps():
                step.reset()
            plan.status = PlanStatus.FAILED
            plan.touch(self._clock())
            self._release(plan)
            await self._save(plan)

    async def _settle(self, plan: Plan):
        """Nothing running and nothing eligible: the plan is done one way or the other."""
        if plan.all_settled():
            plan.status = PlanStatus.COMPLETED
        else:
            plan.status = PlanStatus.FAILED
            blocked = [s.index for s in plan.get_blocked_steps()]
            if blocked:
                logger.warning(f"Plan {plan.plan_id}: step(s) {blocked} can no longer run")
        plan.touch(self._clock())
        self._release(plan)
        await self._save(plan)
        logger.info(f"Plan {plan.plan_id} {plan.status.value}")

    def _job(self, plan: Plan, step: Step) -> StepJob:
        return StepJob(
            plan_id=plan.plan_id,
            conversation_id=plan.conversation_id,
            user_id=plan.user_id,
            task=plan.task,
            index=step.index,
            description=step.description,
            assigned_agent=step.assigned_agent,
            collaborator=step.collaborator,
            dependency_outputs={
                dep: plan.step(dep).output or ""
                for dep in sorted(step.depends_on)
                if plan.step(dep).status == StepStatus.SUCCEEDED
            },
        )

    @staticmethod
    def _outcome(task: asyncio.Task, index: int) -> StepOutcome:
        try:
            return task.result()
        except Exception as e:
            return StepOutcome(index=index, error=e, attempts=1)

    def _commit(self, plan: Plan, outcome: StepOutcome):
        step = plan.step(outcome.index)
        step.attempts += outcome.attempts

        if outcome.error is None:
            step.status = StepStatus.SUCCEEDED
            step.output = outcome.output
            step.error = None
            logger.info(f"Plan {plan.plan_id}: step {step.index} succeeded")
            return

        error = outcome.error
        step.status = StepStatus.FAILED
        step.error = f"{type(error).__name__}: {error}"
        logger.error(format_error_summary(create_step_error_context(plan, step, error)))

        if not isinstance(error, InsufficientCredit) and plan.status in (PlanStatus.ACTIVE, PlanStatus.PAUSED):
            plan.status = PlanStatus.FAILED
            self._release(plan)
            logger.error(f"Plan {plan.plan_id} failed at step {step.index}")

    # ------------------------------------------------------------------
    # Step execution (no locks held)
    # ------------------------------------------------------------------

    def _step_cost(self, job: StepJob) -> int:
        tool = self.tools.get(job.assigned_agent)
        return tool.cost if tool is not None else self.config.step_cost

    async def _run_step(self, job: StepJob) -> StepOutcome:
        cost = self._step_cost(job)
        metrics = self.metrics.start_step(job.plan_id, job.index, job.assigned_agent)

        if cost:
            try:
                await self.ledger.debit(
                    job.user_id, cost, reason=f"step:{job.index}", conversation_id=job.conversation_id
                )
            except (InsufficientCredit, StorageError) as e:
                self.metrics.finish_step(job.plan_id, job.index, False, type(e).__name__)
                return StepOutcome(index=job.index, error=e)
        metrics.credits_spent = cost

        attempts = 0
        while True:
            attempts += 1
            metrics.attempts = attempts
            try:
                output = await self._invoke(job)
                if not output.strip():
                    raise EmptyOutput(f"step {job.index} produced no output")
                if job.collaborator and self.router is not None:
                    output = await self._collaborate(job, output)
                else:
                    await self.conversations.record(
                        job.conversation_id, job.user_id, job.assigned_agent, Role.ASSISTANT, output
                    )
            except (ToolError, EmptyOutput) as e:
                if attempts <= self.config.step_retries:
                    logger.warning(f"Step {job.index} of plan {job.plan_id} attempt {attempts} failed ({e}), retrying")
                    continue
                self.metrics.finish_step(job.plan_id, job.index, False, type(e).__name__)
                return StepOutcome(index=job.index, error=e, attempts=attempts)
            except TeamflowError as e:
                self.metrics.finish_step(job.plan_id, job.index, False, type(e).__name__)
                return StepOutcome(index=job.index, error=e, attempts=attempts)

            metrics.output_chars = len(output)
            self.metrics.finish_step(job.plan_id, job.index, True)
            return StepOutcome(index=job.index, output=output, attempts=attempts)

    async def _invoke(self, job: StepJob) -> str:
        tool = self.tools.get(job.assigned_agent)
        window = await self.conversations.get_window(job.conversation_id, job.user_id, self.config.context_window)

        if tool is not None:
            context = ToolContext(
                plan_id=job.plan_id,
                conversation_id=job.conversation_id,
                user_id=job.user_id,
                step_index=job.index,
                dependency_outputs=dict(job.dependency_outputs),
                window=list(window),
            )
            try:
                return await tool.handler(job.description, context) or ""
            except TeamflowError:
                raise
            except Exception as e:
                raise ToolError(f"{tool.name}: {e}") from e

        profile = self.agents.get(job.assigned_agent) or self.agents.default_agent
        prompt = STEP_PROMPT.format(task=job.task, index=job.index, description=job.description)
        if job.dependency_outputs:
            results = "\n\n".join(f"Step {i}:\n{out}" for i, out in job.dependency_outputs.items())
            prompt += f"\n\nResults from earlier steps:\n{results}"

        messages = append_user_message(turns_to_messages(window, profile.agent_id), prompt)
        return await self.gateway.complete(
            profile.persona_prompt(),
            messages,
            purpose=f"step:{job.index}",
            max_tokens=self.config.step_max_tokens,
            model=profile.model,
        )

    async def _collaborate(self, job: StepJob, output: str) -> str:
        """Route the output to the collaborator; the router records both turns."""
        reply = await self.router.route(
            job.assigned_agent,
            job.collaborator,
            job.conversation_id,
            output,
            user_id=job.user_id,
        )
        return f"{output}\n\n[{job.collaborator}]: {reply}"

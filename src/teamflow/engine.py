"""
Orchestration engine for team task execution.

Integrates all components:
- CreditLedger admission control for every paid call
- ConversationStore as the shared context of a conversation
- ModelGateway as the single upstream path (retry, timeout, circuit breaker)
- TaskDecomposer for planning and refinement
- WorkflowExecutor for dependency-aware, resumable plan execution
- AgentRouter for agent-to-agent collaboration
"""

import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .agents.error_context import create_plan_error_context, format_error_summary
from .agents.logging_config import get_logger
from .agents.metrics import MetricsCollector
from .agents.profiles import AgentDirectory, AgentProfile
from .conversation_store import ConversationStore
from .credit_ledger import CreditLedger, LedgerConfig
from .decomposer import DecomposerConfig, TaskDecomposer
from .errors import PlanInvalid, PlanNotFound, WorkflowStateError
from .gateway import GatewayConfig, ModelGateway
from .persistence import InMemoryPersistence, Persistence, SqlitePersistence
from .plan import Plan, PlanStatus, StepStatus, WorkflowStatus
from .records import USER_PARTICIPANT, CreditEntry, Role
from .router import AgentRouter, RouterConfig
from .tools import ToolRegistry
from .workflow import ExecutorConfig, WorkflowExecutor

logger = get_logger("engine")


@dataclass
class EngineConfig:
    """Configuration for orchestration engine."""
    # Storage (SQLite when set, in-memory otherwise)
    db_path: Optional[str] = None

    # Team
    agents: List[AgentProfile] = field(default_factory=list)
    default_agent: Optional[str] = None

    # Component configs
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    decomposer: DecomposerConfig = field(default_factory=DecomposerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    router: RouterConfig = field(default_factory=RouterConfig)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build a config from environment variables.

        Recognized: TEAMFLOW_DB_PATH, TEAMFLOW_MODEL, TEAMFLOW_MAX_CONCURRENT,
        TEAMFLOW_STEP_COST, TEAMFLOW_INITIAL_CREDITS, TEAMFLOW_DAILY_CREDITS,
        TEAMFLOW_MAX_RETRIES, TEAMFLOW_TIMEOUT, ANTHROPIC_API_KEY.
        """
        env = os.environ if environ is None else environ
        config = cls(db_path=env.get("TEAMFLOW_DB_PATH") or None)

        config.gateway.api_key = env.get("ANTHROPIC_API_KEY") or None
        if env.get("TEAMFLOW_MODEL"):
            config.gateway.model = env["TEAMFLOW_MODEL"]
        if env.get("TEAMFLOW_MAX_RETRIES"):
            config.gateway.max_retries = int(env["TEAMFLOW_MAX_RETRIES"])
        if env.get("TEAMFLOW_TIMEOUT"):
            config.gateway.timeout_seconds = float(env["TEAMFLOW_TIMEOUT"])
        if env.get("TEAMFLOW_MAX_CONCURRENT"):
            config.executor.max_concurrent = int(env["TEAMFLOW_MAX_CONCURRENT"])
        if env.get("TEAMFLOW_STEP_COST"):
            config.executor.step_cost = int(env["TEAMFLOW_STEP_COST"])
        if env.get("TEAMFLOW_INITIAL_CREDITS"):
            config.ledger.initial_grant = int(env["TEAMFLOW_INITIAL_CREDITS"])
        if env.get("TEAMFLOW_DAILY_CREDITS"):
            config.ledger.daily_allowance = int(env["TEAMFLOW_DAILY_CREDITS"])
        return config


class OrchestrationEngine:
    """
    API surface for task submission, workflow control and collaboration.

    Every entry point takes the authenticated `user_id`; plans belonging to
    another user are reported as not found.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        persistence: Optional[Persistence] = None,
        gateway: Optional[ModelGateway] = None,
        tools: Optional[ToolRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize orchestration engine.

        Args:
            config: Engine configuration
            persistence: Storage override (defaults from config.db_path)
            gateway: Model gateway override (tests pass a scripted one)
            tools: Tools steps may be bound to
            clock: Wall clock for timestamps and credit refills
        """
        self.config = config or EngineConfig()
        self._clock = clock

        if persistence is None:
            persistence = SqlitePersistence(self.config.db_path) if self.config.db_path else InMemoryPersistence()
        self.persistence = persistence

        self.metrics = MetricsCollector()
        self.agents = AgentDirectory(self.config.agents, self.config.default_agent)
        self.tools = tools or ToolRegistry()
        self.gateway = gateway or ModelGateway(self.config.gateway, metrics=self.metrics)

        self.ledger = CreditLedger(persistence, self.config.ledger, clock=clock)
        self.conversations = ConversationStore(persistence, clock=clock)
        self.router = AgentRouter(
            self.gateway, self.conversations, self.agents,
            ledger=self.ledger, config=self.config.router,
        )
        self.decomposer = TaskDecomposer(
            self.gateway, self.conversations, self.agents,
            tools=self.tools, config=self.config.decomposer, clock=clock,
        )
        self.executor = WorkflowExecutor(
            persistence, self.ledger, self.conversations, self.gateway, self.agents,
            tools=self.tools, router=self.router, config=self.config.executor,
            metrics=self.metrics, clock=clock,
        )

        self._started = False

    async def start(self):
        """Recover unfinished plans (they come back paused)."""
        recovered = await self.executor.recover()
        self._started = True
        logger.info(
            f"Orchestration engine started: {len(self.agents)} agent(s), "
            f"{len(self.tools.names())} tool(s), max {self.config.executor.max_concurrent} concurrent step(s), "
            f"{len(recovered)} plan(s) awaiting resume"
        )

    async def stop(self):
        await self.executor.close()
        await self.persistence.close()
        self._started = False
        logger.info("Orchestration engine stopped")

    async def _owned(self, user_id: str, plan_id: str) -> Plan:
        plan = await self.executor.get_plan(plan_id)
        if plan.user_id != user_id:
            raise PlanNotFound(f"no plan {plan_id}")
        return plan

    def _successor(self, plan: Plan) -> Plan:
        """New draft plan carrying a terminal plan's finished work forward."""
        successor = plan.clone()
        successor.plan_id = uuid.uuid4().hex
        successor.status = PlanStatus.DRAFT
        successor.created_at = successor.updated_at = self._clock()
        for step in successor.steps:
            if step.status in (StepStatus.FAILED, StepStatus.RUNNING):
                step.reset()
        return successor

    # ------------------------------------------------------------------
    # Tasks and workflows
    # ------------------------------------------------------------------

    async def submit_task(
        self,
        user_id: str,
        conversation_id: str,
        task_text: str,
        *,
        start: bool = True,
        wait: bool = True,
    ) -> WorkflowStatus:
        """
        Decompose a task into a plan and (by default) run it.

        Args:
            user_id: Authenticated user
            conversation_id: Conversation the task belongs to
            task_text: Free-text task
            start: Start the plan right away; otherwise it stays a draft
            wait: Return once the plan is terminal or paused

        Raises:
            WorkflowStateError: The conversation already has an open plan
            PlanInvalid: No valid plan could be produced
        """
        open_id = self.executor.open_plan_id(conversation_id)
        if open_id is not None:
            raise WorkflowStateError(f"conversation {conversation_id} already has an open plan {open_id}")

        try:
            plan = await self.decomposer.decompose(conversation_id, task_text, user_id=user_id)
        except PlanInvalid as e:
            logger.error(format_error_summary(create_plan_error_context(conversation_id, e)))
            raise

        status = await self.executor.register(plan)
        await self.conversations.record(conversation_id, user_id, USER_PARTICIPANT, Role.USER, task_text)

        if start:
            return await self.executor.start(plan.plan_id, wait=wait)
        return status

    async def refine(self, user_id: str, plan_id: str, feedback: str) -> WorkflowStatus:
        """
        Revise a plan from feedback.

        A live plan is revised in place; a terminal plan yields a new draft
        plan that keeps the finished work.
        """
        plan = await self._owned(user_id, plan_id)
        revised = await self.decomposer.refine(plan.conversation_id, plan, feedback, user_id=user_id)

        if plan.status.is_terminal:
            status = await self.executor.register(self._successor(revised))
            logger.info(f"Plan {plan_id} is {plan.status.value}; refined into new plan {status.plan_id}")
        else:
            status = await self.executor.revise(plan_id, revised, base=plan)

        await self.conversations.record(plan.conversation_id, user_id, USER_PARTICIPANT, Role.USER, feedback)
        return status

    async def continue_workflow(self, user_id: str, plan_id: str, *, wait: bool = False) -> WorkflowStatus:
        """
        Start a draft, resume a paused plan, or rerun a failed plan.

        Rerunning starts a new plan in which failed steps are pending again
        and finished steps keep their output.
        """
        plan = await self._owned(user_id, plan_id)
        if not plan.status.is_terminal:
            return await self.executor.continue_workflow(plan_id, wait=wait)

        successor = self._successor(plan)
        if not any(s.status == StepStatus.PENDING for s in successor.steps):
            raise WorkflowStateError(f"plan {plan_id} is {plan.status.value} with nothing left to run")
        await self.executor.register(successor)
        logger.info(f"Plan {plan_id} is {plan.status.value}; continuing as {successor.plan_id}")
        return await self.executor.start(successor.plan_id, wait=wait)

    async def resume(self, user_id: str, plan_id: str, *, wait: bool = False) -> WorkflowStatus:
        await self._owned(user_id, plan_id)
        return await self.executor.resume(plan_id, wait=wait)

    async def pause(self, user_id: str, plan_id: str) -> WorkflowStatus:
        await self._owned(user_id, plan_id)
        return await self.executor.pause(plan_id)

    async def complete(self, user_id: str, plan_id: str) -> WorkflowStatus:
        await self._owned(user_id, plan_id)
        return await self.executor.complete(plan_id)

    async def status(self, user_id: str, plan_id: str) -> WorkflowStatus:
        await self._owned(user_id, plan_id)
        return await self.executor.status(plan_id)

    async def wait(self, user_id: str, plan_id: str) -> WorkflowStatus:
        await self._owned(user_id, plan_id)
        return await self.executor.wait(plan_id)

    # ------------------------------------------------------------------
    # Collaboration
    # ------------------------------------------------------------------

    async def route(
        self,
        user_id: str,
        sender_id: str,
        receiver_id: str,
        conversation_id: str,
        message: str,
    ) -> str:
        return await self.router.route(sender_id, receiver_id, conversation_id, message, user_id=user_id)

    async def broadcast(
        self,
        user_id: str,
        sender_id: str,
        conversation_id: str,
        message: str,
        recipients: Optional[List[str]] = None,
    ) -> Dict[str, str]:
        return await self.router.broadcast(
            sender_id, conversation_id, message, user_id=user_id, recipients=recipients
        )

    # ------------------------------------------------------------------
    # History and credit
    # ------------------------------------------------------------------

    async def clear_history(self, user_id: str) -> int:
        return await self.conversations.clear(user_id)

    async def top_up(self, user_id: str, amount: int) -> int:
        return await self.ledger.credit(user_id, amount)

    async def balance(self, user_id: str) -> int:
        return await self.ledger.get_balance(user_id)

    async def credit_history(self, user_id: str) -> List[CreditEntry]:
        return await self.ledger.history(user_id)

    def get_statistics(self) -> Dict[str, Any]:
        """Get execution metrics, upstream health and executor load."""
        return {
            "metrics": self.metrics.summary(),
            "gateway": self.gateway.breaker.get_status(),
            "executor": self.executor.get_status(),
        }


# Convenience function for quick start
async def create_engine(
    db_path: Optional[str] = None,
    config: Optional[EngineConfig] = None,
    **kwargs: Any,
) -> OrchestrationEngine:
    """
    Create and start an orchestration engine.

    Args:
        db_path: Optional path to SQLite database (overrides config)
        config: Engine configuration, defaults to the environment
        **kwargs: Passed to OrchestrationEngine (persistence, gateway, tools, clock)

    Returns:
        Started OrchestrationEngine instance
    """
    config = config or EngineConfig.from_environment()
    if db_path:
        config.db_path = db_path
    engine = OrchestrationEngine(config, **kwargs)
    await engine.start()
    return engine

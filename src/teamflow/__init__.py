"""
Task decomposition and multi-agent workflow orchestration.

A user hands a free-text task to a team of agents; the engine:
- Classifies it and decomposes complex tasks into an ordered plan of steps
- Executes the plan with dependency-aware concurrency, pause/resume and
  mid-flight refinement
- Routes messages between agents collaborating on one conversation
- Gates every paid model call behind a per-user credit budget

Usage:
    from teamflow import create_engine

    engine = await create_engine()
    status = await engine.submit_task("user-1", "conv-1", "Build and deploy a token contract")
    print(status.final_output)
"""

from .engine import (
    OrchestrationEngine,
    EngineConfig,
    create_engine
)
from .agents import (
    AgentDirectory,
    AgentProfile,
    MetricsCollector,
)
from .conversation_store import ConversationStore
from .credit_ledger import CreditLedger, LedgerConfig
from .decomposer import DecomposerConfig, TaskDecomposer
from .errors import (
    EmptyOutput,
    InsufficientCredit,
    InvalidRoute,
    ModelRejected,
    ModelUnavailable,
    PlanInvalid,
    PlanNotFound,
    StorageError,
    TeamflowError,
    ToolError,
    WorkflowStateError,
)
from .gateway import GatewayConfig, ModelGateway
from .persistence import InMemoryPersistence, Persistence, SqlitePersistence
from .plan import Complexity, Plan, PlanStatus, Step, StepStatus, WorkflowStatus
from .records import ConversationTurn, CreditAccount, CreditEntry, Role
from .router import AgentRouter, RouterConfig
from .tools import ToolContext, ToolRegistry, ToolSpec
from .workflow import ExecutorConfig, WorkflowExecutor

__version__ = "0.1.0"

__all__ = [
    # Engine
    "OrchestrationEngine",
    "EngineConfig",
    "create_engine",
    # Components
    "CreditLedger",
    "LedgerConfig",
    "ConversationStore",
    "ModelGateway",
    "GatewayConfig",
    "TaskDecomposer",
    "DecomposerConfig",
    "WorkflowExecutor",
    "ExecutorConfig",
    "AgentRouter",
    "RouterConfig",
    # Persistence
    "Persistence",
    "InMemoryPersistence",
    "SqlitePersistence",
    # Records
    "Plan",
    "Step",
    "PlanStatus",
    "StepStatus",
    "Complexity",
    "WorkflowStatus",
    "ConversationTurn",
    "Role",
    "CreditAccount",
    "CreditEntry",
    # Agents and tools
    "AgentDirectory",
    "AgentProfile",
    "MetricsCollector",
    "ToolContext",
    "ToolRegistry",
    "ToolSpec",
    # Errors
    "TeamflowError",
    "InsufficientCredit",
    "PlanInvalid",
    "ModelUnavailable",
    "ModelRejected",
    "InvalidRoute",
    "StorageError",
    "PlanNotFound",
    "WorkflowStateError",
    "ToolError",
    "EmptyOutput",
]

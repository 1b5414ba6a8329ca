"""
Actionable error context for failed steps and upstream calls.

Provides structured error messages with:
- Plan and step details
- Agent assignment
- Environment diagnostics
- Troubleshooting hints and recovery suggestions
"""

import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import anthropic

from ..errors import (
    InsufficientCredit,
    InvalidRoute,
    ModelRejected,
    ModelUnavailable,
    PlanInvalid,
    StorageError,
    ToolError,
)

RULE = "══════════════════════════════════════════════════════════════"


@dataclass
class ErrorContext:
    """Structured error context for production debugging."""
    error_type: str
    error_message: str
    plan_id: Optional[str] = None
    conversation_id: Optional[str] = None
    step_index: Optional[int] = None
    step_description: Optional[str] = None
    agent_id: Optional[str] = None
    attempts: Optional[int] = None
    troubleshooting_hints: Optional[List[str]] = None
    recovery_suggestions: Optional[List[str]] = None
    environment_info: Optional[Dict[str, str]] = None

    def format(self) -> str:
        """Format error context as human-readable string."""
        parts = [
            f"╔{RULE}",
            f"║ {self.error_type}: {self.error_message}",
            f"╠{RULE}",
        ]

        if self.plan_id:
            parts.append("║ Plan:")
            parts.append(f"║   ID: {self.plan_id}")
            if self.conversation_id:
                parts.append(f"║   Conversation: {self.conversation_id}")

        if self.step_index is not None:
            parts.append("║ Step:")
            parts.append(f"║   Index: {self.step_index}")
            if self.step_description:
                desc = self.step_description[:100]
                parts.append(f"║   Description: {desc}...")
            if self.agent_id:
                parts.append(f"║   Agent: {self.agent_id}")
            if self.attempts is not None:
                parts.append(f"║   Attempts: {self.attempts}")
        elif self.agent_id:
            parts.append("║ Agent:")
            parts.append(f"║   ID: {self.agent_id}")

        if self.environment_info:
            parts.append("║ Environment:")
            for key, value in self.environment_info.items():
                parts.append(f"║   {key}: {value}")

        if self.troubleshooting_hints:
            parts.append(f"╠{RULE}")
            parts.append("║ Troubleshooting:")
            for hint in self.troubleshooting_hints:
                parts.append(f"║   • {hint}")

        if self.recovery_suggestions:
            parts.append(f"╠{RULE}")
            parts.append("║ Recovery:")
            for suggestion in self.recovery_suggestions:
                parts.append(f"║   → {suggestion}")

        parts.append(f"╚{RULE}")

        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "error_message": self.error_message,
            "plan_id": self.plan_id,
            "step_index": self.step_index,
            "agent_id": self.agent_id,
            "troubleshooting_hints": list(self.troubleshooting_hints or []),
            "recovery_suggestions": list(self.recovery_suggestions or []),
        }


def get_environment_info() -> Dict[str, str]:
    """Get environment information for diagnostics."""
    info = {
        "Python": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "Platform": sys.platform,
        "anthropic SDK": getattr(anthropic, "__version__", "unknown"),
    }

    key = os.environ.get("ANTHROPIC_API_KEY")
    if key:
        info["API Key"] = f"Configured ({key[:7]}...{key[-4:]})"
    else:
        info["API Key"] = "NOT CONFIGURED"

    return info


def _hints_for(error: Exception):
    troubleshooting: List[str] = []
    recovery: List[str] = []

    if isinstance(error, InsufficientCredit):
        troubleshooting.append(f"User {error.user_id} cannot cover {error.required} credit(s)")
        recovery.append("Top up the user's balance, then resume the workflow")
        recovery.append("Independent steps keep running while credit lasts")

    elif isinstance(error, ModelUnavailable):
        troubleshooting.append("Upstream model stayed unavailable through all retries")
        troubleshooting.append("Rate limits, overload and timeouts all count as transient")
        recovery.append("Resume the workflow once the provider recovers")
        recovery.append("Check provider status: https://status.anthropic.com")

    elif isinstance(error, ModelRejected):
        troubleshooting.append("Upstream rejected the request permanently")
        if "key" in str(error).lower() or "auth" in str(error).lower():
            troubleshooting.append("API key may be missing or invalid")
            recovery.append("Set API key: export ANTHROPIC_API_KEY='sk-ant-...'")
        recovery.append("Refine the step so the request is accepted, then resume")

    elif isinstance(error, ToolError):
        troubleshooting.append("Tool handler raised or returned nothing")
        recovery.append("Check the tool's own logs and inputs")

    elif isinstance(error, InvalidRoute):
        troubleshooting.append("Collaborator is unknown, the sender itself, or the hop ceiling was hit")
        recovery.append("Refine the step with a different collaborator")

    elif isinstance(error, StorageError):
        troubleshooting.append("Persistence collaborator failed; nothing was committed")
        recovery.append("Verify the database path is writable")

    return troubleshooting, recovery


def create_step_error_context(plan: Any, step: Any, error: Exception) -> ErrorContext:
    """Create error context for a step that failed during execution."""
    troubleshooting, recovery = _hints_for(error)
    troubleshooting.insert(0, f"Step {step.index} failed after {step.attempts} attempt(s)")

    return ErrorContext(
        error_type=type(error).__name__,
        error_message=str(error),
        plan_id=plan.plan_id,
        conversation_id=plan.conversation_id,
        step_index=step.index,
        step_description=step.description,
        agent_id=step.assigned_agent,
        attempts=step.attempts,
        troubleshooting_hints=troubleshooting,
        recovery_suggestions=recovery,
        environment_info=get_environment_info() if isinstance(error, (ModelRejected, ModelUnavailable)) else None,
    )


def create_gateway_error_context(purpose: str, error: Exception, attempts: int) -> ErrorContext:
    """Create error context for an upstream call that gave up."""
    troubleshooting, recovery = _hints_for(error)
    troubleshooting.insert(0, f"Call '{purpose}' gave up after {attempts} attempt(s)")

    return ErrorContext(
        error_type=type(error).__name__,
        error_message=str(error),
        attempts=attempts,
        troubleshooting_hints=troubleshooting,
        recovery_suggestions=recovery,
        environment_info=get_environment_info(),
    )


def create_plan_error_context(conversation_id: str, error: PlanInvalid) -> ErrorContext:
    """Create error context for a decomposition that stayed invalid."""
    troubleshooting = [
        "Decomposition output failed validation twice",
        f"Found {len(error.issues)} issue(s)",
    ]

    return ErrorContext(
        error_type="PlanInvalid",
        error_message=f"Plan rejected with {len(error.issues)} issue(s)",
        conversation_id=conversation_id,
        troubleshooting_hints=troubleshooting + error.issues[:5],
        recovery_suggestions=["Rephrase the task with clearer, smaller deliverables"],
    )


def format_error_summary(error_context: ErrorContext) -> str:
    """
    Format error concisely for logs and API responses.

    Keeps the first three hints and first two suggestions.
    """
    parts = [f"{error_context.error_type}: {error_context.error_message}"]

    if error_context.step_index is not None:
        parts.append(f"Step: {error_context.step_index} of plan {error_context.plan_id}")

    if error_context.agent_id:
        parts.append(f"Agent: {error_context.agent_id}")

    if error_context.troubleshooting_hints:
        parts.append("Troubleshooting:")
        for hint in error_context.troubleshooting_hints[:3]:
            parts.append(f"  • {hint}")

    if error_context.recovery_suggestions:
        parts.append("Recovery:")
        for suggestion in error_context.recovery_suggestions[:2]:
            parts.append(f"  → {suggestion}")

    return "\n".join(parts)

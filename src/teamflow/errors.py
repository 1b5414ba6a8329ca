"""
Error taxonomy for the orchestration engine.

Every error raised across a component boundary derives from TeamflowError
and keeps its class when it propagates, so callers can tell transient
upstream trouble (ModelUnavailable) from permanent rejections
(ModelRejected) without parsing messages.
"""

from typing import List, Optional


class TeamflowError(Exception):
    """Base class for all engine errors."""


class InsufficientCredit(TeamflowError):
    """The user's credit balance cannot cover the requested model call."""

    def __init__(self, user_id: str, required: int, balance: Optional[int] = None):
        self.user_id = user_id
        self.required = required
        self.balance = balance
        detail = f"user {user_id} needs {required} credit(s)"
        if balance is not None:
            detail += f", balance is {balance}"
        super().__init__(detail)


class PlanInvalid(TeamflowError):
    """Decomposition produced an unusable plan after the correction attempt."""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        summary = "; ".join(self.issues[:5]) or "no usable steps"
        super().__init__(f"plan rejected: {summary}")


class ModelUnavailable(TeamflowError):
    """Transient upstream failure that outlived the gateway's retries."""


class ModelRejected(TeamflowError):
    """Upstream refused the request; retrying will not help."""


class InvalidRoute(TeamflowError):
    """Self-route, unknown receiver or hop ceiling reached."""


class StorageError(TeamflowError):
    """The persistence collaborator is unavailable; nothing was applied."""


class PlanNotFound(TeamflowError):
    """No plan with that id exists for the caller."""


class WorkflowStateError(TeamflowError):
    """Transition not allowed from the plan's current status."""


class ToolError(TeamflowError):
    """A tool bound to a step failed."""


class EmptyOutput(TeamflowError):
    """A step finished without producing any output."""


__all__ = [
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

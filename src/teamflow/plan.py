"""
Plan and Step records for decomposed tasks.

A Plan is the ordered set of Steps produced by decomposing one task. Steps
are addressed by a 1-based index that never changes once assigned; a step
depends only on steps with a lower index, which keeps the dependency graph
acyclic by construction.
"""

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple


class StepStatus(Enum):
    """Step execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses that satisfy a dependency edge
SETTLED = frozenset({StepStatus.SUCCEEDED, StepStatus.SKIPPED})


class PlanStatus(Enum):
    """Workflow status of a whole plan."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PlanStatus.COMPLETED, PlanStatus.FAILED)


class Complexity(Enum):
    """Outcome of the simple-vs-complex classification."""
    SIMPLE = "simple"
    COMPLEX = "complex"


@dataclass
class Step:
    """
    One unit of work in a Plan.

    `assigned_agent` is either an agent id from the directory or the name of
    a registered tool. `collaborator` optionally names a second agent the
    step's output is routed to before the step counts as done.
    """
    index: int
    description: str
    assigned_agent: str
    depends_on: Set[int] = field(default_factory=set)
    status: StepStatus = StepStatus.PENDING
    output: Optional[str] = None
    error: Optional[str] = None
    collaborator: Optional[str] = None
    attempts: int = 0

    def is_ready(self, settled: Set[int]) -> bool:
        """Check if the step is pending and all dependencies are settled."""
        return self.status == StepStatus.PENDING and self.depends_on <= settled

    def reset(self):
        """Return the step to pending, dropping any previous result."""
        self.status = StepStatus.PENDING
        self.output = None
        self.error = None
        self.attempts = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "description": self.description,
            "assigned_agent": self.assigned_agent,
            "depends_on": sorted(self.depends_on),
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "collaborator": self.collaborator,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            index=int(data["index"]),
            description=data["description"],
            assigned_agent=data["assigned_agent"],
            depends_on=set(data.get("depends_on") or []),
            status=StepStatus(data.get("status", "pending")),
            output=data.get("output"),
            error=data.get("error"),
            collaborator=data.get("collaborator"),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass
class Plan:
    """
    Ordered steps for one task in one conversation.

    Mutated only by the WorkflowExecutor once registered.
    """
    plan_id: str
    conversation_id: str
    user_id: str
    task: str
    steps: List[Step]
    status: PlanStatus = PlanStatus.DRAFT
    complexity: Complexity = Complexity.COMPLEX
    revision: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at

    def step(self, index: int) -> Step:
        for step in self.steps:
            if step.index == index:
                return step
        raise KeyError(f"plan {self.plan_id} has no step {index}")

    @property
    def max_index(self) -> int:
        return max((s.index for s in self.steps), default=0)

    def settled_indices(self) -> Set[int]:
        return {s.index for s in self.steps if s.status in SETTLED}

    def get_ready_steps(self) -> List[Step]:
        """Get pending steps whose dependencies are all settled, by index."""
        settled = self.settled_indices()
        return [s for s in sorted(self.steps, key=lambda s: s.index) if s.is_ready(settled)]

    def get_running_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.RUNNING]

    def get_blocked_steps(self) -> List[Step]:
        """
        Get pending steps that can never run.

        A step is blocked when a dependency failed or is itself blocked.
        """
        blocked: Set[int] = {s.index for s in self.steps if s.status == StepStatus.FAILED}
        result = []
        for step in sorted(self.steps, key=lambda s: s.index):
            if step.status == StepStatus.PENDING and step.depends_on & blocked:
                blocked.add(step.index)
                result.append(step)
        return result

    def all_settled(self) -> bool:
        return all(s.status in SETTLED for s in self.steps)

    def has_failures(self) -> bool:
        return any(s.status == StepStatus.FAILED for s in self.steps)

    def validate(self) -> bool:
        """Validate index ordering and dependency edges."""
        indices = [s.index for s in self.steps]
        if indices != sorted(set(indices)):
            return False
        known = set(indices)
        return all(
            dep in known and dep < step.index
            for step in self.steps
            for dep in step.depends_on
        )

    def final_output(self) -> str:
        outputs = [
            s.output for s in sorted(self.steps, key=lambda s: s.index)
            if s.status == StepStatus.SUCCEEDED and s.output
        ]
        return "\n\n".join(outputs)

    def touch(self, now: Optional[float] = None):
        self.updated_at = now if now is not None else time.time()

    def clone(self) -> "Plan":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "task": self.task,
            "status": self.status.value,
            "complexity": self.complexity.value,
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "steps": [s.to_dict() for s in sorted(self.steps, key=lambda s: s.index)],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        return cls(
            plan_id=data["plan_id"],
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            task=data["task"],
            steps=[Step.from_dict(s) for s in data.get("steps", [])],
            status=PlanStatus(data.get("status", "draft")),
            complexity=Complexity(data.get("complexity", "complex")),
            revision=int(data.get("revision", 0)),
            created_at=float(data["created_at"]),
            updated_at=float(data.get("updated_at") or data["created_at"]),
        )


@dataclass(frozen=True)
class StepSnapshot:
    """Read-only view of a step inside a WorkflowStatus."""
    index: int
    description: str
    assigned_agent: str
    depends_on: Tuple[int, ...]
    status: StepStatus
    output: Optional[str]
    error: Optional[str]
    collaborator: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "description": self.description,
            "assigned_agent": self.assigned_agent,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "collaborator": self.collaborator,
        }


@dataclass(frozen=True)
class WorkflowStatus:
    """Immutable snapshot of a plan, safe to hand to callers."""
    plan_id: str
    conversation_id: str
    status: PlanStatus
    revision: int
    steps: Tuple[StepSnapshot, ...]
    final_output: str
    updated_at: float

    @classmethod
    def from_plan(cls, plan: Plan) -> "WorkflowStatus":
        return cls(
            plan_id=plan.plan_id,
            conversation_id=plan.conversation_id,
            status=plan.status,
            revision=plan.revision,
            steps=tuple(
                StepSnapshot(
                    index=s.index,
                    description=s.description,
                    assigned_agent=s.assigned_agent,
                    depends_on=tuple(sorted(s.depends_on)),
                    status=s.status,
                    output=s.output,
                    error=s.error,
                    collaborator=s.collaborator,
                )
                for s in sorted(plan.steps, key=lambda s: s.index)
            ),
            final_output=plan.final_output(),
            updated_at=plan.updated_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, index: int) -> StepSnapshot:
        for snapshot in self.steps:
            if snapshot.index == index:
                return snapshot
        raise KeyError(index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "revision": self.revision,
            "steps": [s.to_dict() for s in self.steps],
            "final_output": self.final_output,
            "updated_at": self.updated_at,
        }

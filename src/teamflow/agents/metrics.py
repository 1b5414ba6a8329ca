"""
Execution metrics for steps, agents and upstream calls.

Tracks step duration, success rates, retries and credit spend for
monitoring; exposed through OrchestrationEngine.get_statistics().
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class StepMetrics:
    """Metrics for a single step execution."""
    plan_id: str
    step_index: int
    agent_id: str
    start_time: float
    end_time: Optional[float] = None
    duration_seconds: Optional[float] = None
    success: bool = False
    error_type: Optional[str] = None
    attempts: int = 0
    credits_spent: int = 0
    output_chars: int = 0

    @property
    def key(self) -> str:
        return f"{self.plan_id}:{self.step_index}"

    def finalize(self, success: bool, error_type: Optional[str] = None):
        """Mark step as complete and calculate duration."""
        self.end_time = time.time()
        self.duration_seconds = self.end_time - self.start_time
        self.success = success
        self.error_type = error_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "step_index": self.step_index,
            "agent_id": self.agent_id,
            "start_time": datetime.fromtimestamp(self.start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.end_time).isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "success": self.success,
            "error_type": self.error_type,
            "attempts": self.attempts,
            "credits_spent": self.credits_spent,
            "output_chars": self.output_chars,
        }


@dataclass
class AgentMetrics:
    """Aggregate metrics for an agent."""
    agent_id: str
    total_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    total_duration_seconds: float = 0.0
    avg_duration_seconds: float = 0.0
    min_duration_seconds: Optional[float] = None
    max_duration_seconds: Optional[float] = None
    total_credits_spent: int = 0
    errors_by_type: Dict[str, int] = field(default_factory=dict)

    def update(self, step_metrics: StepMetrics):
        """Update aggregate metrics with a finished step."""
        self.total_steps += 1
        self.total_credits_spent += step_metrics.credits_spent

        if step_metrics.success:
            self.successful_steps += 1
        else:
            self.failed_steps += 1
            if step_metrics.error_type:
                self.errors_by_type[step_metrics.error_type] = self.errors_by_type.get(step_metrics.error_type, 0) + 1

        if step_metrics.duration_seconds is not None:
            duration = step_metrics.duration_seconds
            self.total_duration_seconds += duration
            self.avg_duration_seconds = self.total_duration_seconds / self.total_steps

            if self.min_duration_seconds is None or duration < self.min_duration_seconds:
                self.min_duration_seconds = duration

            if self.max_duration_seconds is None or duration > self.max_duration_seconds:
                self.max_duration_seconds = duration

    def get_success_rate(self) -> float:
        """Calculate success rate as percentage."""
        if self.total_steps == 0:
            return 0.0
        return (self.successful_steps / self.total_steps) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "total_steps": self.total_steps,
            "successful_steps": self.successful_steps,
            "failed_steps": self.failed_steps,
            "success_rate": self.get_success_rate(),
            "total_duration_seconds": self.total_duration_seconds,
            "avg_duration_seconds": self.avg_duration_seconds,
            "min_duration_seconds": self.min_duration_seconds,
            "max_duration_seconds": self.max_duration_seconds,
            "total_credits_spent": self.total_credits_spent,
            "errors_by_type": dict(self.errors_by_type),
        }


@dataclass
class CallMetrics:
    """Aggregate metrics for upstream model calls of one purpose."""
    purpose: str
    calls: int = 0
    failures: int = 0
    retries: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purpose": self.purpose,
            "calls": self.calls,
            "failures": self.failures,
            "retries": self.retries,
        }


class MetricsCollector:
    """
    Metrics collection for one engine instance.

    Tracks step executions and maintains aggregate statistics per agent
    and per model-call purpose.
    """

    def __init__(self):
        self.step_metrics: Dict[str, StepMetrics] = {}
        self.agent_metrics: Dict[str, AgentMetrics] = {}
        self.call_metrics: Dict[str, CallMetrics] = {}

    def start_step(self, plan_id: str, step_index: int, agent_id: str) -> StepMetrics:
        """
        Start tracking a step.

        Args:
            plan_id: Plan the step belongs to
            step_index: 1-based step index
            agent_id: Agent or tool executing the step

        Returns:
            StepMetrics instance for this step
        """
        metrics = StepMetrics(
            plan_id=plan_id,
            step_index=step_index,
            agent_id=agent_id,
            start_time=time.time(),
        )
        self.step_metrics[metrics.key] = metrics
        return metrics

    def finish_step(
        self,
        plan_id: str,
        step_index: int,
        success: bool,
        error_type: Optional[str] = None
    ) -> Optional[StepMetrics]:
        """Finish tracking a step and update agent aggregates."""
        metrics = self.step_metrics.get(f"{plan_id}:{step_index}")
        if not metrics:
            return None

        metrics.finalize(success, error_type)

        agent_id = metrics.agent_id
        if agent_id not in self.agent_metrics:
            self.agent_metrics[agent_id] = AgentMetrics(agent_id=agent_id)
        self.agent_metrics[agent_id].update(metrics)

        return metrics

    def record_call(self, purpose: str, attempts: int, success: bool):
        """Record one gateway call; purposes like 'step:3' are grouped as 'step'."""
        group = purpose.split(":", 1)[0]
        metrics = self.call_metrics.setdefault(group, CallMetrics(purpose=group))
        metrics.calls += 1
        metrics.retries += max(attempts - 1, 0)
        if not success:
            metrics.failures += 1

    def get_step_metrics(self, plan_id: str, step_index: int) -> Optional[StepMetrics]:
        return self.step_metrics.get(f"{plan_id}:{step_index}")

    def get_agent_metrics(self, agent_id: str) -> Optional[AgentMetrics]:
        return self.agent_metrics.get(agent_id)

    def get_all_agent_metrics(self) -> Dict[str, AgentMetrics]:
        return dict(self.agent_metrics)

    def clear_plan(self, plan_id: str) -> int:
        """Drop the finished step metrics of one plan; agent aggregates are kept."""
        finished = [
            key for key, m in self.step_metrics.items()
            if m.plan_id == plan_id and m.end_time is not None
        ]
        for key in finished:
            del self.step_metrics[key]
        return len(finished)

    def summary(self) -> Dict[str, Any]:
        return {
            "agents": {aid: m.to_dict() for aid, m in sorted(self.agent_metrics.items())},
            "calls": {p: m.to_dict() for p, m in sorted(self.call_metrics.items())},
            "steps_tracked": len(self.step_metrics),
        }

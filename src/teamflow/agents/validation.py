"""
Validation for tasks and decomposition output.

Model output is untrusted: every step payload is checked for shape, agent
binding and dependency edges before it becomes part of a Plan.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..plan import Step, StepStatus

MAX_TASK_CHARS = 20000


@dataclass
class ValidationResult:
    """Result of validation check."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def validate_task_text(task_text: str) -> ValidationResult:
    """
    Validate a task before it reaches the model.

    Args:
        task_text: Free-text task from the user

    Returns:
        ValidationResult with errors and warnings
    """
    errors = []
    warnings = []

    text = (task_text or "").strip()
    if not text:
        errors.append("Task text is required")
    elif len(text) > MAX_TASK_CHARS:
        errors.append(f"Task text too long ({len(text)} chars, max {MAX_TASK_CHARS})")
    elif len(text.split()) < 2:
        warnings.append(f"Task text very brief ({len(text.split())} word)")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _parse_depends(value: Any, label: str, errors: List[str]) -> Set[int]:
    if value is None:
        return set()
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, list):
        errors.append(f"{label}: depends_on must be a list of step numbers")
        return set()
    deps = set()
    for item in value:
        try:
            deps.add(int(item))
        except (TypeError, ValueError):
            errors.append(f"{label}: dependency {item!r} is not a step number")
    return deps


def normalize_step_payload(
    raw: Any,
    index: int,
    *,
    agents: Set[str],
    default_agent: str,
    result: ValidationResult,
) -> Optional[Step]:
    """
    Turn one raw step object into a pending Step.

    Unknown agents are reassigned to the default agent with a warning;
    shape problems are recorded as errors and return None.
    """
    label = f"step {index}"
    if not isinstance(raw, dict):
        result.errors.append(f"{label}: expected an object, got {type(raw).__name__}")
        return None

    description = _first(raw, "description", "task", "step")
    if not isinstance(description, str) or not description.strip():
        result.errors.append(f"{label}: description is required")
        return None

    agent = _first(raw, "agent", "assigned_agent", "agent_id")
    agent = str(agent).strip() if agent is not None else ""
    if agent not in agents:
        result.warnings.append(f"{label}: unknown agent {agent or '<none>'!r}, assigned to {default_agent}")
        agent = default_agent

    collaborator = _first(raw, "collaborator", "collaborate_with")
    if collaborator is not None:
        collaborator = str(collaborator).strip()
        if collaborator not in agents or collaborator == agent:
            result.warnings.append(f"{label}: collaborator {collaborator!r} dropped")
            collaborator = None

    errors_before = len(result.errors)
    depends_on = _parse_depends(_first(raw, "depends_on", "dependencies"), label, result.errors)
    if len(result.errors) != errors_before:
        return None

    return Step(
        index=index,
        description=description.strip(),
        assigned_agent=agent,
        depends_on=depends_on,
        collaborator=collaborator,
    )


def topological_order(graph: Dict[int, Set[int]]) -> Optional[List[int]]:
    """
    Kahn's algorithm over a step -> dependencies mapping.

    Returns:
        Step indices in dependency order, or None when the graph has a cycle
    """
    indegree = {node: 0 for node in graph}
    dependents: Dict[int, List[int]] = {node: [] for node in graph}
    for node, deps in graph.items():
        for dep in deps:
            if dep in graph:
                indegree[node] += 1
                dependents[dep].append(node)

    queue = deque(sorted(node for node, degree in indegree.items() if degree == 0))
    order = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for dependent in sorted(dependents[node]):
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(graph):
        return None
    return order


def transitive_dependents(steps: Iterable[Step], roots: Iterable[int]) -> Set[int]:
    """Indices of every step that depends, directly or transitively, on one of `roots`."""
    dependents: Dict[int, Set[int]] = {}
    for step in steps:
        for dep in step.depends_on:
            dependents.setdefault(dep, set()).add(step.index)

    found: Set[int] = set()
    queue = deque(roots)
    while queue:
        for dependent in dependents.get(queue.popleft(), ()):
            if dependent not in found:
                found.add(dependent)
                queue.append(dependent)
    return found


def invalidate_dependents(steps: List[Step], replaced: Iterable[int]) -> ValidationResult:
    """
    Return every finished dependent of a replaced step to pending.

    A dependent that is still running cannot be invalidated; it is reported
    as an error and no step is reset.
    """
    result = ValidationResult(valid=True)
    replaced = set(replaced)
    by_index = {s.index: s for s in steps}
    affected = sorted(transitive_dependents(steps, replaced) - replaced)

    for index in affected:
        if by_index[index].status == StepStatus.RUNNING:
            result.errors.append(f"step {index} is running and depends on a step that would run again")
    if result.errors:
        result.valid = False
        return result

    for index in affected:
        step = by_index[index]
        if step.status in (StepStatus.SUCCEEDED, StepStatus.FAILED):
            step.reset()
            result.warnings.append(f"step {index} will run again because a step it depends on changed")
    return result


def validate_dependency_graph(steps: Iterable[Step]) -> List[str]:
    """
    Check dependency edges of a full step list.

    Checks:
    - Indices unique
    - Every dependency names an existing step
    - No self or forward reference
    - Acyclic (topological check)
    """
    errors = []
    steps = list(steps)
    indices = [s.index for s in steps]
    if len(indices) != len(set(indices)):
        errors.append("step numbers must be unique")
    known = set(indices)

    for step in steps:
        for dep in sorted(step.depends_on):
            if dep == step.index:
                errors.append(f"step {step.index}: depends on itself")
            elif dep not in known:
                errors.append(f"step {step.index}: depends on missing step {dep}")
            elif dep > step.index:
                errors.append(f"step {step.index}: depends on later step {dep}")

    if topological_order({s.index: set(s.depends_on) for s in steps}) is None:
        errors.append("dependencies form a cycle")

    return errors


def validate_decomposition(
    raw_steps: Any,
    *,
    agents: Set[str],
    default_agent: str,
    max_steps: int,
) -> Tuple[ValidationResult, List[Step]]:
    """
    Validate a freshly decomposed step list.

    Steps are numbered by position starting at 1.

    Returns:
        Tuple of (ValidationResult, normalized steps)
    """
    result = ValidationResult(valid=True)

    if not isinstance(raw_steps, list):
        result.errors.append("expected a JSON array of steps")
        result.valid = False
        return result, []

    if not raw_steps:
        result.errors.append("plan has no steps")
    elif len(raw_steps) > max_steps:
        result.errors.append(f"plan has {len(raw_steps)} steps, max {max_steps}")

    steps = []
    for position, raw in enumerate(raw_steps[:max_steps], start=1):
        step = normalize_step_payload(raw, position, agents=agents, default_agent=default_agent, result=result)
        if step is not None:
            steps.append(step)

    if not result.errors:
        result.errors.extend(validate_dependency_graph(steps))

    result.valid = not result.errors
    return result, steps


def validate_revision(steps: List[Step], *, max_steps: int) -> ValidationResult:
    """
    Validate a merged step list after refinement.

    Settled steps may not depend on steps that are no longer settled.
    """
    result = ValidationResult(valid=True)
    if not steps:
        result.errors.append("plan has no steps")
    elif len(steps) > max_steps:
        result.errors.append(f"plan has {len(steps)} steps, max {max_steps}")

    ordered = sorted(s.index for s in steps)
    if ordered != list(range(1, len(ordered) + 1)):
        result.errors.append("step numbers must continue the existing sequence")

    result.errors.extend(validate_dependency_graph(steps))

    by_index = {s.index: s for s in steps}
    for step in steps:
        if step.status in (StepStatus.SUCCEEDED, StepStatus.RUNNING):
            for dep in sorted(step.depends_on):
                dependency = by_index.get(dep)
                if dependency is not None and dependency.status == StepStatus.PENDING:
                    result.errors.append(
                        f"step {step.index} is {step.status.value} but step {dep} will run again"
                    )

    result.valid = not result.errors
    return result

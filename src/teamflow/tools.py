"""
Tools a step can be bound to instead of an agent.

A tool is an async callable taking the step's description and a
ToolContext and returning the step output. Tool side effects are not
exactly-once: a retried step calls its handler again.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .records import ConversationTurn


@dataclass(frozen=True)
class ToolContext:
    """What a tool sees about the step it runs for."""
    plan_id: str
    conversation_id: str
    user_id: str
    step_index: int
    dependency_outputs: Dict[int, str] = field(default_factory=dict)
    window: List[ConversationTurn] = field(default_factory=list)


ToolHandler = Callable[[str, ToolContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool and its per-invocation credit cost."""
    name: str
    handler: ToolHandler
    description: str = ""
    cost: int = 0


class ToolRegistry:
    """Tracks tools by name."""

    def __init__(self, tools: Optional[Iterable[ToolSpec]] = None):
        self._tools: Dict[str, ToolSpec] = {}
        for spec in tools or []:
            self.register(spec)

    def register(self, spec: ToolSpec):
        if spec.cost < 0:
            raise ValueError(f"tool {spec.name!r} cost must be >= 0")
        self._tools[spec.name] = spec

    def tool(self, name: str, *, cost: int = 0, description: str = ""):
        """Decorator registering an async handler under `name`."""
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(ToolSpec(name=name, handler=handler, description=description, cost=cost))
            return handler
        return decorator

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def describe(self) -> str:
        return "\n".join(
            f"- {spec.name}: {spec.description or 'tool'}" for spec in self._tools.values()
        )

"""
Agent personas and the directory steps are bound to.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

DEFAULT_AGENT_ID = "assistant"


@dataclass(frozen=True)
class AgentProfile:
    """An LLM persona a step or a routed message can be addressed to."""
    agent_id: str
    name: str
    description: str = ""
    role: str = "assistant"
    goal: str = "help the user complete their task"
    skills: List[str] = field(default_factory=list)
    model: Optional[str] = None

    def persona_prompt(self) -> str:
        """System prompt that puts the model in this agent's shoes."""
        prompt = (
            f"You are {self.name}, an AI agent with the following description: "
            f"{self.description or 'a helpful generalist'}. "
            f"Your role is {self.role} and your goal is {self.goal}."
        )
        if self.skills:
            prompt += f" Your skills: {', '.join(self.skills)}."
        return prompt

    def summary(self) -> str:
        """One line used when listing agents to the planner."""
        line = f"- {self.agent_id}: {self.name}, {self.role}"
        if self.skills:
            line += f" (skills: {', '.join(self.skills)})"
        return line


class AgentDirectory:
    """
    Known agents by id.

    The first registered agent is the default unless one is named
    explicitly; unknown assignments in a plan fall back to it.
    """

    def __init__(self, agents: Optional[Iterable[AgentProfile]] = None, default_agent: Optional[str] = None):
        self._agents: Dict[str, AgentProfile] = {}
        for agent in agents or []:
            self.register(agent)
        if not self._agents:
            self.register(AgentProfile(agent_id=DEFAULT_AGENT_ID, name="Assistant"))
        if default_agent is not None and default_agent not in self._agents:
            raise ValueError(f"default agent {default_agent!r} is not registered")
        self._default = default_agent or next(iter(self._agents))

    def register(self, agent: AgentProfile):
        if agent.agent_id in self._agents:
            raise ValueError(f"agent {agent.agent_id!r} already registered")
        self._agents[agent.agent_id] = agent

    def get(self, agent_id: str) -> Optional[AgentProfile]:
        return self._agents.get(agent_id)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    @property
    def default_agent(self) -> AgentProfile:
        return self._agents[self._default]

    def ids(self) -> List[str]:
        return list(self._agents)

    def all(self) -> List[AgentProfile]:
        return list(self._agents.values())

    def describe(self) -> str:
        return "\n".join(agent.summary() for agent in self._agents.values())

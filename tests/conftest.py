"""
Shared fixtures: in-memory stores, a small agent team and a scripted gateway.
"""

import asyncio
import inspect
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from teamflow.agents.profiles import AgentDirectory, AgentProfile
from teamflow.conversation_store import ConversationStore
from teamflow.credit_ledger import CreditLedger, LedgerConfig
from teamflow.gateway import CircuitBreaker
from teamflow.persistence import InMemoryPersistence


class FakeGateway:
    """
    Scripted stand-in for ModelGateway.

    Responses are queued per call purpose ("classify", "decompose", "refine",
    "route", "step:2", ...); a purpose without its own queue falls back to
    its prefix ("step"). The last queued item repeats. Items may be strings,
    exceptions (raised) or callables (sync or async) taking the call record.
    """

    def __init__(self, default: Any = None):
        self.responses: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.default = default
        self.breaker = CircuitBreaker()

    def script(self, purpose: str, *responses: Any) -> "FakeGateway":
        self.responses[purpose] = list(responses)
        return self

    def calls_for(self, purpose: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["purpose"] == purpose or c["purpose"].startswith(purpose + ":")]

    def _next(self, purpose: str) -> Any:
        queue = self.responses.get(purpose)
        if queue is None:
            queue = self.responses.get(purpose.split(":", 1)[0])
        if not queue:
            return self.default if self.default is not None else f"{purpose} done"
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        *,
        purpose: str = "chat",
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        idempotent: bool = True,
    ) -> str:
        call = {
            "system": system_prompt,
            "messages": [dict(m) for m in messages],
            "purpose": purpose,
            "max_tokens": max_tokens,
            "model": model,
        }
        self.calls.append(call)
        item = self._next(purpose)
        if callable(item) and not isinstance(item, BaseException):
            item = item(call)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        await asyncio.sleep(0)
        return item


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def agents():
    return AgentDirectory([
        AgentProfile(agent_id="writer", name="Writer", role="technical writer", goal="explain clearly"),
        AgentProfile(agent_id="coder", name="Coder", role="smart contract engineer", goal="ship working code",
                     skills=["solidity", "python"]),
        AgentProfile(agent_id="reviewer", name="Reviewer", role="auditor", goal="find defects"),
    ])


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(persistence):
    return CreditLedger(persistence, LedgerConfig(initial_grant=100, daily_allowance=0))


@pytest.fixture
def conversations(persistence):
    return ConversationStore(persistence)

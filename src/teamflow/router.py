"""
AgentRouter - delivers messages between agents sharing a conversation.

Each exchange appends the outbound message under the sender, asks the
receiver (in its own persona) for a reply, and appends the reply under the
receiver. A context variable carries the chain of in-flight routes for the
originating request so nested deliveries (a reply that @mentions another
agent) cannot bounce forever.
"""

import re
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .agents.logging_config import get_logger
from .agents.profiles import AgentDirectory
from .conversation_store import ConversationStore
from .credit_ledger import CreditLedger
from .errors import InvalidRoute, TeamflowError
from .gateway import ModelGateway, append_user_message, turns_to_messages
from .records import USER_PARTICIPANT, Role

logger = get_logger("router")

MENTION_RE = re.compile(r"@([A-Za-z0-9_\-]+)")

COMMUNICATION_PROMPT = (
    "You are {receiver}. Another agent, {sender}, is communicating with you. "
    "Respond appropriately based on your role and the message content."
)

_route_chain: ContextVar[Tuple[str, ...]] = ContextVar("teamflow_route_chain", default=())


@dataclass
class RouterConfig:
    """Limits for agent-to-agent delivery."""
    max_hops: int = 3
    context_window: int = 10
    max_tokens: int = 1000
    route_cost: int = 1
    follow_mentions: bool = True


def current_route_chain() -> Tuple[str, ...]:
    """Routes in flight for the current request, outermost first."""
    return _route_chain.get()


class AgentRouter:
    """Routes messages between agents with loop and hop protection."""

    def __init__(
        self,
        gateway: ModelGateway,
        conversations: ConversationStore,
        agents: AgentDirectory,
        ledger: Optional[CreditLedger] = None,
        config: Optional[RouterConfig] = None,
    ):
        self.gateway = gateway
        self.conversations = conversations
        self.agents = agents
        self.ledger = ledger
        self.config = config or RouterConfig()

    def _check(self, sender_id: str, receiver_id: str):
        chain = _route_chain.get()
        if sender_id == receiver_id:
            raise InvalidRoute(f"{sender_id} cannot route a message to itself")
        if receiver_id not in self.agents:
            raise InvalidRoute(f"unknown receiver {receiver_id!r}")
        if len(chain) >= self.config.max_hops:
            raise InvalidRoute(
                f"hop ceiling of {self.config.max_hops} reached ({' / '.join(chain)})"
            )

    def _display_name(self, participant: str) -> str:
        if participant == USER_PARTICIPANT:
            return "the user"
        profile = self.agents.get(participant)
        return profile.name if profile else participant

    async def route(
        self,
        sender_id: str,
        receiver_id: str,
        conversation_id: str,
        message: str,
        *,
        user_id: str,
    ) -> str:
        """
        Deliver `message` from sender to receiver and return the reply.

        Raises:
            InvalidRoute: Self-route, unknown receiver or hop ceiling; nothing appended
            InsufficientCredit: The route could not be paid for; nothing appended
            StorageError: The ledger could not record the charge; nothing appended
            ModelUnavailable / ModelRejected: The receiver's call failed
        """
        return await self._deliver(sender_id, receiver_id, conversation_id, message, user_id)

    async def _deliver(
        self,
        sender_id: str,
        receiver_id: str,
        conversation_id: str,
        message: str,
        user_id: str,
        record_outbound: bool = True,
    ) -> str:
        self._check(sender_id, receiver_id)

        cost = self.config.route_cost
        if self.ledger is not None and cost:
            await self.ledger.debit(user_id, cost, reason="route", conversation_id=conversation_id)

        if record_outbound:
            sender_role = Role.USER if sender_id == USER_PARTICIPANT else Role.ASSISTANT
            await self.conversations.record(conversation_id, user_id, sender_id, sender_role, message)

        token = _route_chain.set(_route_chain.get() + (f"{sender_id}->{receiver_id}",))
        try:
            receiver = self.agents.get(receiver_id)
            system_prompt = "\n\n".join([
                COMMUNICATION_PROMPT.format(receiver=receiver.name, sender=self._display_name(sender_id)),
                receiver.persona_prompt(),
            ])

            window = await self.conversations.get_window(conversation_id, user_id, self.config.context_window)
            messages = turns_to_messages(window, receiver_id)
            if not messages or messages[-1]["role"] != "user":
                messages = append_user_message(messages, message)

            reply = await self.gateway.complete(
                system_prompt,
                messages,
                purpose="route",
                max_tokens=self.config.max_tokens,
                model=receiver.model,
            )
            reply = reply.strip()
            await self.conversations.record(conversation_id, user_id, receiver_id, Role.ASSISTANT, reply)
            logger.info(f"Routed {sender_id} -> {receiver_id} in {conversation_id}")

            if self.config.follow_mentions:
                await self._follow_mentions(receiver_id, conversation_id, reply, user_id)
            return reply
        finally:
            _route_chain.reset(token)

    def mentioned_agents(self, speaker_id: str, text: str) -> List[str]:
        """Known agents addressed with @agent_id, in order of first mention."""
        seen: List[str] = []
        for agent_id in MENTION_RE.findall(text or ""):
            if agent_id != speaker_id and agent_id in self.agents and agent_id not in seen:
                seen.append(agent_id)
        return seen

    async def _follow_mentions(self, speaker_id: str, conversation_id: str, reply: str, user_id: str):
        """Forward a reply to the agents it addresses; the reply is already the latest turn."""
        for target in self.mentioned_agents(speaker_id, reply):
            if len(_route_chain.get()) >= self.config.max_hops:
                logger.info(
                    f"Mention cascade from {speaker_id} stopped at hop ceiling {self.config.max_hops}"
                )
                return
            try:
                await self._deliver(speaker_id, target, conversation_id, reply, user_id, record_outbound=False)
            except TeamflowError as e:
                logger.warning(f"Mention cascade from {speaker_id} stopped: {e}")
                return

    async def broadcast(
        self,
        sender_id: str,
        conversation_id: str,
        message: str,
        *,
        user_id: str,
        recipients: Optional[Iterable[str]] = None,
    ) -> Dict[str, str]:
        """
        Route one message to every recipient except the sender.

        Recipients default to every known agent; replies are keyed by agent id.
        """
        targets = list(recipients) if recipients is not None else self.agents.ids()
        replies: Dict[str, str] = {}
        for receiver_id in targets:
            if receiver_id == sender_id or receiver_id in replies:
                continue
            replies[receiver_id] = await self.route(
                sender_id, receiver_id, conversation_id, message, user_id=user_id
            )
        return replies

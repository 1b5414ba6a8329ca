"""Conversation and credit records shared by the stores and persistence."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Role(Enum):
    """Speaker role of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


USER_PARTICIPANT = "user"


@dataclass(frozen=True)
class ConversationTurn:
    """
    One immutable message in a conversation.

    `participant` is "user" for the human or the id of the agent that
    spoke; `user_id` is the owner of the conversation.
    """
    conversation_id: str
    user_id: str
    participant: str
    role: Role
    content: str
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "participant": self.participant,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            turn_id=data["turn_id"],
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            participant=data["participant"],
            role=Role(data["role"]),
            content=data["content"],
            created_at=float(data["created_at"]),
        )


@dataclass
class CreditAccount:
    """Per-user credit balance; mutated only by the CreditLedger."""
    user_id: str
    balance: int
    last_updated: float
    last_refill_at: Optional[float] = None


@dataclass(frozen=True)
class CreditEntry:
    """
    One balance change.

    Negative amounts are consumption, positive amounts are grants and top-ups.
    """
    user_id: str
    amount: int
    reason: str
    balance_after: int
    conversation_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

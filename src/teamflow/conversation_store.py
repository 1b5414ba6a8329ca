"""
Append-only conversation history with a bounded read window.
"""

import time
import uuid
from typing import Callable, List, Optional

from .agents.logging_config import get_logger
from .concurrency import KeyedLocks
from .errors import StorageError
from .persistence import Persistence
from .records import ConversationTurn, Role

logger = get_logger("conversation_store")

# Hard ceiling on turns handed to any model call
MAX_WINDOW = 10


class ConversationStore:
    """
    Ordered turns per conversation.

    Appends to one conversation are serialized so turns land in the order
    they were accepted; readers always receive copies.
    """

    def __init__(self, persistence: Persistence, clock: Callable[[], float] = time.time):
        self.persistence = persistence
        self._clock = clock
        self._locks = KeyedLocks()

    async def append(self, conversation_id: str, turn: ConversationTurn) -> ConversationTurn:
        """
        Append a turn to a conversation.

        Raises:
            ValueError: If the turn belongs to another conversation
            StorageError: If persistence failed; the turn is not recorded
        """
        if turn.conversation_id != conversation_id:
            raise ValueError(
                f"turn belongs to conversation {turn.conversation_id}, not {conversation_id}"
            )

        async with self._locks.lock(conversation_id):
            try:
                await self.persistence.append_turn(turn)
            except StorageError:
                logger.error(f"Turn not recorded in conversation {conversation_id}")
                raise

        return turn

    async def record(
        self,
        conversation_id: str,
        user_id: str,
        participant: str,
        role: Role,
        content: str,
    ) -> ConversationTurn:
        """Build a turn with a fresh id and timestamp and append it."""
        turn = ConversationTurn(
            conversation_id=conversation_id,
            user_id=user_id,
            participant=participant,
            role=role,
            content=content,
            turn_id=uuid.uuid4().hex,
            created_at=self._clock(),
        )
        return await self.append(conversation_id, turn)

    async def get_window(
        self,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = MAX_WINDOW,
    ) -> List[ConversationTurn]:
        """Most recent min(limit, 10) turns of the user's conversation, oldest first."""
        if limit is None:
            limit = MAX_WINDOW
        limit = max(0, min(limit, MAX_WINDOW))
        return list(await self.persistence.read_window(conversation_id, user_id, limit))

    async def clear(self, user_id: str) -> int:
        """Remove every turn owned by the user. Irreversible."""
        removed = await self.persistence.clear_user(user_id)
        logger.info(f"Cleared {removed} turn(s) for {user_id}")
        return removed

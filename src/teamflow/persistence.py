"""
Persistence collaborator for turns, plans and credit accounts.

Two implementations share one async interface: InMemoryPersistence for
tests and single-process use, SqlitePersistence for durable storage. Any
failure surfaces as StorageError with nothing applied.
"""

import copy
import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .agents.logging_config import get_logger
from .errors import StorageError
from .plan import Plan
from .records import ConversationTurn, CreditAccount, CreditEntry, Role

logger = get_logger("persistence")


class Persistence(ABC):
    """Interface the engine's components persist through."""

    @abstractmethod
    async def append_turn(self, turn: ConversationTurn) -> None:
        ...

    @abstractmethod
    async def read_window(self, conversation_id: str, user_id: str, limit: int) -> List[ConversationTurn]:
        """Most recent `limit` turns, oldest first."""

    @abstractmethod
    async def clear_user(self, user_id: str) -> int:
        """Delete every turn owned by the user; returns the count removed."""

    @abstractmethod
    async def upsert_plan(self, plan: Plan) -> None:
        ...

    @abstractmethod
    async def read_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    @abstractmethod
    async def read_plan_ids(self) -> List[str]:
        ...

    @abstractmethod
    async def upsert_credit_balance(self, account: CreditAccount) -> None:
        ...

    @abstractmethod
    async def read_credit_balance(self, user_id: str) -> Optional[CreditAccount]:
        ...

    @abstractmethod
    async def append_credit_entry(self, entry: CreditEntry) -> None:
        ...

    @abstractmethod
    async def read_credit_entries(self, user_id: str) -> List[CreditEntry]:
        ...

    async def close(self) -> None:
        pass


class InMemoryPersistence(Persistence):
    """Dictionary-backed persistence; plans and accounts are stored as copies."""

    def __init__(self):
        self._turns: List[ConversationTurn] = []
        self._plans: Dict[str, dict] = {}
        self._accounts: Dict[str, CreditAccount] = {}
        self._entries: List[CreditEntry] = []

    async def append_turn(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    async def read_window(self, conversation_id: str, user_id: str, limit: int) -> List[ConversationTurn]:
        if limit <= 0:
            return []
        matching = [
            t for t in self._turns
            if t.conversation_id == conversation_id and t.user_id == user_id
        ]
        return matching[-limit:]

    async def clear_user(self, user_id: str) -> int:
        before = len(self._turns)
        self._turns = [t for t in self._turns if t.user_id != user_id]
        return before - len(self._turns)

    async def upsert_plan(self, plan: Plan) -> None:
        self._plans[plan.plan_id] = plan.to_dict()

    async def read_plan(self, plan_id: str) -> Optional[Plan]:
        data = self._plans.get(plan_id)
        return Plan.from_dict(copy.deepcopy(data)) if data is not None else None

    async def read_plan_ids(self) -> List[str]:
        return list(self._plans)

    async def upsert_credit_balance(self, account: CreditAccount) -> None:
        self._accounts[account.user_id] = copy.copy(account)

    async def read_credit_balance(self, user_id: str) -> Optional[CreditAccount]:
        account = self._accounts.get(user_id)
        return copy.copy(account) if account is not None else None

    async def append_credit_entry(self, entry: CreditEntry) -> None:
        self._entries.append(entry)

    async def read_credit_entries(self, user_id: str) -> List[CreditEntry]:
        return [e for e in self._entries if e.user_id == user_id]


SCHEMA = """
CREATE TABLE IF NOT EXISTS turns (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    turn_id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    participant TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns (conversation_id, user_id, seq);
CREATE INDEX IF NOT EXISTS idx_turns_user ON turns (user_id);

CREATE TABLE IF NOT EXISTS plans (
    plan_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_accounts (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL CHECK (balance >= 0),
    last_updated REAL NOT NULL,
    last_refill_at REAL
);

CREATE TABLE IF NOT EXISTS credit_consumption (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    reason TEXT NOT NULL,
    conversation_id TEXT,
    balance_after INTEGER NOT NULL,
    created_at REAL NOT NULL
);
"""


class SqlitePersistence(Persistence):
    """
    SQLite-backed persistence.

    Each write runs in its own transaction; sqlite3 errors are raised as
    StorageError after the transaction rolls back.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(db_path)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"cannot open database {db_path}: {e}") from e
        logger.info(f"SQLite persistence ready at {db_path}")

    def _write(self, sql: str, params: tuple) -> int:
        try:
            with self._conn:
                return self._conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            logger.error(f"Write failed: {e}")
            raise StorageError(str(e)) from e

    def _read(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Read failed: {e}")
            raise StorageError(str(e)) from e

    async def append_turn(self, turn: ConversationTurn) -> None:
        self._write(
            "INSERT INTO turns (turn_id, conversation_id, user_id, participant, role, content, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (turn.turn_id, turn.conversation_id, turn.user_id, turn.participant,
             turn.role.value, turn.content, turn.created_at),
        )

    async def read_window(self, conversation_id: str, user_id: str, limit: int) -> List[ConversationTurn]:
        if limit <= 0:
            return []
        rows = self._read(
            "SELECT * FROM turns WHERE conversation_id = ? AND user_id = ? ORDER BY seq DESC LIMIT ?",
            (conversation_id, user_id, limit),
        )
        return [
            ConversationTurn(
                turn_id=row["turn_id"],
                conversation_id=row["conversation_id"],
                user_id=row["user_id"],
                participant=row["participant"],
                role=Role(row["role"]),
                content=row["content"],
                created_at=row["created_at"],
            )
            for row in reversed(rows)
        ]

    async def clear_user(self, user_id: str) -> int:
        return self._write("DELETE FROM turns WHERE user_id = ?", (user_id,))

    async def upsert_plan(self, plan: Plan) -> None:
        self._write(
            "INSERT INTO plans (plan_id, conversation_id, user_id, status, data, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(plan_id) DO UPDATE SET status = excluded.status, "
            "data = excluded.data, updated_at = excluded.updated_at",
            (plan.plan_id, plan.conversation_id, plan.user_id, plan.status.value,
             json.dumps(plan.to_dict()), plan.updated_at),
        )

    async def read_plan(self, plan_id: str) -> Optional[Plan]:
        rows = self._read("SELECT data FROM plans WHERE plan_id = ?", (plan_id,))
        if not rows:
            return None
        return Plan.from_dict(json.loads(rows[0]["data"]))

    async def read_plan_ids(self) -> List[str]:
        return [row["plan_id"] for row in self._read("SELECT plan_id FROM plans ORDER BY updated_at", ())]

    async def upsert_credit_balance(self, account: CreditAccount) -> None:
        self._write(
            "INSERT INTO credit_accounts (user_id, balance, last_updated, last_refill_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET balance = excluded.balance, "
            "last_updated = excluded.last_updated, last_refill_at = excluded.last_refill_at",
            (account.user_id, account.balance, account.last_updated, account.last_refill_at),
        )

    async def read_credit_balance(self, user_id: str) -> Optional[CreditAccount]:
        rows = self._read("SELECT * FROM credit_accounts WHERE user_id = ?", (user_id,))
        if not rows:
            return None
        row = rows[0]
        return CreditAccount(
            user_id=row["user_id"],
            balance=row["balance"],
            last_updated=row["last_updated"],
            last_refill_at=row["last_refill_at"],
        )

    async def append_credit_entry(self, entry: CreditEntry) -> None:
        self._write(
            "INSERT INTO credit_consumption (user_id, amount, reason, conversation_id, balance_after, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (entry.user_id, entry.amount, entry.reason, entry.conversation_id,
             entry.balance_after, entry.created_at),
        )

    async def read_credit_entries(self, user_id: str) -> List[CreditEntry]:
        rows = self._read("SELECT * FROM credit_consumption WHERE user_id = ? ORDER BY id", (user_id,))
        return [
            CreditEntry(
                user_id=row["user_id"],
                amount=row["amount"],
                reason=row["reason"],
                conversation_id=row["conversation_id"],
                balance_after=row["balance_after"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        self._conn.close()

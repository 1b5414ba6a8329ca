"""
Per-user credit budget gating every paid model invocation.

Debits are serialized per user, so concurrent debits can never overdraw an
account: the balance is read, checked and written back under the user's
lock before the caller is admitted.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .agents.logging_config import get_logger
from .concurrency import KeyedLocks
from .errors import InsufficientCredit, StorageError
from .persistence import Persistence
from .records import CreditAccount, CreditEntry

logger = get_logger("credit_ledger")


@dataclass
class LedgerConfig:
    """Credit grants applied when an account is created or refilled."""
    initial_grant: int = 20
    daily_allowance: int = 20


def _day(timestamp: float):
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()


class CreditLedger:
    """
    Admission control for paid calls.

    Accounts are created lazily on first access with `initial_grant` credits
    and receive `daily_allowance` once per UTC calendar day.
    """

    def __init__(
        self,
        persistence: Persistence,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.persistence = persistence
        self.config = config or LedgerConfig()
        self._clock = clock
        self._locks = KeyedLocks()

    async def _load(self, user_id: str, now: float) -> Tuple[CreditAccount, List[CreditEntry], bool]:
        """Load or create the account and apply any due grant (not persisted)."""
        account = await self.persistence.read_credit_balance(user_id)
        grants: List[CreditEntry] = []

        if account is None:
            account = CreditAccount(
                user_id=user_id,
                balance=self.config.initial_grant,
                last_updated=now,
                last_refill_at=now,
            )
            if self.config.initial_grant:
                grants.append(CreditEntry(
                    user_id=user_id,
                    amount=self.config.initial_grant,
                    reason="initial_grant",
                    balance_after=account.balance,
                    created_at=now,
                ))
            return account, grants, True

        refill_due = account.last_refill_at is None or _day(account.last_refill_at) < _day(now)
        if refill_due and self.config.daily_allowance:
            account.balance += self.config.daily_allowance
            account.last_refill_at = now
            account.last_updated = now
            grants.append(CreditEntry(
                user_id=user_id,
                amount=self.config.daily_allowance,
                reason="daily_allowance",
                balance_after=account.balance,
                created_at=now,
            ))
            return account, grants, True

        return account, grants, False

    async def _record_entries(self, entries: List[CreditEntry]):
        for entry in entries:
            try:
                await self.persistence.append_credit_entry(entry)
            except StorageError as e:
                logger.warning(f"Credit history entry for {entry.user_id} not recorded: {e}")

    async def debit(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str = "step",
        conversation_id: Optional[str] = None,
    ) -> int:
        """
        Debit `amount` credits, raising when the caller cannot be admitted.

        Returns:
            New balance

        Raises:
            ValueError: If amount is negative
            InsufficientCredit: Balance does not cover `amount`; nothing applied
            StorageError: Balance could not be read or persisted; nothing applied
        """
        if amount < 0:
            raise ValueError(f"debit amount must be >= 0 (got {amount})")

        async with self._locks.lock(user_id):
            now = self._clock()
            try:
                account, grants, changed = await self._load(user_id, now)

                if account.balance < amount:
                    if changed:
                        await self.persistence.upsert_credit_balance(account)
                        await self._record_entries(grants)
                    logger.warning(
                        f"Denied {amount} credit(s) to {user_id} for {reason} (balance {account.balance})"
                    )
                    raise InsufficientCredit(user_id, amount, account.balance)

                account.balance -= amount
                account.last_updated = now
                await self.persistence.upsert_credit_balance(account)
            except StorageError as e:
                logger.error(f"Debit of {amount} for {user_id} not applied, storage failed: {e}")
                raise

            await self._record_entries(grants + [CreditEntry(
                user_id=user_id,
                amount=-amount,
                reason=reason,
                balance_after=account.balance,
                conversation_id=conversation_id,
                created_at=now,
            )])

        logger.debug(f"Debited {amount} from {user_id} for {reason}, balance {account.balance}")
        return account.balance

    async def try_debit(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str = "step",
        conversation_id: Optional[str] = None,
    ) -> bool:
        """
        Debit `amount` credits if the balance covers it.

        Never raises: insufficient balance, a negative amount and storage
        failures all return False with nothing applied. Use `debit` to learn
        why a debit was refused.
        """
        if amount < 0:
            logger.warning(f"Rejected negative debit of {amount} for {user_id}")
            return False
        if amount == 0:
            return True

        try:
            await self.debit(user_id, amount, reason=reason, conversation_id=conversation_id)
        except (InsufficientCredit, StorageError):
            return False
        return True

    async def credit(self, user_id: str, amount: int, *, reason: str = "top_up") -> int:
        """
        Add credits to a user's balance.

        Returns:
            New balance

        Raises:
            ValueError: If amount is negative
            StorageError: If the balance could not be persisted
        """
        if amount < 0:
            raise ValueError(f"credit amount must be >= 0 (got {amount})")

        async with self._locks.lock(user_id):
            now = self._clock()
            account, grants, _ = await self._load(user_id, now)
            account.balance += amount
            account.last_updated = now
            await self.persistence.upsert_credit_balance(account)
            await self._record_entries(grants + [CreditEntry(
                user_id=user_id,
                amount=amount,
                reason=reason,
                balance_after=account.balance,
                created_at=now,
            )])

        logger.info(f"Credited {amount} to {user_id}, balance {account.balance}")
        return account.balance

    async def get_balance(self, user_id: str) -> int:
        """Current balance including any grant that is due; writes nothing."""
        account, _, _ = await self._load(user_id, self._clock())
        return account.balance

    async def history(self, user_id: str) -> List[CreditEntry]:
        return await self.persistence.read_credit_entries(user_id)

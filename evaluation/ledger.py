"""Token ledger. A balance is always the sum of a user's transactions."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable

from data.database import ArenaDatabase
from data.models import TokenTransactionRecord, TransactionKind, utcnow
from errors import InsufficientTokens

logger = logging.getLogger(__name__)


class TokenLedger:
    """Append-only token accounting on top of ``ArenaDatabase``."""

    def __init__(
        self, db: ArenaDatabase, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.db = db
        self.clock = clock

    async def credit(
        self, user_id: int, amount: int, kind: TransactionKind, **metadata: Any
    ) -> int:
        tx_id = await self.db.save_transaction(
            TokenTransactionRecord(
                user_id=user_id,
                amount=amount,
                kind=kind,
                metadata_json=json.dumps(metadata, default=str),
                created_at=self.clock(),
            )
        )
        logger.debug("Ledger: user %d %+d (%s)", user_id, amount, kind.value)
        return tx_id

    async def spend(
        self, user_id: int, amount: int, kind: TransactionKind, **metadata: Any
    ) -> int:
        """Debit *amount*; refuses when the balance would go negative."""
        balance = await self.balance(user_id)
        if balance < amount:
            raise InsufficientTokens(balance, amount)
        return await self.credit(user_id, -amount, kind, **metadata)

    async def adjust(self, user_id: int, amount: int, reason: str = "") -> int:
        return await self.credit(user_id, amount, TransactionKind.ADMIN_ADJUST, reason=reason)

    async def balance(self, user_id: int) -> int:
        return await self.db.get_balance(user_id)

    async def history(self, user_id: int, limit: int = 100) -> list[TokenTransactionRecord]:
        return await self.db.list_transactions(user_id, limit=limit)

    async def leaderboard(self, limit: int = 50) -> list[dict[str, Any]]:
        return await self.db.leaderboard(limit)

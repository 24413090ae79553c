"""
Ledger records and the ledger store contract.

Two entities live in the ledger:
- UserRecord: one row per Pi uid, carries the premium window
- TransactionRecord: append-only, one row per credited payment

Backends:
- database.PostgresLedgerStore (production, asyncpg)
- InMemoryLedgerStore (LOCAL runs without DATABASE_URL, tests)

Both serialize the entitlement read-modify-write per uid (apply_payment), so
two concurrent completions for the same user never lose an extension.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from app.constants.premium import TRANSACTION_HISTORY_LIMIT
from app.services.entitlements.service import compute_new_expiry, utc_now

logger = logging.getLogger(__name__)


@dataclass
class UserRecord:
    uid: str
    username: str
    is_premium: bool = False
    premium_expiry: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class TransactionRecord:
    uid: str
    payment_id: str
    amount: Decimal
    status: str
    txid: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)
    processed_at: Optional[datetime] = None

    def to_view(self) -> Dict[str, Any]:
        """Public shape used in user views"""
        return {
            "paymentId": self.payment_id,
            "amount": float(self.amount),
            "status": self.status,
            "txid": self.txid,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }


@dataclass
class PaymentApplication:
    """Result of crediting one payment to a user"""
    user: UserRecord
    new_expiry: Optional[datetime]
    additional_days: int
    duplicate: bool


class LedgerStore(Protocol):
    async def get_user(self, uid: str) -> Optional[UserRecord]: ...

    async def upsert_user(self, uid: str, username: str) -> UserRecord: ...

    async def append_transaction(self, transaction: TransactionRecord) -> TransactionRecord: ...

    async def list_transactions(
        self, uid: str, limit: int = TRANSACTION_HISTORY_LIMIT
    ) -> List[TransactionRecord]: ...

    async def get_transaction(self, payment_id: str) -> Optional[TransactionRecord]: ...

    async def apply_payment(
        self,
        uid: str,
        additional_days: int,
        transaction: TransactionRecord,
        default_username: str,
        now: Optional[datetime] = None,
    ) -> PaymentApplication: ...

    async def close(self) -> None: ...


class InMemoryLedgerStore:
    """
    Process-local ledger.

    Per-uid asyncio.Lock gives the same guarantee as SELECT ... FOR UPDATE in
    the PostgreSQL backend. Data is lost on restart: LOCAL/STAGE only.
    """

    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self._transactions: List[TransactionRecord] = []
        self._by_payment_id: Dict[str, TransactionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_user(self, uid: str) -> Optional[UserRecord]:
        user = self._users.get(uid)
        return replace(user) if user else None

    async def upsert_user(self, uid: str, username: str) -> UserRecord:
        async with self._locks[uid]:
            now = utc_now()
            user = self._users.get(uid)
            if user is None:
                user = UserRecord(uid=uid, username=username, created_at=now, updated_at=now)
                logger.info(f"ledger: user created uid={uid}")
            else:
                user = replace(user, username=username, updated_at=now)
            self._users[uid] = user
            return replace(user)

    async def append_transaction(self, transaction: TransactionRecord) -> TransactionRecord:
        stored = replace(transaction, processed_at=transaction.processed_at or utc_now())
        self._transactions.append(stored)
        self._by_payment_id.setdefault(stored.payment_id, stored)
        return replace(stored)

    async def list_transactions(
        self, uid: str, limit: int = TRANSACTION_HISTORY_LIMIT
    ) -> List[TransactionRecord]:
        # Newest insert first, then stable sort keeps insert order for equal timestamps
        rows = [t for t in reversed(self._transactions) if t.uid == uid]
        rows.sort(key=lambda t: t.processed_at, reverse=True)
        return [replace(t) for t in rows[:limit]]

    async def get_transaction(self, payment_id: str) -> Optional[TransactionRecord]:
        found = self._by_payment_id.get(payment_id)
        return replace(found) if found else None

    async def apply_payment(
        self,
        uid: str,
        additional_days: int,
        transaction: TransactionRecord,
        default_username: str,
        now: Optional[datetime] = None,
    ) -> PaymentApplication:
        if now is None:
            now = utc_now()

        async with self._locks[uid]:
            existing = self._by_payment_id.get(transaction.payment_id)
            if existing is not None:
                user = self._users.get(existing.uid)
                return PaymentApplication(
                    user=replace(user),
                    new_expiry=user.premium_expiry,
                    additional_days=0,
                    duplicate=True,
                )

            user = self._users.get(uid)
            if user is None:
                user = UserRecord(uid=uid, username=default_username, created_at=now, updated_at=now)

            new_expiry = compute_new_expiry(user.premium_expiry, user.is_premium, additional_days, now)
            user = replace(
                user,
                is_premium=user.is_premium or additional_days > 0,
                premium_expiry=new_expiry,
                updated_at=now,
            )
            self._users[uid] = user
            await self.append_transaction(replace(transaction, uid=uid, processed_at=now))

            return PaymentApplication(
                user=replace(user),
                new_expiry=new_expiry,
                additional_days=additional_days,
                duplicate=False,
            )

    async def close(self) -> None:
        return None

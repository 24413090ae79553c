import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg

from app.constants.premium import TRANSACTION_HISTORY_LIMIT
from app.core.exceptions import StorageError
from app.core.ledger import PaymentApplication, TransactionRecord, UserRecord
from app.services.entitlements.service import compute_new_expiry, utc_now
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: database readiness flag
# ====================================================================================
# True only after connectivity probe, pool creation and migrations all succeeded.
# ====================================================================================
DB_READY: bool = False

_pool: Optional[asyncpg.Pool] = None

# Errors that mean "the store is unavailable or the write failed"
_STORAGE_FAILURES = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


# ====================================================================================
# UTC HELPERS: DB boundary - TIMESTAMP WITHOUT TIME ZONE requires naive UTC
# ====================================================================================
# Application layer uses timezone-aware UTC.
# All datetimes passed TO asyncpg go through _to_db_utc, all read FROM DB through _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC for DB storage. Naive input is assumed to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive DB datetime (stored as UTC) -> aware UTC"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


# ====================================================================================
# DB POOL
# ====================================================================================

def _get_pool_config(settings) -> dict:
    """asyncpg.create_pool kwargs. Single source of truth for pool creation."""
    return {
        "min_size": settings.db_pool_min_size,
        "max_size": settings.db_pool_max_size,
        "max_inactive_connection_lifetime": 300,
        "timeout": settings.db_pool_acquire_timeout,
        "command_timeout": settings.db_pool_command_timeout,
    }


async def init_db(settings) -> bool:
    """
    Probe the database, create the pool and apply migrations.

    Idempotent: returns True at once if already initialized.

    Returns:
        True if the database is ready, False otherwise (reason logged)
    """
    global DB_READY, _pool

    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not settings.database_url:
        logger.error("DATABASE_URL not configured")
        return False

    # 1. Explicit connectivity probe
    try:
        conn = await retry_async(lambda: asyncpg.connect(settings.database_url))
        try:
            await conn.execute("SELECT 1")
        finally:
            await conn.close()
        logger.info("DB connectivity probe successful")
    except _STORAGE_FAILURES as e:
        logger.error(f"DB connectivity probe failed: {e}")
        return False

    # 2. Pool
    pool_config = _get_pool_config(settings)
    try:
        _pool = await asyncpg.create_pool(settings.database_url, **pool_config)
    except _STORAGE_FAILURES as e:
        logger.error(f"Failed to create database pool: {e}")
        return False
    logger.info(
        "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
        pool_config["min_size"], pool_config["max_size"],
        pool_config["timeout"], pool_config["command_timeout"],
    )

    # 3. Migrations
    import migrations
    if not await migrations.run_migrations_safe(_pool):
        logger.error("Migration execution failed")
        await close_pool()
        return False

    DB_READY = True
    logger.info("Database ready")
    return True


async def get_pool() -> asyncpg.Pool:
    """
    Return the pool created by init_db.

    Raises:
        RuntimeError: init_db was not run or failed
    """
    if _pool is None:
        raise RuntimeError("Database pool is not initialized (call init_db first)")
    return _pool


async def close_pool():
    """Close the connection pool. Safe to call multiple times."""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


# ====================================================================================
# ROW MAPPING
# ====================================================================================

_USER_COLUMNS = "uid, username, is_premium, premium_expiry, created_at, updated_at"
_TRANSACTION_COLUMNS = "uid, payment_id, amount, status, txid, raw, processed_at"


def _user_from_row(row) -> UserRecord:
    return UserRecord(
        uid=row["uid"],
        username=row["username"],
        is_premium=bool(row["is_premium"]),
        premium_expiry=_from_db_utc(row["premium_expiry"]),
        created_at=_from_db_utc(row["created_at"]),
        updated_at=_from_db_utc(row["updated_at"]),
    )


def _decode_raw(value: Any) -> Dict[str, Any]:
    # asyncpg returns JSONB as text unless a codec is registered
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


def _transaction_from_row(row) -> TransactionRecord:
    amount = row["amount"]
    return TransactionRecord(
        uid=row["uid"],
        payment_id=row["payment_id"],
        amount=amount if isinstance(amount, Decimal) else Decimal(str(amount or 0)),
        status=row["status"],
        txid=row["txid"],
        raw=_decode_raw(row["raw"]),
        processed_at=_from_db_utc(row["processed_at"]),
    )


# ====================================================================================
# LEDGER STORE (PostgreSQL)
# ====================================================================================

class PostgresLedgerStore:
    """
    LedgerStore backed by asyncpg.

    apply_payment is one transaction: the user row is locked with
    SELECT ... FOR UPDATE, payment_id idempotency is re-checked under that
    lock, then the expiry update and the transaction insert commit together.
    The unique index on transactions.payment_id is the last line against a
    double credit.
    """

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self, operation: str):
        """Acquire a connection; database failures surface as StorageError."""
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _STORAGE_FAILURES as e:
            logger.error(f"ledger.{operation}: database error: {type(e).__name__}: {e}")
            raise StorageError(f"Ledger {operation} failed") from e

    async def get_user(self, uid: str) -> Optional[UserRecord]:
        async with self._connection("get_user") as conn:
            row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE uid = $1", uid)
        return _user_from_row(row) if row else None

    async def upsert_user(self, uid: str, username: str) -> UserRecord:
        now = _to_db_utc(utc_now())
        async with self._connection("upsert_user") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO users (uid, username, created_at, updated_at)
                VALUES ($1, $2, $3, $3)
                ON CONFLICT (uid) DO UPDATE
                    SET username = EXCLUDED.username, updated_at = EXCLUDED.updated_at
                RETURNING {_USER_COLUMNS}
                """,
                uid, username, now,
            )
        return _user_from_row(row)

    @staticmethod
    async def _insert_transaction(conn, transaction: TransactionRecord, processed_at: datetime):
        row = await conn.fetchrow(
            f"""
            INSERT INTO transactions (uid, payment_id, amount, status, txid, raw, processed_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            RETURNING {_TRANSACTION_COLUMNS}
            """,
            transaction.uid,
            transaction.payment_id,
            transaction.amount,
            transaction.status,
            transaction.txid,
            json.dumps(transaction.raw or {}, default=str),
            _to_db_utc(processed_at),
        )
        return _transaction_from_row(row)

    async def append_transaction(self, transaction: TransactionRecord) -> TransactionRecord:
        async with self._connection("append_transaction") as conn:
            return await self._insert_transaction(
                conn, transaction, transaction.processed_at or utc_now()
            )

    async def list_transactions(
        self, uid: str, limit: int = TRANSACTION_HISTORY_LIMIT
    ) -> List[TransactionRecord]:
        async with self._connection("list_transactions") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TRANSACTION_COLUMNS} FROM transactions
                WHERE uid = $1
                ORDER BY processed_at DESC, id DESC
                LIMIT $2
                """,
                uid, limit,
            )
        return [_transaction_from_row(row) for row in rows]

    async def get_transaction(self, payment_id: str) -> Optional[TransactionRecord]:
        async with self._connection("get_transaction") as conn:
            row = await conn.fetchrow(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE payment_id = $1",
                payment_id,
            )
        return _transaction_from_row(row) if row else None

    async def _duplicate_result(self, conn, payment_id: str) -> PaymentApplication:
        row = await conn.fetchrow(
            f"""
            SELECT u.uid, u.username, u.is_premium, u.premium_expiry, u.created_at, u.updated_at
            FROM transactions t JOIN users u ON u.uid = t.uid
            WHERE t.payment_id = $1
            """,
            payment_id,
        )
        if row is None:
            raise StorageError(f"Ledger lost user for credited payment {payment_id}")
        user = _user_from_row(row)
        return PaymentApplication(
            user=user, new_expiry=user.premium_expiry, additional_days=0, duplicate=True
        )

    async def apply_payment(
        self,
        uid: str,
        additional_days: int,
        transaction: TransactionRecord,
        default_username: str,
        now: Optional[datetime] = None,
    ) -> PaymentApplication:
        """
        Credit one payment atomically.

        Returns:
            PaymentApplication (duplicate=True if payment_id was already credited)

        Raises:
            StorageError: database unavailable or write failed (nothing committed)
        """
        if now is None:
            now = utc_now()
        db_now = _to_db_utc(now)

        async with self._connection("apply_payment") as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO users (uid, username, created_at, updated_at)
                        VALUES ($1, $2, $3, $3)
                        ON CONFLICT (uid) DO NOTHING
                        """,
                        uid, default_username, db_now,
                    )
                    row = await conn.fetchrow(
                        f"SELECT {_USER_COLUMNS} FROM users WHERE uid = $1 FOR UPDATE", uid
                    )
                    user = _user_from_row(row)

                    already = await conn.fetchval(
                        "SELECT 1 FROM transactions WHERE payment_id = $1", transaction.payment_id
                    )
                    if already:
                        logger.info(
                            f"ledger.apply_payment: duplicate payment_id={transaction.payment_id} uid={uid}"
                        )
                        return await self._duplicate_result(conn, transaction.payment_id)

                    new_expiry = compute_new_expiry(
                        user.premium_expiry, user.is_premium, additional_days, now
                    )
                    is_premium = user.is_premium or additional_days > 0
                    row = await conn.fetchrow(
                        f"""
                        UPDATE users
                        SET is_premium = $2, premium_expiry = $3, updated_at = $4
                        WHERE uid = $1
                        RETURNING {_USER_COLUMNS}
                        """,
                        uid, is_premium, _to_db_utc(new_expiry), db_now,
                    )
                    await self._insert_transaction(
                        conn, TransactionRecord(
                            uid=uid,
                            payment_id=transaction.payment_id,
                            amount=transaction.amount,
                            status=transaction.status,
                            txid=transaction.txid,
                            raw=transaction.raw,
                        ),
                        now,
                    )
            except asyncpg.UniqueViolationError:
                # A concurrent call for the same payment_id on another user row won the insert
                logger.warning(
                    f"ledger.apply_payment: unique violation payment_id={transaction.payment_id}"
                )
                return await self._duplicate_result(conn, transaction.payment_id)

        return PaymentApplication(
            user=_user_from_row(row),
            new_expiry=new_expiry,
            additional_days=additional_days,
            duplicate=False,
        )

    async def close(self) -> None:
        await close_pool()

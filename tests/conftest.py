"""
Pytest configuration and shared fixtures for service and API tests.
"""
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import config
from app.core.ledger import InMemoryLedgerStore, TransactionRecord, UserRecord
from app.services.identity import IdentityService
from app.services.payments import PaymentService


FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now():
    """Fixed aware UTC datetime for deterministic tests"""
    return FIXED_NOW


@pytest.fixture
def settings():
    """LOCAL settings: in-memory ledger, fake Pi base URL"""
    return config.load_settings({
        "APP_ENV": "local",
        "LOCAL_PI_SERVER_API_KEY": "test-server-key",
        "LOCAL_PI_API_BASE": "https://pi.test/v2",
        "LOCAL_CORS_ORIGINS": "*",
    })


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def mock_provider():
    """Pi client double: every call succeeds unless a test overrides it"""
    provider = MagicMock()
    provider.get_me = AsyncMock(return_value={"uid": "u1", "username": "alice"})
    provider.approve_payment = AsyncMock(return_value={})
    provider.complete_payment = AsyncMock(return_value={})
    provider.get_payment = AsyncMock(return_value={
        "identifier": "p1",
        "from_uid": "u1",
        "amount": 2,
        "status": {"developer_completed": True, "cancelled": False, "user_cancelled": False},
    })
    return provider


@pytest.fixture
def payment_service(settings, mock_provider, store, fixed_now):
    return PaymentService(settings, mock_provider, store, clock=lambda: fixed_now)


@pytest.fixture
def identity_service(settings, mock_provider, store, fixed_now):
    return IdentityService(settings, mock_provider, store, clock=lambda: fixed_now)


def _seed_user(
    store: InMemoryLedgerStore,
    uid: str,
    username: str = "alice",
    is_premium: bool = False,
    premium_expiry: Optional[datetime] = None,
) -> UserRecord:
    """Put a user straight into the in-memory ledger"""
    user = UserRecord(
        uid=uid,
        username=username,
        is_premium=is_premium,
        premium_expiry=premium_expiry,
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
    )
    store._users[uid] = user
    return user


def _make_transaction(uid: str, payment_id: str, amount="2", processed_at=None) -> TransactionRecord:
    return TransactionRecord(
        uid=uid,
        payment_id=payment_id,
        amount=Decimal(str(amount)),
        status="completed",
        txid=f"tx-{payment_id}",
        raw={"identifier": payment_id},
        processed_at=processed_at,
    )


@pytest.fixture
def seed_user(store):
    """seed_user(uid, is_premium=..., premium_expiry=...) -> UserRecord in the fixture store"""
    return lambda uid, **kwargs: _seed_user(store, uid, **kwargs)


@pytest.fixture
def make_transaction():
    return _make_transaction

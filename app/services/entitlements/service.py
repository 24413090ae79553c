"""
Entitlement Service Layer

Pure functions that turn a payment amount into premium days and premium days
into an expiry date. No I/O: the ledger store calls these while it holds the
per-user lock, and the identity service calls them to build user views.

All datetimes are timezone-aware UTC. Naive values are assumed to be UTC.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from app.constants.premium import BLOCK_SIZE_PI, DAYS_PER_BLOCK, MAX_GRANT_BLOCKS

SECONDS_PER_DAY = 86400

# Latest expiry we can represent (and store); longer grants are clamped here
MAX_PREMIUM_EXPIRY = datetime(9999, 12, 31, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_expiry(value: Any) -> Optional[datetime]:
    """
    Parse a premium expiry from the formats we meet (datetime, ISO string, None).

    Args:
        value: Expiry as stored or as received over the wire

    Returns:
        Aware UTC datetime, or None if absent or unparseable
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return _ensure_utc(value)

    if isinstance(value, str):
        try:
            return _ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None

    return None


def coerce_amount(value: Any) -> Decimal:
    """
    Coerce a provider amount to Decimal. Missing, boolean or non-numeric values become 0.
    """
    if value is None or isinstance(value, bool) or value == "":
        return Decimal(0)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)
    if not amount.is_finite():
        return Decimal(0)
    return amount


def compute_grant(amount: Any) -> int:
    """
    Map a payment amount to additional premium days.

    additional_days = floor(amount / BLOCK_SIZE_PI) * DAYS_PER_BLOCK.
    Amounts below one block grant nothing (no error). At most
    MAX_GRANT_BLOCKS blocks are credited for one payment.

    Args:
        amount: Payment amount in Pi (int, float, Decimal or numeric string)

    Returns:
        Number of days to add (>= 0)
    """
    value = coerce_amount(amount)
    if value < BLOCK_SIZE_PI:
        return 0
    if value >= BLOCK_SIZE_PI * MAX_GRANT_BLOCKS:
        return MAX_GRANT_BLOCKS * DAYS_PER_BLOCK
    blocks = int(value // BLOCK_SIZE_PI)
    return blocks * DAYS_PER_BLOCK


def compute_new_expiry(
    current_expiry: Optional[datetime],
    currently_active: bool,
    additional_days: int,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Extend an entitlement by additional_days.

    Active entitlements stack on top of their current expiry; lapsed or absent
    ones restart from now. A zero-day grant leaves the expiry untouched.
    Results past MAX_PREMIUM_EXPIRY are clamped to it.

    Args:
        current_expiry: Stored expiry (None if never granted)
        currently_active: Cached premium flag from the user record
        additional_days: Days produced by compute_grant
        now: Current time (defaults to utc_now())

    Returns:
        New expiry (or the unchanged current expiry for a zero grant)
    """
    current = parse_expiry(current_expiry)
    if additional_days <= 0:
        return current

    if now is None:
        now = utc_now()
    now = _ensure_utc(now)

    if currently_active and current is not None and current > now:
        base = current
    else:
        base = now
    if additional_days >= (MAX_PREMIUM_EXPIRY - base).days:
        return MAX_PREMIUM_EXPIRY
    return base + timedelta(days=additional_days)


def compute_remaining_days(expiry: Any, now: Optional[datetime] = None) -> int:
    """
    Whole days of premium left, rounded up. 0 for absent or past expiries.
    """
    expires_at = parse_expiry(expiry)
    if expires_at is None:
        return 0
    if now is None:
        now = utc_now()
    seconds = (expires_at - _ensure_utc(now)).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def is_premium_active(record: Any, now: Optional[datetime] = None) -> bool:
    """
    Premium is active only if the cached flag is set AND the expiry is still ahead.

    The stored flag alone is never trusted: a record can hold is_premium=True
    with an expiry in the past.
    """
    if record is None:
        return False
    if not getattr(record, "is_premium", False):
        return False
    return compute_remaining_days(getattr(record, "premium_expiry", None), now) > 0


@dataclass
class EntitlementStatus:
    """Entitlement status information derived from a user record"""
    is_active: bool
    has_entitlement: bool
    expires_at: Optional[datetime]
    remaining_days: int
    is_expired: bool


def get_entitlement_status(record: Any, now: Optional[datetime] = None) -> EntitlementStatus:
    """
    Recompute the full entitlement picture for a user record.

    Args:
        record: UserRecord (or None)
        now: Current time (defaults to utc_now())

    Returns:
        EntitlementStatus
    """
    if now is None:
        now = utc_now()

    expires_at = parse_expiry(getattr(record, "premium_expiry", None)) if record else None
    if expires_at is None:
        return EntitlementStatus(
            is_active=False,
            has_entitlement=False,
            expires_at=None,
            remaining_days=0,
            is_expired=False,
        )

    remaining_days = compute_remaining_days(expires_at, now)
    return EntitlementStatus(
        is_active=is_premium_active(record, now),
        has_entitlement=True,
        expires_at=expires_at,
        remaining_days=remaining_days,
        is_expired=expires_at <= _ensure_utc(now),
    )

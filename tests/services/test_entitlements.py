"""
Unit tests for the entitlement calculator.

Pure functions: grant table, stacking, remaining days, active flag.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.constants.premium import MAX_GRANT_BLOCKS
from app.core.ledger import UserRecord
from app.services.entitlements.service import (
    MAX_PREMIUM_EXPIRY,
    coerce_amount,
    compute_grant,
    compute_new_expiry,
    compute_remaining_days,
    get_entitlement_status,
    is_premium_active,
    parse_expiry,
)

NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestComputeGrant:
    """Tests for compute_grant"""

    @pytest.mark.parametrize("amount,days", [
        (0, 0),
        (1, 0),
        (1.99, 0),
        (2, 30),
        (3, 30),
        (4, 60),
        (5, 30 * 2),
        (10, 150),
        ("4", 60),
        (Decimal("6.5"), 90),
    ])
    def test_grant_table(self, amount, days):
        assert compute_grant(amount) == days

    def test_five_pi_grants_two_blocks(self):
        """5 Pi is two full blocks, the remainder is not credited"""
        assert compute_grant(5) == 60

    def test_invalid_amounts_grant_nothing(self):
        for amount in (None, "", "abc", -4, True, float("nan")):
            assert compute_grant(amount) == 0

    def test_floor_law(self):
        for amount in range(0, 40):
            assert compute_grant(amount) == (amount // 2) * 30

    def test_huge_amount_capped(self):
        cap = MAX_GRANT_BLOCKS * 30
        assert compute_grant(2 * MAX_GRANT_BLOCKS) == cap
        assert compute_grant(Decimal("1e30")) == cap
        assert compute_grant(2 * MAX_GRANT_BLOCKS - 2) == cap - 30


class TestCoerceAmount:
    def test_numeric_string(self):
        assert coerce_amount("3.14") == Decimal("3.14")

    def test_missing_is_zero(self):
        assert coerce_amount(None) == 0
        assert coerce_amount("") == 0

    def test_infinite_is_zero(self):
        assert coerce_amount(float("inf")) == 0


class TestComputeNewExpiry:
    """Stacking: active windows extend, lapsed ones restart from now"""

    def test_active_entitlement_stacks(self):
        current = NOW + timedelta(days=10)
        assert compute_new_expiry(current, True, 30, NOW) == current + timedelta(days=30)

    def test_lapsed_entitlement_restarts_from_now(self):
        current = NOW - timedelta(days=5)
        assert compute_new_expiry(current, True, 30, NOW) == NOW + timedelta(days=30)

    def test_absent_entitlement_starts_now(self):
        assert compute_new_expiry(None, False, 60, NOW) == NOW + timedelta(days=60)

    def test_inactive_flag_ignores_future_expiry(self):
        """Cached flag false -> base is now even with a future expiry"""
        current = NOW + timedelta(days=10)
        assert compute_new_expiry(current, False, 30, NOW) == NOW + timedelta(days=30)

    def test_zero_grant_keeps_expiry(self):
        current = NOW + timedelta(days=3)
        assert compute_new_expiry(current, True, 0, NOW) == current

    def test_zero_grant_keeps_absent_expiry(self):
        assert compute_new_expiry(None, False, 0, NOW) is None

    def test_accepts_iso_string(self):
        result = compute_new_expiry("2024-01-20T12:00:00Z", True, 30, NOW)
        assert result == datetime(2024, 2, 19, 12, 0, 0, tzinfo=timezone.utc)

    def test_clamped_at_max_expiry(self):
        """A grant that runs past year 9999 stops at the last representable expiry"""
        assert compute_new_expiry(None, False, 3_000_000, NOW) == MAX_PREMIUM_EXPIRY
        assert compute_new_expiry(MAX_PREMIUM_EXPIRY, True, 30, NOW) == MAX_PREMIUM_EXPIRY


class TestComputeRemainingDays:
    def test_rounds_up(self):
        assert compute_remaining_days(NOW + timedelta(days=29, hours=1), NOW) == 30

    def test_exact_days(self):
        assert compute_remaining_days(NOW + timedelta(days=30), NOW) == 30

    def test_past_and_present_are_zero(self):
        assert compute_remaining_days(NOW, NOW) == 0
        assert compute_remaining_days(NOW - timedelta(days=1), NOW) == 0

    def test_none_is_zero(self):
        assert compute_remaining_days(None, NOW) == 0

    def test_monotonic_non_increasing(self):
        expiry = NOW + timedelta(days=3)
        values = [compute_remaining_days(expiry, NOW + timedelta(hours=h)) for h in range(0, 100, 7)]
        assert values == sorted(values, reverse=True)

    def test_naive_expiry_treated_as_utc(self):
        naive = datetime(2024, 1, 16, 12, 0, 0)
        assert compute_remaining_days(naive, NOW) == 1


class TestIsPremiumActive:
    def test_flag_and_future_expiry(self):
        user = UserRecord(uid="u1", username="a", is_premium=True, premium_expiry=NOW + timedelta(days=1))
        assert is_premium_active(user, NOW) is True

    def test_stale_flag_with_past_expiry(self):
        """Stored flag alone is never trusted"""
        user = UserRecord(uid="u1", username="a", is_premium=True, premium_expiry=NOW - timedelta(days=1))
        assert is_premium_active(user, NOW) is False

    def test_flag_off(self):
        user = UserRecord(uid="u1", username="a", is_premium=False, premium_expiry=NOW + timedelta(days=1))
        assert is_premium_active(user, NOW) is False

    def test_none_record(self):
        assert is_premium_active(None, NOW) is False


class TestEntitlementStatus:
    def test_no_entitlement(self):
        status = get_entitlement_status(UserRecord(uid="u1", username="a"), NOW)
        assert status.has_entitlement is False
        assert status.remaining_days == 0

    def test_expired(self):
        user = UserRecord(uid="u1", username="a", is_premium=True, premium_expiry=NOW - timedelta(hours=1))
        status = get_entitlement_status(user, NOW)
        assert status.has_entitlement is True
        assert status.is_expired is True
        assert status.is_active is False


class TestParseExpiry:
    def test_formats(self):
        assert parse_expiry(None) is None
        assert parse_expiry("not a date") is None
        assert parse_expiry(12345) is None
        assert parse_expiry("2024-01-15T12:00:00+00:00") == NOW
        assert parse_expiry("2024-01-15T12:00:00Z") == NOW

"""
Entitlement Service Package
"""

from app.services.entitlements.service import (
    coerce_amount,
    compute_grant,
    compute_new_expiry,
    compute_remaining_days,
    is_premium_active,
    get_entitlement_status,
    parse_expiry,
    utc_now,
    EntitlementStatus,
)

__all__ = [
    "coerce_amount",
    "compute_grant",
    "compute_new_expiry",
    "compute_remaining_days",
    "is_premium_active",
    "get_entitlement_status",
    "parse_expiry",
    "utc_now",
    "EntitlementStatus",
]

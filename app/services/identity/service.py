"""
Identity Service Layer

Resolves a Pi access token to a user and keeps the user's display name fresh.
The uid always comes from the provider's /me answer: a uid sent by the client
is never trusted.

Entitlement fields are never touched here; only PaymentService extends them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.constants.premium import DEFAULT_USERNAME, TRANSACTION_HISTORY_LIMIT
from app.core.ledger import TransactionRecord, UserRecord
from app.core.structured_logger import log_event
from app.services.entitlements.service import get_entitlement_status, utc_now
from app.services.identity.exceptions import (
    IdentityProviderUnavailableError,
    InvalidAccessTokenError,
    MissingAccessTokenError,
    UserNotFoundError,
)
from app.core.exceptions import ValidationError
from pi_network import PiAuthError, PiInvalidResponseError, PiNetworkError

logger = logging.getLogger(__name__)


@dataclass
class UserView:
    """Public user status: premium recomputed from the expiry, newest transactions first"""
    uid: str
    username: str
    premium: bool
    premium_expiry: Optional[datetime]
    remaining_days: int
    transactions: List[TransactionRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "username": self.username,
            "premium": self.premium,
            "premium_expiry": self.premium_expiry.isoformat() if self.premium_expiry else None,
            "remainingDays": self.remaining_days,
            "transactions": [t.to_view() for t in self.transactions],
        }


def build_user_view(
    user: UserRecord,
    transactions: List[TransactionRecord],
    now: Optional[datetime] = None,
) -> UserView:
    status = get_entitlement_status(user, now)
    return UserView(
        uid=user.uid,
        username=user.username,
        premium=status.is_active,
        premium_expiry=status.expires_at,
        remaining_days=status.remaining_days,
        transactions=transactions[:TRANSACTION_HISTORY_LIMIT],
    )


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class IdentityService:
    """
    Args:
        settings: config.Settings
        provider: PiNetworkClient
        store: LedgerStore
        clock: returns the current aware UTC time
    """

    def __init__(self, settings, provider, store, clock: Callable[[], datetime] = utc_now):
        self._settings = settings
        self._provider = provider
        self._store = store
        self._clock = clock

    async def verify_identity(
        self, access_token: Any, fallback: Optional[Mapping[str, Any]] = None
    ) -> UserView:
        """
        Verify a Pi access token and create or refresh the user.

        Args:
            access_token: Token from the Pi SDK authenticate() call
            fallback: Client-side user object; only its username is used, and only
                      when the provider returns none

        Returns:
            UserView of the verified user

        Raises:
            MissingAccessTokenError: no token
            InvalidAccessTokenError: provider rejected the token or returned no uid
            IdentityProviderUnavailableError: /me timed out or failed
            StorageError: ledger unavailable
        """
        if not isinstance(access_token, str) or not access_token.strip():
            raise MissingAccessTokenError("Missing accessToken")

        try:
            me = await self._provider.get_me(access_token.strip())
        except (PiAuthError, PiInvalidResponseError) as e:
            log_event(logger, component="identity", operation="verify_identity",
                      outcome="rejected", reason=type(e).__name__, level="warning")
            raise InvalidAccessTokenError("Invalid token") from e
        except PiNetworkError as e:
            log_event(logger, component="identity", operation="verify_identity",
                      outcome="failed", reason=type(e).__name__, level="error")
            raise IdentityProviderUnavailableError(f"Pi /me failed: {e}") from e

        uid = _clean(me.get("uid"))
        if not uid:
            raise InvalidAccessTokenError("Invalid token/user")

        fallback = fallback if isinstance(fallback, Mapping) else {}
        username = _clean(me.get("username")) or _clean(fallback.get("username")) or DEFAULT_USERNAME

        user = await self._store.upsert_user(uid, username)
        transactions = await self._store.list_transactions(uid, TRANSACTION_HISTORY_LIMIT)

        log_event(logger, component="identity", operation="verify_identity",
                  correlation_id=uid, outcome="success")
        return build_user_view(user, transactions, self._clock())

    async def get_user_status(self, uid: Any) -> UserView:
        """
        Raises:
            ValidationError: empty uid
            UserNotFoundError: unknown uid
        """
        uid = _clean(uid)
        if not uid:
            raise ValidationError("Missing uid")

        user = await self._store.get_user(uid)
        if user is None:
            raise UserNotFoundError("User not found")

        transactions = await self._store.list_transactions(uid, TRANSACTION_HISTORY_LIMIT)
        return build_user_view(user, transactions, self._clock())

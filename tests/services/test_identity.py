"""
Unit tests for identity service layer.
"""
import pytest
from datetime import timedelta

from app.core.exceptions import AuthenticationError, NotFoundError, ProviderError, ValidationError
from app.services.identity.exceptions import (
    IdentityProviderUnavailableError,
    InvalidAccessTokenError,
    MissingAccessTokenError,
    UserNotFoundError,
)
from pi_network import PiAuthError, PiInvalidResponseError, PiNetworkError


class TestVerifyIdentity:
    """Tests for verify_identity"""

    @pytest.mark.asyncio
    async def test_creates_user(self, identity_service, mock_provider, store):
        view = await identity_service.verify_identity("token-1")

        assert view.uid == "u1"
        assert view.username == "alice"
        assert view.premium is False
        assert view.premium_expiry is None
        assert view.remaining_days == 0
        assert view.transactions == []
        mock_provider.get_me.assert_awaited_once_with("token-1")
        assert (await store.get_user("u1")).username == "alice"

    @pytest.mark.asyncio
    async def test_idempotent(self, identity_service, store):
        first = await identity_service.verify_identity("token-1")
        second = await identity_service.verify_identity("token-1")

        assert first.to_dict() == second.to_dict()
        assert len(store._users) == 1

    @pytest.mark.asyncio
    async def test_refreshes_username_keeps_entitlement(self, identity_service, mock_provider, store, seed_user, fixed_now):
        """Scenario E: name refresh never touches the premium window"""
        expiry = fixed_now + timedelta(days=20)
        seed_user("u1", username="old-name", is_premium=True, premium_expiry=expiry)
        mock_provider.get_me.return_value = {"uid": "u1", "username": "new-name"}

        view = await identity_service.verify_identity("token-1")

        assert view.username == "new-name"
        assert view.premium is True
        assert view.premium_expiry == expiry
        assert view.remaining_days == 20
        user = await store.get_user("u1")
        assert user.is_premium is True
        assert user.premium_expiry == expiry

    @pytest.mark.asyncio
    async def test_client_uid_is_ignored(self, identity_service, mock_provider):
        view = await identity_service.verify_identity("token-1", {"uid": "attacker", "username": "x"})
        assert view.uid == "u1"
        assert view.username == "alice"

    @pytest.mark.asyncio
    async def test_fallback_username(self, identity_service, mock_provider):
        mock_provider.get_me.return_value = {"uid": "u1"}
        view = await identity_service.verify_identity("token-1", {"username": "from-client"})
        assert view.username == "from-client"

    @pytest.mark.asyncio
    async def test_default_username(self, identity_service, mock_provider):
        mock_provider.get_me.return_value = {"uid": "u1", "username": ""}
        view = await identity_service.verify_identity("token-1", None)
        assert view.username == "Pioneer"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "   ", 42])
    async def test_missing_token(self, identity_service, mock_provider, token):
        with pytest.raises(MissingAccessTokenError) as exc_info:
            await identity_service.verify_identity(token)
        assert isinstance(exc_info.value, ValidationError)
        mock_provider.get_me.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_token(self, identity_service, mock_provider, store):
        mock_provider.get_me.side_effect = PiAuthError("nope", 401)

        with pytest.raises(InvalidAccessTokenError) as exc_info:
            await identity_service.verify_identity("bad")

        assert isinstance(exc_info.value, AuthenticationError)
        assert exc_info.value.http_status == 401
        assert store._users == {}

    @pytest.mark.asyncio
    async def test_client_error_is_authentication(self, identity_service, mock_provider):
        mock_provider.get_me.side_effect = PiInvalidResponseError("bad request", 400)
        with pytest.raises(InvalidAccessTokenError):
            await identity_service.verify_identity("bad")

    @pytest.mark.asyncio
    async def test_provider_down(self, identity_service, mock_provider):
        mock_provider.get_me.side_effect = PiNetworkError("timeout")

        with pytest.raises(IdentityProviderUnavailableError) as exc_info:
            await identity_service.verify_identity("token-1")

        assert isinstance(exc_info.value, ProviderError)
        assert exc_info.value.kind == "provider"

    @pytest.mark.asyncio
    async def test_missing_uid_in_provider_answer(self, identity_service, mock_provider):
        mock_provider.get_me.return_value = {"username": "alice"}
        with pytest.raises(InvalidAccessTokenError):
            await identity_service.verify_identity("token-1")


class TestGetUserStatus:
    @pytest.mark.asyncio
    async def test_unknown_user(self, identity_service):
        with pytest.raises(UserNotFoundError) as exc_info:
            await identity_service.get_user_status("nobody")
        assert isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.http_status == 404

    @pytest.mark.asyncio
    async def test_empty_uid(self, identity_service):
        with pytest.raises(ValidationError):
            await identity_service.get_user_status("")

    @pytest.mark.asyncio
    async def test_stale_flag_reported_inactive(self, identity_service, seed_user, fixed_now):
        seed_user("u1", is_premium=True, premium_expiry=fixed_now - timedelta(days=1))

        view = await identity_service.get_user_status("u1")

        assert view.premium is False
        assert view.remaining_days == 0
        assert view.premium_expiry == fixed_now - timedelta(days=1)

    @pytest.mark.asyncio
    async def test_view_shape_after_payment(self, identity_service, payment_service, fixed_now):
        await payment_service.complete_payment("p1", "tx1")

        data = (await identity_service.get_user_status("u1")).to_dict()

        assert data["uid"] == "u1"
        assert data["username"] == "Pioneer"
        assert data["premium"] is True
        assert data["remainingDays"] == 30
        assert data["premium_expiry"] == (fixed_now + timedelta(days=30)).isoformat()
        assert data["transactions"] == [{
            "paymentId": "p1",
            "amount": 2.0,
            "status": "completed",
            "txid": "tx1",
            "processedAt": fixed_now.isoformat(),
        }]

    @pytest.mark.asyncio
    async def test_transactions_newest_first_and_capped(self, identity_service, store, seed_user, make_transaction, fixed_now):
        seed_user("u1")
        for i in range(105):
            await store.append_transaction(
                make_transaction("u1", f"p{i}", processed_at=fixed_now + timedelta(minutes=i))
            )

        view = await identity_service.get_user_status("u1")

        assert len(view.transactions) == 100
        assert view.transactions[0].payment_id == "p104"
        assert view.transactions[-1].payment_id == "p5"

"""
Pi Platform API client

Wraps the four Pi Platform endpoints the backend consumes:
- GET  /me                       (user token, "Bearer")
- POST /payments/{id}/approve    (server key, "Key")
- POST /payments/{id}/complete   (server key, "Key")
- GET  /payments/{id}            (server key, "Key")

Base URL, server key and timeout come from config.Settings.
GETs are retried on transport failures; POSTs are sent exactly once.
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from app.utils.retry import retry_async

logger = logging.getLogger(__name__)


class PiNetworkError(Exception):
    """Base class for Pi Platform API errors (timeouts, transport errors, 5xx)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PiAuthError(PiNetworkError):
    """Authentication error (401, 403)"""
    pass


class PiInvalidResponseError(PiNetworkError):
    """Client error (other 4xx) or a body that is not a JSON object"""
    pass


class PiNetworkClient:
    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self._base_url = settings.pi_api_base.rstrip("/")
        self._server_key = settings.pi_server_api_key
        self._client = client or httpx.AsyncClient(timeout=settings.pi_api_timeout)

    def _server_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self._server_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _user_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _payment_url(self, payment_id: str, action: str = "") -> str:
        url = f"{self._base_url}/payments/{quote(payment_id, safe='')}"
        return f"{url}/{action}" if action else url

    @staticmethod
    def _check_response(response: httpx.Response, operation: str) -> Dict[str, Any]:
        """
        Map an HTTP answer to a JSON object or a typed error.

        Raises:
            PiAuthError: 401/403
            PiInvalidResponseError: other 4xx, or a non-object body on 2xx
            PiNetworkError: 5xx and any other non-2xx
        """
        status = response.status_code
        if status in (401, 403):
            error_msg = f"{operation}: authentication error status={status}"
            logger.warning(f"Pi API error: {error_msg}")
            raise PiAuthError(error_msg, status)

        if 400 <= status < 500:
            error_msg = f"{operation}: client error status={status}, response={response.text[:200]}"
            logger.error(f"Pi API error: {error_msg}")
            raise PiInvalidResponseError(error_msg, status)

        if not 200 <= status < 300:
            error_msg = f"{operation}: server error status={status}"
            logger.error(f"Pi API error: {error_msg}")
            raise PiNetworkError(error_msg, status)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            raise PiInvalidResponseError(f"{operation}: response is not JSON", status)
        if not isinstance(data, dict):
            raise PiInvalidResponseError(f"{operation}: response is not a JSON object", status)
        return data

    async def _get(self, url: str, headers: Dict[str, str], operation: str) -> Dict[str, Any]:
        try:
            response = await retry_async(lambda: self._client.get(url, headers=headers))
        except httpx.TimeoutException as e:
            logger.error(f"Pi API error: {operation}: timeout")
            raise PiNetworkError(f"{operation}: timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"Pi API error: {operation}: {type(e).__name__}: {e}")
            raise PiNetworkError(f"{operation}: {type(e).__name__}") from e
        return self._check_response(response, operation)

    async def _post(self, url: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(url, headers=self._server_headers(), json=body)
        except httpx.TimeoutException as e:
            logger.error(f"Pi API error: {operation}: timeout")
            raise PiNetworkError(f"{operation}: timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"Pi API error: {operation}: {type(e).__name__}: {e}")
            raise PiNetworkError(f"{operation}: {type(e).__name__}") from e
        return self._check_response(response, operation)

    async def get_me(self, access_token: str) -> Dict[str, Any]:
        """
        Resolve a user access token to the provider's user object.

        Args:
            access_token: Token issued to the client by the Pi SDK

        Returns:
            Provider user object ({"uid": ..., "username": ...})

        Raises:
            PiAuthError: token rejected
            PiNetworkError: timeout / transport / 5xx
        """
        return await self._get(f"{self._base_url}/me", self._user_headers(access_token), "get_me")

    async def approve_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._post(self._payment_url(payment_id, "approve"), {}, "approve_payment")

    async def complete_payment(self, payment_id: str, txid: str) -> Dict[str, Any]:
        return await self._post(
            self._payment_url(payment_id, "complete"), {"txid": txid}, "complete_payment"
        )

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._get(self._payment_url(payment_id), self._server_headers(), "get_payment")

    async def close(self) -> None:
        await self._client.aclose()

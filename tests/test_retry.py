"""
Tests for retry_async and the secret-redacting log filter.
"""
import logging
import pytest
from unittest.mock import AsyncMock, patch

import httpx

from app.core.logging_config import SecretRedactionFilter
from app.utils.retry import backoff_delay, retry_async


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        fn = AsyncMock(return_value="ok")
        assert await retry_async(fn) == "ok"
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        fn = AsyncMock(side_effect=[httpx.ConnectError("refused"), "ok"])
        with patch("app.utils.retry.backoff_delay", return_value=0):
            assert await retry_async(fn) == "ok"
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_non_transient_raised_immediately(self):
        fn = AsyncMock(side_effect=ValueError("domain"))
        with pytest.raises(ValueError):
            await retry_async(fn)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_exhausted(self):
        fn = AsyncMock(side_effect=ConnectionError("down"))
        with patch("app.utils.retry.backoff_delay", return_value=0):
            with pytest.raises(ConnectionError):
                await retry_async(fn, retries=2)
        assert fn.await_count == 3

    def test_backoff_capped(self):
        for attempt in range(10):
            assert 0 <= backoff_delay(attempt, 0.5, 5.0) <= 6.0


class TestSecretRedaction:
    def _record(self, msg, *args):
        return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)

    def test_bearer_token_masked(self):
        record = self._record("headers Authorization: Bearer abc.def-123")
        SecretRedactionFilter().filter(record)
        assert record.getMessage() == "headers Authorization: Bearer ***"

    def test_server_key_masked_in_args(self):
        record = self._record("sending %s", "Key s3cr3t")
        SecretRedactionFilter().filter(record)
        assert "s3cr3t" not in record.getMessage()

    def test_plain_message_untouched(self):
        record = self._record("complete_payment: START [payment_id=%s]", "p1")
        SecretRedactionFilter().filter(record)
        assert record.args == ("p1",)

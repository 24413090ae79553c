"""
Redis Distributed Lock Module

SET NX PX lock with a UUID token and a Lua compare-and-delete release.
Used to serialize completion of a single payment id across instances:

    lock:{env}:payment_complete:{payment_id}

The TTL releases the lock if the holder crashes mid-completion.
"""
import asyncio
import logging
import os
import uuid
from typing import Callable, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Atomic compare-and-delete: only the token owner may release
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

PAYMENT_LOCK_TTL_SECONDS = 60
PAYMENT_LOCK_WAIT_SECONDS = 15

# Consecutive Redis errors after which acquire stops waiting
MAX_CONSECUTIVE_ERRORS = 3


class LockNotAcquiredError(Exception):
    """Lock is held by someone else and wait_timeout elapsed"""

    def __init__(self, key: str):
        super().__init__(f"Failed to acquire Redis lock: {key}")
        self.key = key


class LockBackendUnavailableError(Exception):
    """Redis kept failing while trying to take the lock"""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"Redis unavailable for lock {key}: {cause}")
        self.key = key
        self.cause = cause


def payment_lock_key(app_env: str, payment_id: str) -> str:
    return f"lock:{app_env}:payment_complete:{payment_id}"


class RedisDistributedLock:
    """
    Redis distributed lock usable as ``async with``.

    Example:
        async with RedisDistributedLock(client, "lock:prod:payment_complete:abc"):
            ...  # critical section

    Raises LockNotAcquiredError from __aenter__ if the lock could not be taken
    within wait_timeout seconds, or LockBackendUnavailableError if Redis itself
    kept failing.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: int = PAYMENT_LOCK_TTL_SECONDS,
        wait_timeout: float = PAYMENT_LOCK_WAIT_SECONDS,
        poll_interval: float = 0.1,
    ):
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.token: Optional[str] = None
        self.acquired = False
        self.backend_error: Optional[BaseException] = None
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")

    def _log(self, level: int, event: str, outcome: str, **fields):
        logger.log(
            level,
            event,
            extra={
                "component": "infra",
                "operation": fields.pop("operation", "lock_acquire"),
                "outcome": outcome,
                "key": self.key,
                "instance_id": self.instance_id,
                **fields,
            },
        )

    async def acquire(self) -> bool:
        """
        Try SET NX PX until success or wait_timeout.

        Redis errors are logged and retried within the same wait budget;
        MAX_CONSECUTIVE_ERRORS in a row end the wait early and leave the
        error in backend_error.

        Returns:
            True if acquired, False on timeout
        """
        if self.acquired:
            return False

        loop = asyncio.get_running_loop()
        self.token = uuid.uuid4().hex
        start_time = loop.time()
        attempt = 0
        consecutive_errors = 0
        self.backend_error = None

        while True:
            attempt += 1
            try:
                if await self.redis_client.set(
                    self.key, self.token, nx=True, px=self.ttl_seconds * 1000
                ):
                    self.acquired = True
                    self._log(logging.INFO, "REDIS_LOCK_ACQUIRED", "success", attempts=attempt)
                    return True
                consecutive_errors = 0
                self.backend_error = None
                delay = self.poll_interval
            except (redis.RedisError, OSError) as e:
                consecutive_errors += 1
                self.backend_error = e
                self._log(logging.ERROR, "REDIS_LOCK_ERROR", "error", reason=str(e)[:100], attempt=attempt)
                if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    self._log(logging.WARNING, "REDIS_LOCK_UNAVAILABLE", "error", attempts=attempt)
                    self.token = None
                    return False
                delay = self.poll_interval * 2

            elapsed = loop.time() - start_time
            if elapsed >= self.wait_timeout:
                self._log(
                    logging.WARNING,
                    "REDIS_LOCK_TIMEOUT",
                    "timeout",
                    attempts=attempt,
                    elapsed_seconds=round(elapsed, 2),
                )
                self.token = None
                return False
            await asyncio.sleep(delay)

    async def release(self) -> None:
        """Release if owned. Idempotent; a token mismatch (TTL expired) is only logged."""
        if not self.acquired:
            return

        try:
            release_script = self.redis_client.register_script(RELEASE_SCRIPT)
            result = await release_script(keys=[self.key], args=[self.token])
            if result:
                self._log(logging.INFO, "REDIS_LOCK_RELEASED", "success", operation="lock_release")
            else:
                self._log(
                    logging.WARNING,
                    "REDIS_LOCK_ERROR",
                    "failed",
                    operation="lock_release",
                    reason="token_mismatch_or_already_released",
                )
        except (redis.RedisError, OSError) as e:
            self._log(logging.ERROR, "REDIS_LOCK_ERROR", "error", operation="lock_release", reason=str(e)[:100])
        finally:
            self.acquired = False
            self.token = None

    async def __aenter__(self):
        if not await self.acquire():
            if self.backend_error is not None:
                raise LockBackendUnavailableError(self.key, self.backend_error)
            raise LockNotAcquiredError(self.key)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False


def make_payment_lock_factory(
    redis_client: Optional[redis.Redis], app_env: str
) -> Optional[Callable[[str], RedisDistributedLock]]:
    """
    Build the payment_id -> lock factory PaymentService expects.

    Returns None without a Redis client (completion then runs unlocked and
    relies on the ledger's in-transaction idempotency re-check).
    """
    if redis_client is None:
        return None

    def factory(payment_id: str) -> RedisDistributedLock:
        return RedisDistributedLock(redis_client, payment_lock_key(app_env, payment_id))

    return factory

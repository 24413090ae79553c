"""
Process wiring shared by main.py and the operator scripts.

Builds the ledger store, the Pi client, the optional Redis lock and both
services from one Settings value, and tears them down in reverse order.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import database
import redis_client
from app.core.exceptions import StorageError
from app.core.ledger import InMemoryLedgerStore
from app.core.redis_lock import make_payment_lock_factory
from app.services.identity import IdentityService
from app.services.payments import PaymentService
from pi_network import PiNetworkClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: object
    store: object
    provider: PiNetworkClient
    identity: IdentityService
    payments: PaymentService

    async def aclose(self) -> None:
        """Close provider client, Redis and the store. Errors are logged, not raised."""
        for name, closer in (
            ("pi client", self.provider.close),
            ("redis", redis_client.close_redis_client),
            ("ledger store", self.store.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")


async def open_ledger_store(settings):
    """
    PostgreSQL ledger when DATABASE_URL is set, in-memory otherwise.

    Raises:
        StorageError: DATABASE_URL is set but the database could not be initialized
    """
    if not settings.database_url:
        logger.warning("Using in-memory ledger (no DATABASE_URL) - data is lost on restart")
        return InMemoryLedgerStore()

    if not await database.init_db(settings):
        raise StorageError("Database initialization failed")
    return database.PostgresLedgerStore(await database.get_pool())


async def build_services(settings, store: Optional[object] = None) -> Services:
    if store is None:
        store = await open_ledger_store(settings)

    provider = PiNetworkClient(settings)
    if not settings.payments_enabled:
        logger.warning("Pi server API key missing - approve/complete calls will be rejected by Pi")

    redis = await redis_client.init_redis_client(settings.redis_url)
    lock_factory = make_payment_lock_factory(redis, settings.app_env)

    return Services(
        settings=settings,
        store=store,
        provider=provider,
        identity=IdentityService(settings, provider, store),
        payments=PaymentService(settings, provider, store, lock_factory=lock_factory),
    )

"""
HTTP server: aiohttp application factory and runner.
"""
import logging

from aiohttp import web

from app.api.middleware import access_log_middleware, error_middleware, make_cors_middleware
from app.api.routes import IDENTITY_SERVICE, PAYMENT_SERVICE, setup_routes

logger = logging.getLogger(__name__)

# JSON request bodies are tiny; anything larger is rejected with 413
CLIENT_MAX_SIZE = 1024 * 1024


def create_app(settings, identity_service, payment_service) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        settings: config.Settings (CORS origins)
        identity_service: IdentityService
        payment_service: PaymentService
    """
    app = web.Application(
        middlewares=[
            make_cors_middleware(settings.cors_origins),
            access_log_middleware,
            error_middleware,
        ],
        client_max_size=CLIENT_MAX_SIZE,
    )
    app[IDENTITY_SERVICE] = identity_service
    app[PAYMENT_SERVICE] = payment_service
    setup_routes(app)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """
    Start serving app on host:port.

    Returns:
        AppRunner (call runner.cleanup() to stop)
    """
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server started on http://{host}:{port}")
    return runner

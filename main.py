import asyncio
import logging
import signal
import sys

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING -> stdout, ERROR/CRITICAL -> stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging()

import config
from app.api import create_app, start_server
from app.core.bootstrap import build_services
from app.core.exceptions import StorageError
from app.core.structured_logger import log_event

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
# Standard log fields (see app.core.structured_logger.log_event):
# - component        (http / payments / identity / infra / startup / shutdown)
# - operation        (what is happening)
# - correlation_id   (payment id or uid)
# - outcome          (success | failed | rejected | duplicate)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# Access tokens and the Pi server key are never logged.
# ====================================================================================

logger = logging.getLogger(__name__)


async def main():
    try:
        settings = config.load_settings()
    except config.ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    for warning in settings.warnings:
        logger.warning(warning)
    logger.info(f"Starting Pi premium backend (APP_ENV={settings.app_env})")

    try:
        services = await build_services(settings)
    except StorageError as e:
        logger.critical(f"Startup aborted: {e}")
        sys.exit(1)

    app = create_app(settings, services.identity, services.payments)
    runner = await start_server(app, settings.http_host, settings.http_port)
    log_event(logger, component="startup", operation="http_server_started", outcome="success")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still stops us
            pass

    try:
        await stop_event.wait()
    finally:
        log_event(logger, component="shutdown", operation="shutdown_started", outcome="success")
        await runner.cleanup()
        await services.aclose()
        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server stopped")

"""
Logging configuration.

Routes logs by severity for correct container/platform classification:
- INFO, WARNING -> STDOUT
- ERROR, CRITICAL -> STDERR

Uses QueueHandler + QueueListener so request handlers never block on
stdout/stderr; only the listener thread does.

Credentials never reach the output: Authorization header values
("Bearer ...", "Key ...") are masked by SecretRedactionFilter.
"""

import atexit
import logging
import queue
import re
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_SECRET_PATTERN = re.compile(r"\b(Bearer|Key)\s+[A-Za-z0-9._\-~+/=]+")


class MaxLevelFilter(logging.Filter):
    """Allows only records up to max_level (inclusive). Keeps ERROR/CRITICAL off stdout."""

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


class SecretRedactionFilter(logging.Filter):
    """Masks access tokens and server keys that slip into a message."""

    def filter(self, record):
        message = record.getMessage()
        redacted = _SECRET_PATTERN.sub(lambda m: f"{m.group(1)} ***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_log_listener: Optional[QueueListener] = None


def setup_logging(level: int = logging.INFO):
    """
    Install a QueueHandler on the root logger and start the listener thread.

    Safe to call more than once: the previous listener is stopped first.
    Must be called before the first log line that matters.
    """
    global _log_listener

    _stop_log_listener()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    queue_handler = QueueHandler(queue.Queue())
    # Redact before the record is queued: the listener sees the masked text only
    queue_handler.addFilter(SecretRedactionFilter())
    root_logger.addHandler(queue_handler)

    _log_listener = QueueListener(
        queue_handler.queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(_stop_log_listener)

    # aiohttp's own access logger duplicates the access-log middleware
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def _stop_log_listener():
    """Stop the queue listener (called at exit)."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None

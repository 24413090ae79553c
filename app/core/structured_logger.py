"""
Structured lifecycle logs.

One contract for request and payment lifecycle events:
- component
- operation
- correlation_id (optional: payment id, uid or request id)
- outcome
- duration_ms (optional, omitted if None)
- reason (optional)

Do not log secrets, access tokens or full provider payloads.
"""
from logging import Logger
from typing import Optional


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    correlation_id: Optional[str] = None,
    outcome: str,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
) -> None:
    """
    Emit a structured log event.

    The fields travel in ``extra`` and are also appended to the message, so
    they survive the plain-text formatter.

    Args:
        logger: Logger instance
        component: "payments", "identity", "http", "infra"
        operation: "complete_payment", "verify_identity", "request"
        correlation_id: Payment id, uid or request id
        outcome: "success", "failed", "rejected", "duplicate"
        duration_ms: Duration in milliseconds
        reason: Short non-PII explanation (exception class name, status)
        level: "debug", "info", "warning", "error" or "critical"
        message: Message override (defaults to "component operation outcome=...")
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    parts = [f"outcome={outcome}"]
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
        parts.append(f"correlation_id={correlation_id}")
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
        parts.append(f"duration_ms={duration_ms}")
    if reason is not None:
        extra["reason"] = reason
        parts.append(f"reason={reason}")

    msg = message or f"{component} {operation} {' '.join(parts)}"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)

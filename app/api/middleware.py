"""
HTTP middlewares: CORS, access log, error boundary.

Order (outermost first): cors -> access_log -> error_boundary, so error
responses still carry CORS headers and are access-logged with their final status.
"""
import logging
import time
from typing import Awaitable, Callable, Iterable

from aiohttp import web

from app.core.exceptions import ServiceError
from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"
CORS_MAX_AGE = "600"


def error_body(kind: str, message: str) -> dict:
    return {"success": False, "error": kind, "message": message}


def error_response(kind: str, message: str, status: int) -> web.Response:
    return web.json_response(error_body(kind, message), status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """
    Convert every failure into the JSON failure body.

    ServiceError -> its kind/http_status; aiohttp HTTP errors keep their status;
    anything else is logged with traceback and answered as 500 "unexpected".
    """
    try:
        return await handler(request)
    except ServiceError as e:
        level = "error" if e.http_status >= 500 else "warning"
        log_event(
            logger,
            component="http",
            operation=f"{request.method} {request.path}",
            outcome="failed",
            reason=e.kind,
            level=level,
            message=f"{request.method} {request.path} -> {e.http_status} {e.kind}: {e.message}",
        )
        return error_response(e.kind, e.message, e.http_status)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        kind = "not_found" if e.status == 404 else "http_error"
        return error_response(kind, e.reason, e.status)
    except Exception:
        logger.exception(f"Unhandled error in {request.method} {request.path}")
        return error_response("unexpected", "Server error", 500)


@web.middleware
async def access_log_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """One line per request: METHOD path status duration_ms"""
    started = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"{request.method} {request.path_qs} {status} - {duration_ms} ms")


def make_cors_middleware(origins: Iterable[str]):
    """
    Args:
        origins: ("*",) for any origin, otherwise the exact allowed origins
    """
    origins = tuple(origins)
    allow_all = "*" in origins

    def _allowed_origin(request: web.Request):
        origin = request.headers.get("Origin")
        if allow_all:
            return "*"
        if origin and origin in origins:
            return origin
        return None

    def _apply(response: web.StreamResponse, allowed: str):
        response.headers["Access-Control-Allow-Origin"] = allowed
        if not allow_all:
            response.headers["Vary"] = "Origin"

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        allowed = _allowed_origin(request)

        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            response = web.Response(status=204)
            if allowed:
                _apply(response, allowed)
                response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
                response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
                response.headers["Access-Control-Max-Age"] = CORS_MAX_AGE
            return response

        response = await handler(request)
        if allowed:
            _apply(response, allowed)
        return response

    return cors_middleware

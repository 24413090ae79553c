"""
HTTP routes.

GET  /health             -> {"ok": true, "time": iso}
POST /auth/verify        {accessToken, user?}   -> {"success": true, "user": UserView}
POST /payments/approve   {paymentId}            -> {"success": true}
POST /payments/complete  {paymentId, txid}      -> {"success": true, "new_expiry": iso, "already_processed": bool}
GET  /user/{uid}                                -> {"success": true, "user": UserView}

Handlers only parse input and shape output; failures propagate to
middleware.error_middleware.
"""
from typing import Any, Dict

from aiohttp import web

from app.core.exceptions import ValidationError
from app.services.entitlements.service import utc_now
from app.services.identity import IdentityService
from app.services.payments import PaymentService

IDENTITY_SERVICE = web.AppKey("identity_service", IdentityService)
PAYMENT_SERVICE = web.AppKey("payment_service", PaymentService)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.body_exists:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    return body if isinstance(body, dict) else {}


async def health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True, "time": utc_now().isoformat()})


async def verify_identity(request: web.Request) -> web.Response:
    body = await _json_body(request)
    view = await request.app[IDENTITY_SERVICE].verify_identity(
        body.get("accessToken"), body.get("user")
    )
    return web.json_response({"success": True, "user": view.to_dict()})


async def approve_payment(request: web.Request) -> web.Response:
    body = await _json_body(request)
    await request.app[PAYMENT_SERVICE].approve_payment(body.get("paymentId"))
    return web.json_response({"success": True})


async def complete_payment(request: web.Request) -> web.Response:
    body = await _json_body(request)
    result = await request.app[PAYMENT_SERVICE].complete_payment(
        body.get("paymentId"), body.get("txid")
    )
    return web.json_response({
        "success": True,
        "new_expiry": result.new_expiry.isoformat() if result.new_expiry else None,
        "already_processed": result.already_processed,
    })


async def get_user_status(request: web.Request) -> web.Response:
    view = await request.app[IDENTITY_SERVICE].get_user_status(request.match_info["uid"])
    return web.json_response({"success": True, "user": view.to_dict()})


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/health", health)
    app.router.add_post("/auth/verify", verify_identity)
    app.router.add_post("/payments/approve", approve_payment)
    app.router.add_post("/payments/complete", complete_payment)
    app.router.add_get("/user/{uid}", get_user_status)

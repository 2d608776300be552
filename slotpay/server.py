from __future__ import annotations
import os
from typing import Optional

import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Form, Header, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import Settings
from .errors import Forbidden, InvalidLineItem, OrderNotFound, SlotpayError, \
    Unauthorized
from .gateway import MockGateway, PaymentGateway, new_gateway
from .helpers import ct_equal, to_iso
from .identity import RemoteIdentity, StaticIdentity, bearer_token
from .infra import timings
from .infra.logs import configure_logging
from .infra.sql import Database, make_database
from .infra.timings import timeit
from .intent import create_payment_intent
from .model import holds, ledger, tickets
from .model.auditlog import new_audit_log
from .model.db import (
    HOLD_PRODUCT, HOLD_TICKET, UNIT_PRODUCT, UNIT_TICKET_SLOT, create_schema,
)
from .pickup import complete_pickup
from .poller import sync_status
from .reconciler import handle_notification
from .reservation import create_hold

logger = structlog.get_logger(component="server")

MOCK_EMIT_KINDS = {
    "settlement", "capture", "pending", "expire", "cancel", "deny",
    "failure", "refund",
}

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates"))

MOCKPAY_BUTTONS = [
    ("settlement", "Pay"),
    ("deny", "Deny"),
    ("cancel", "Cancel"),
    ("expire", "Expire"),
]


# ----------------------------
# Dependencies
# ----------------------------
async def current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> str:
    token = bearer_token(authorization)
    return await request.app.state.identity.resolve(token)


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise Unauthorized("admin login required", code="ADMIN_REQUIRED")
    return request.session["admin_user"]


def _customer(payload: dict) -> dict:
    return {
        "name": payload.get("customer_name"),
        "email": payload.get("customer_email"),
        "phone": payload.get("customer_phone"),
    }


def _items(payload: dict) -> list:
    items = payload.get("items")
    if not isinstance(items, list) or not all(isinstance(i, dict)
                                               for i in items):
        raise InvalidLineItem("items must be a list of objects")
    return items


async def _order_view(db: Database, order_id: str) -> Optional[dict]:
    async with db.gated():
        async with db.session() as s:
            hold = await holds.get_hold(s, order_id)
            if hold is None:
                return None
            items = await holds.get_line_items(s, hold["id"])
            issued = await tickets.list_for_hold(s, hold["id"])
    view = holds.hold_view(hold, items, issued)
    view["user_id"] = hold["user_id"]
    return view


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    db: Optional[Database] = None,
    gateway: Optional[PaymentGateway] = None,
    identity=None,
    r: Optional[redis.Redis] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="slotpay",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)

    db = db or make_database(settings.database_url)
    if settings.audit_backend == "redis" and r is None:
        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    if gateway is None:
        gateway = new_gateway(
            settings.gateway,
            server_key=settings.midtrans_server_key,
            is_production=settings.midtrans_is_production,
            base_url=settings.public_base_url,
        )
    if identity is None:
        if settings.auth_url:
            identity = RemoteIdentity(settings.auth_url,
                                      settings.auth_anon_key)
        else:
            identity = StaticIdentity(settings.dev_token_map())

    app.state.settings = settings
    app.state.db = db
    app.state.redis = r
    app.state.gateway = gateway
    app.state.identity = identity
    app.state.audit = new_audit_log(settings.audit_backend, db=db, r=r)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _logging_start():
        configure_logging(settings.log_level, json=settings.log_json)
        logger.info("starting", gateway=settings.gateway,
                    audit_backend=settings.audit_backend,
                    database=db.engine.url.get_backend_name())

    @app.on_event("startup")
    async def _db_init():
        await create_schema(db.engine)

    @app.on_event("shutdown")
    async def _timings_flush():
        timings.log_summary()

    @app.on_event("shutdown")
    async def _clients_stop():
        await gateway.aclose()
        aclose = getattr(identity, "aclose", None)
        if aclose is not None:
            await aclose()
        if r is not None:
            await r.close()
        await db.dispose()

    # ---
    # errors
    # ---
    @app.exception_handler(SlotpayError)
    async def _domain_error(request: Request, exc: SlotpayError):
        return ORJSONResponse({"error": exc.message, "code": exc.code},
                              status_code=exc.status_code)

    # ----------------------------
    # Checkout
    # ----------------------------
    async def _checkout(kind: str, payload: dict, user_id: str,
                        finish_path: str):
        placed = await create_hold(
            db, kind=kind, user_id=user_id, items=_items(payload),
            customer=_customer(payload), settings=settings,
        )
        finish_url = (settings.public_base_url.rstrip("/")
                      + finish_path.format(order_id=placed.order_id))
        async with timeit("intent.create"):
            intent = await create_payment_intent(
                db, gateway, placed, finish_url=finish_url,
            )
        intent["payment_expires_at"] = to_iso(placed.payment_expires_at)
        return intent

    @app.post("/api/checkout/tickets")
    async def checkout_tickets(payload: dict,
                               user_id: str = Depends(current_user)):
        return await _checkout(HOLD_TICKET, payload, user_id,
                               "/booking-success?order_id={order_id}")

    @app.post("/api/checkout/products")
    async def checkout_products(payload: dict,
                                user_id: str = Depends(current_user)):
        return await _checkout(HOLD_PRODUCT, payload, user_id,
                               "/order/product/success/{order_id}")

    # ----------------------------
    # Orders (owner only)
    # ----------------------------
    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str, user_id: str = Depends(current_user)):
        async with timeit("db.get_order"):
            view = await _order_view(db, order_id)
        if view is None:
            raise OrderNotFound(order_id)
        if view.pop("user_id") != user_id:
            raise Forbidden("Forbidden")
        return view

    @app.post("/api/orders/{order_id}/sync")
    async def sync_order(order_id: str, user_id: str = Depends(current_user)):
        outcome = await sync_status(
            db, app.state.audit, gateway, order_id,
            user_id=user_id, settings=settings,
        )
        view = await _order_view(db, order_id)
        view.pop("user_id", None)
        return {"status": "ok", "changed": outcome.changed, "order": view}

    # ----------------------------
    # Webhook
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(request: Request):
        try:
            event = await request.json()
        except ValueError:
            raise HTTPException(400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(400, detail="Invalid JSON")

        await handle_notification(db, app.state.audit, event,
                                  settings=settings)
        return {"status": "ok"}

    # ----------------------------
    # Inventory
    # ----------------------------
    @app.get("/api/inventory")
    async def get_inventory(kind: Optional[str] = None):
        return await ledger.compute_inventory(db, kind)

    # ----------------------------
    # Admin
    # ----------------------------
    @app.put("/api/admin/inventory/{unit_id}")
    async def put_inventory_unit(unit_id: str, payload: dict,
                                 _admin: str = Depends(require_admin)):
        kind = payload.get("kind")
        try:
            ref_id = int(payload.get("ref_id"))
            total = int(payload.get("total"))
        except (TypeError, ValueError):
            raise HTTPException(400, detail="ref_id and total must be integers")
        slot_date = payload.get("slot_date")
        time_slot = ledger.normalize_time_slot(payload.get("time_slot"))

        if kind == UNIT_PRODUCT:
            expected = ledger.variant_unit_id(ref_id)
        elif kind == UNIT_TICKET_SLOT and slot_date:
            expected = ledger.slot_unit_id(ref_id, slot_date, time_slot)
        else:
            raise HTTPException(400, detail="invalid unit kind")
        if expected != unit_id:
            raise HTTPException(400, detail=f"unit id must be {expected}")
        if total < 0:
            raise HTTPException(400, detail="total must be >= 0")

        async with db.transaction() as s:
            ok = await ledger.upsert_unit(
                s, unit_id, kind=kind, ref_id=ref_id, total=total,
                name=str(payload.get("name") or ""),
                slot_date=slot_date, time_slot=time_slot,
            )
            unit = await ledger.get_unit(s, unit_id)
        if not ok:
            raise HTTPException(
                409, detail="total below reserved + sold for this unit")
        logger.info("unit_upserted", unit_id=unit_id, total=total)
        return {
            "unit_id": unit["id"],
            "total": unit["total"],
            "reserved": unit["reserved"],
            "sold": unit["sold"],
            "available": ledger.available_of(unit),
        }

    @app.post("/api/admin/pickup")
    async def admin_pickup(payload: dict,
                           admin: str = Depends(require_admin)):
        return await complete_pickup(
            db, str(payload.get("pickup_code") or ""), picked_up_by=admin,
        )

    @app.get("/api/admin/audit")
    async def admin_audit(limit: int = 100, order_id: Optional[str] = None,
                          _admin: str = Depends(require_admin)):
        limit = max(1, min(limit, 500))
        items = await app.state.audit.recent(limit, order_id=order_id)
        return {"items": items, "limit": limit}

    @app.get("/api/admin/timings")
    async def admin_timings(_admin: str = Depends(require_admin)):
        return {"items": timings.snapshot()}

    @app.get("/admin/login", response_class=HTMLResponse)
    async def admin_login_get(request: Request,
                              next: str = "/api/admin/audit"):
        return templates.TemplateResponse(
            request, "login.html", {"next": next, "error": None},
        )

    @app.post("/admin/login", response_class=HTMLResponse)
    async def admin_login_post(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
        next: str = Form("/api/admin/audit"),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if ok_user and ok_pass:
            request.session["admin_user"] = username.strip()
            # only local redirects
            dest = next if next.startswith("/") and not next.startswith("//") \
                else "/api/admin/audit"
            return RedirectResponse(url=dest,
                                    status_code=HTTP_303_SEE_OTHER)
        logger.warning("admin_login_failed", username=username.strip())
        return templates.TemplateResponse(
            request, "login.html",
            {"next": next, "error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/admin/login",
                                status_code=HTTP_303_SEE_OTHER)

    # ----------------------------
    # MockPay (GATEWAY=mock only)
    # ----------------------------
    def _mock() -> MockGateway:
        if not isinstance(gateway, MockGateway):
            raise HTTPException(404, detail="Not Found")
        return gateway

    async def _hold_or_404(order_id: str) -> dict:
        async with db.gated():
            async with db.session() as s:
                hold = await holds.get_hold(s, order_id)
        if hold is None:
            raise OrderNotFound(order_id)
        return hold

    @app.get("/mockpay/{order_id}", response_class=HTMLResponse)
    async def mockpay_screen(request: Request, order_id: str):
        _mock()
        hold = await _hold_or_404(order_id)
        return templates.TemplateResponse(request, "mockpay.html", {
            "order_id": order_id,
            "amount": hold["total_amount"],
            "currency": hold["currency"].upper(),
            "buttons": MOCKPAY_BUTTONS,
        })

    @app.post("/mockpay/{order_id}/emit")
    async def mockpay_emit(order_id: str, t: str = Form(...)):
        mock = _mock()
        if t not in MOCK_EMIT_KINDS:
            raise HTTPException(400, detail="invalid kind")
        hold = await _hold_or_404(order_id)

        event = mock.notification(order_id, t,
                                  gross_amount=hold["total_amount"])
        outcome = await handle_notification(db, app.state.audit, event,
                                            settings=settings)
        return {
            "status": "ok",
            "order_id": order_id,
            "payment_status": outcome.payment_status,
        }

    return app


app = create_app()

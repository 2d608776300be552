"""
Notification reconciler.

Gateway events arrive unordered, duplicated and unauthenticated. Each one is
verified, mapped onto our payment states and applied through a one-way
state machine:

    awaiting_payment --> paid | expired | failed | refunded

The hold row is locked first, inside the same transaction that mutates the
ledger and issues tickets, so duplicate deliveries serialize on the row and
the later one sees the terminal state and becomes a no-op.

The status poller feeds `apply_gateway_status` too; only the signature
check is webhook specific.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import (
    InvalidSignature, OrderNotFound, StockValidationFailed, StorageFailure,
)
from .gateway import verify_signature
from .helpers import new_pickup_code, now_ts
from .infra.sql import Database
from .infra.timings import timeit
from .model import holds, ledger, tickets
from .model.db import HOLD_PRODUCT
from .model.holds import (
    CANCELLED, EXPIRED, FAILED, PAID, PENDING, PICKUP_PENDING, PICKUP_REVIEW,
    PROCESSING, REFUNDED, REQUIRES_REVIEW, TERMINAL,
)
from .reservation import session_has_ended

logger = structlog.get_logger(component="reconciler")

# (event_type, payload, success, error_message)
AuditNote = Tuple[str, Dict[str, Any], bool, Optional[str]]


# ----------------------------
# Status mapping
# ----------------------------
_STATUS_MAP = {
    "settlement": PAID,
    "pending": PENDING,
    "expire": EXPIRED,
    "expired": EXPIRED,
    "refund": REFUNDED,
    "refunded": REFUNDED,
    "partial_refund": REFUNDED,
    "deny": FAILED,
    "cancel": FAILED,
    "failure": FAILED,
}


def map_status(transaction_status: Optional[str],
               fraud_status: Optional[str] = None) -> str:
    """Gateway (transaction_status, fraud_status) -> our payment state.

    Unknown statuses map to pending: better to wait for the next event than
    to guess a terminal state.
    """
    ts = (transaction_status or "").lower()
    if ts == "capture":
        fs = (fraud_status or "").lower()
        return PAID if fs in ("", "accept") else PENDING
    return _STATUS_MAP.get(ts, PENDING)


# product holds use their own fulfillment vocabulary
_PRODUCT_STATUS = {EXPIRED: EXPIRED, FAILED: CANCELLED, REFUNDED: REFUNDED}


@dataclass
class Outcome:
    order_id: str
    kind: str
    mapped: str
    previous: str
    payment_status: str
    status: str
    changed: bool = False
    requires_review: bool = False
    tickets: List[str] = field(default_factory=list)


# ----------------------------
# Entry points
# ----------------------------
async def handle_notification(
    db: Database,
    audit,
    event: Dict[str, Any],
    *,
    settings: Settings,
    now: Optional[float] = None,
) -> Outcome:
    order_id = str(event.get("order_id") or "")

    if not verify_signature(event, settings.midtrans_server_key):
        logger.warning("webhook_invalid_signature", order_id=order_id)
        await audit.append(order_id or None, "invalid_signature", event,
                           success=False, error_message="Invalid signature")
        raise InvalidSignature(order_id)

    return await apply_gateway_status(
        db, audit, order_id,
        event.get("transaction_status"), event.get("fraud_status"), event,
        settings=settings, source="webhook", now=now,
    )


async def apply_gateway_status(
    db: Database,
    audit,
    order_id: str,
    transaction_status: Optional[str],
    fraud_status: Optional[str],
    raw: Dict[str, Any],
    *,
    settings: Settings,
    source: str,
    now: Optional[float] = None,
) -> Outcome:
    """Map and apply one gateway outcome; audit it either way."""
    now = now_ts() if now is None else now
    mapped = map_status(transaction_status, fraud_status)
    notes: List[AuditNote] = []

    try:
        async with timeit("reconciler.apply"):
            async with db.transaction() as s:
                if not await holds.lock_hold(s, order_id):
                    raise OrderNotFound(order_id)
                hold = await holds.get_hold(s, order_id)
                outcome = await _transition(
                    s, hold, mapped, transaction_status, raw,
                    settings=settings, now=now, notes=notes,
                )
    except OrderNotFound:
        logger.warning("order_not_found", order_id=order_id, source=source)
        await audit.append(order_id or None, "order_not_found", raw,
                           success=False, error_message="Order not found")
        raise
    except SQLAlchemyError as e:
        logger.error("reconcile_storage_failed", order_id=order_id,
                     source=source, error=str(e))
        await audit.append(order_id, "exception", raw, success=False,
                           error_message=str(e))
        raise StorageFailure("failed to apply payment status", cause=e) from e

    # audit writes only after the transaction closed
    for event_type, payload, ok, err in notes:
        await audit.append(order_id, event_type, payload, success=ok,
                           error_message=err)
    await audit.append(
        order_id,
        f"{outcome.kind}_order_processed",
        {
            "source": source,
            "transaction_status": transaction_status,
            "fraud_status": fraud_status,
            "mapped": outcome.mapped,
            "previous": outcome.previous,
            "payment_status": outcome.payment_status,
            "changed": outcome.changed,
            "raw": raw,
        },
        success=True,
    )

    logger.info("payment_status_applied", order_id=order_id, source=source,
                mapped=outcome.mapped, previous=outcome.previous,
                payment_status=outcome.payment_status,
                changed=outcome.changed)
    return outcome


# ----------------------------
# State machine (UN-GATED, inside the caller's transaction)
# ----------------------------
async def _transition(
    s: AsyncSession,
    hold: Dict[str, Any],
    mapped: str,
    transaction_status: Optional[str],
    raw: Dict[str, Any],
    *,
    settings: Settings,
    now: float,
    notes: List[AuditNote],
) -> Outcome:
    current = hold["payment_status"]
    outcome = Outcome(
        order_id=hold["order_id"], kind=hold["kind"], mapped=mapped,
        previous=current, payment_status=current, status=hold["status"],
    )

    if current in TERMINAL:
        if mapped in (PAID, REFUNDED) and mapped != current:
            # money moved on a hold we already closed; needs a human
            logger.warning("late_event_on_terminal_hold",
                           order_id=hold["order_id"], current=current,
                           mapped=mapped)
            notes.append(("terminal_hold_event_ignored",
                          {"current": current, "mapped": mapped},
                          False, f"{mapped} event on {current} hold"))
        return outcome

    gateway = {
        "gateway_status": transaction_status,
        "gateway_payload": holds.dump_payload(raw),
    }

    if mapped == PENDING:
        deadline = hold["payment_expires_at"] + settings.expiry_grace_seconds
        if now <= deadline:
            await holds.update_hold(s, hold["id"], **gateway)
            return outcome
        notes.append(("implicit_expiry",
                      {"payment_expires_at": hold["payment_expires_at"],
                       "transaction_status": transaction_status},
                      True, None))
        outcome.mapped = mapped = EXPIRED

    items = ledger.in_lock_order(await holds.get_line_items(s, hold["id"]))
    if mapped == PAID:
        if hold["kind"] == HOLD_PRODUCT:
            await _paid_product(s, hold, items, outcome, gateway,
                                settings=settings, now=now, notes=notes)
        else:
            await _paid_ticket(s, hold, items, outcome, gateway,
                               settings=settings, now=now, notes=notes)
    else:
        await _closed_unpaid(s, hold, items, outcome, gateway, mapped,
                             now=now)

    outcome.changed = True
    return outcome


async def _paid_product(s, hold, items, outcome: Outcome, gateway, *,
                        settings: Settings, now: float,
                        notes: List[AuditNote]) -> None:
    issues = []
    for li in items:
        unit = await ledger.get_unit(s, li["unit_id"])
        qty = li["quantity"]
        if unit is None:
            issues.append(f"{li['name']}: unit {li['unit_id']} missing")
            continue
        in_stock = unit["total"] - unit["sold"]
        if unit["reserved"] < qty or in_stock < qty:
            issues.append(f"{li['name']}: reserved={unit['reserved']}, "
                          f"stock={in_stock}, needed={qty}")

    fields = dict(
        gateway,
        payment_status=PAID,
        paid_at=now,
        pickup_code=new_pickup_code(),
        pickup_expires_at=now + settings.pickup_window_days * 86400,
    )

    if issues:
        # money has moved: never reject, park it for manual review
        err = StockValidationFailed(hold["order_id"], issues)
        logger.warning("stock_validation_failed", order_id=hold["order_id"],
                       issues=issues)
        notes.append(("stock_validation_failed_requires_review",
                      {"issues": issues}, False, str(err)))
        fields.update(status=REQUIRES_REVIEW, pickup_status=PICKUP_REVIEW)
        outcome.requires_review = True
    else:
        for li in items:
            if not await ledger.commit(s, li["unit_id"], li["quantity"]):
                logger.warning("commit_shortfall", order_id=hold["order_id"],
                               unit_id=li["unit_id"], qty=li["quantity"])
        fields.update(status=PROCESSING, pickup_status=PICKUP_PENDING)

    await holds.update_hold(s, hold["id"], **fields)
    outcome.payment_status = PAID
    outcome.status = fields["status"]


async def _paid_ticket(s, hold, items, outcome: Outcome, gateway, *,
                       settings: Settings, now: float,
                       notes: List[AuditNote]) -> None:
    for li in items:
        needed = li["quantity"] - await tickets.count_issued(s, li["id"])
        if needed <= 0:
            continue

        time_slot = li["time_slot"]
        if session_has_ended(li["slot_date"], time_slot, now,
                             tz=settings.studio_timezone,
                             duration_minutes=settings.session_duration_minutes):
            # paid too late for the booked session: honour it as all-day
            all_day = ledger.slot_unit_id(li["ref_id"], li["slot_date"], None)
            await ledger.release(s, li["unit_id"], needed)
            await ledger.increment_sold(s, all_day, needed)
            notes.append(("session_ended_converted_to_allday",
                          {"line_item_id": li["id"],
                           "booked_unit": li["unit_id"],
                           "all_day_unit": all_day,
                           "quantity": needed},
                          True, None))
            time_slot = None
        elif not await ledger.commit(s, li["unit_id"], needed):
            await ledger.increment_sold(s, li["unit_id"], needed)

        outcome.tickets += await tickets.issue(
            s,
            hold_id=hold["id"],
            line_item_id=li["id"],
            user_id=hold["user_id"],
            ticket_id=li["ref_id"],
            valid_date=li["slot_date"],
            time_slot=time_slot,
            count=needed,
        )

    await holds.update_hold(s, hold["id"], payment_status=PAID, status=PAID,
                            paid_at=now, **gateway)
    outcome.payment_status = PAID
    outcome.status = PAID


async def _closed_unpaid(s, hold, items, outcome: Outcome, gateway,
                         mapped: str, *, now: float) -> None:
    for li in items:
        await ledger.release(s, li["unit_id"], li["quantity"])

    status = _PRODUCT_STATUS[mapped] if hold["kind"] == HOLD_PRODUCT \
        else mapped
    fields = dict(gateway, payment_status=mapped, status=status)
    if mapped == EXPIRED:
        fields["expired_at"] = now
    await holds.update_hold(s, hold["id"], **fields)
    outcome.payment_status = mapped
    outcome.status = status

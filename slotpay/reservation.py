"""
Reservation holder: turns a checkout request into an `awaiting_payment`
hold backed by ledger reservations.

All-or-nothing: every line is reserved inside one database transaction, so
an InsufficientStock on the third line rolls the first two back with it.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
import math
import re
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import InvalidLineItem, StorageFailure
from .helpers import is_valid_email, new_order_id, now_ts
from .infra.sql import Database
from .infra.timings import timeit
from .model import holds, ledger
from .model.db import HOLD_PRODUCT, HOLD_TICKET

logger = structlog.get_logger(component="holder")

ORDER_PREFIX = {HOLD_TICKET: "TIX", HOLD_PRODUCT: "PRD"}

# ticket holds
MAX_PAYMENT_MINUTES = 20
MIN_PAYMENT_MINUTES = 10
PAYMENT_BUFFER_MINUTES = 5

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class PlacedHold:
    hold_id: int
    order_id: str
    kind: str
    total_amount: int
    expiry_minutes: int
    payment_expires_at: float
    items: List[Dict[str, Any]]
    customer: Dict[str, str]


# ----------------------------
# Validation
# ----------------------------
def _positive_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidLineItem(f"{what} must be an integer")
    if value <= 0:
        raise InvalidLineItem(f"{what} must be positive, got {value}")
    return value


def _price(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidLineItem("price must be an integer amount")
    if value < 0:
        raise InvalidLineItem(f"price must be >= 0, got {value}")
    return value


def _slot_date(value: Any) -> str:
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError:
        raise InvalidLineItem(f"bad date: {value!r}") from None


def _time_slot(value: Any) -> Optional[str]:
    if value in (None, "", ledger.ALL_DAY):
        return None
    value = str(value)[:5]
    if not _HHMM.match(value):
        raise InvalidLineItem(f"bad time slot: {value!r}")
    return value


def validate_customer(customer: Dict[str, Any]) -> Dict[str, str]:
    name = (customer.get("name") or "").strip()
    email = (customer.get("email") or "").strip()
    if not name:
        raise InvalidLineItem("customer name is required")
    if not is_valid_email(email):
        raise InvalidLineItem("customer email must be a valid email address")
    return {"name": name, "email": email,
            "phone": (customer.get("phone") or "").strip()}


def validate_ticket_items(raw: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not raw:
        raise InvalidLineItem("no items provided")
    out = []
    for it in raw:
        ticket_id = _positive_int(it.get("ticket_id"), "ticket_id")
        slot_date = _slot_date(it.get("date"))
        time_slot = _time_slot(it.get("time_slot"))
        out.append({
            "unit_id": ledger.slot_unit_id(ticket_id, slot_date, time_slot),
            "ref_id": ticket_id,
            "slot_date": slot_date,
            "time_slot": time_slot,
            "quantity": _positive_int(it.get("quantity"), "quantity"),
            "unit_price": _price(it.get("price")),
            "name": str(it.get("name") or f"Ticket {ticket_id}"),
        })
    return out


def validate_product_items(raw: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not raw:
        raise InvalidLineItem("no items provided")
    out = []
    for it in raw:
        variant_id = _positive_int(it.get("variant_id"), "variant_id")
        out.append({
            "unit_id": ledger.variant_unit_id(variant_id),
            "ref_id": variant_id,
            "slot_date": None,
            "time_slot": None,
            "quantity": _positive_int(it.get("quantity"), "quantity"),
            "unit_price": _price(it.get("price")),
            "name": str(it.get("name") or f"Variant {variant_id}"),
        })
    return out


# ----------------------------
# Payment expiry
# ----------------------------
def session_end(slot_date: str, time_slot: str, *, tz: str,
                duration_minutes: int) -> datetime:
    start = datetime.combine(date.fromisoformat(slot_date),
                             time.fromisoformat(time_slot),
                             tzinfo=ZoneInfo(tz))
    return start + timedelta(minutes=duration_minutes)


def session_has_ended(slot_date: Optional[str], time_slot: Optional[str],
                      now: float, *, tz: str, duration_minutes: int) -> bool:
    if not slot_date or not time_slot:
        return False
    end = session_end(slot_date, time_slot, tz=tz,
                      duration_minutes=duration_minutes)
    return datetime.fromtimestamp(now, tz=timezone.utc) >= end


def product_expiry_minutes(min_available: Optional[int]) -> int:
    if min_available is None:
        return 60
    if min_available < 5:
        return 15
    if min_available < 20:
        return 30
    return 60


def ticket_expiry_minutes(items: Sequence[Dict[str, Any]], now: float, *,
                          tz: str, duration_minutes: int) -> int:
    """
    All-day only: 20 min. Otherwise bounded by the earliest session end minus
    a buffer, clamped to [10, 20]. Raises InvalidLineItem for a session that
    already ended.
    """
    now_dt = datetime.fromtimestamp(now, tz=timezone.utc)
    earliest: Optional[int] = None
    for it in items:
        if not it["time_slot"]:
            continue
        end = session_end(it["slot_date"], it["time_slot"], tz=tz,
                          duration_minutes=duration_minutes)
        if now_dt >= end:
            raise InvalidLineItem(
                f"session {it['time_slot']} on {it['slot_date']} has ended"
            )
        minutes = math.floor((end - now_dt).total_seconds() / 60)
        earliest = minutes if earliest is None else min(earliest, minutes)

    if earliest is None:
        return MAX_PAYMENT_MINUTES
    return min(MAX_PAYMENT_MINUTES,
               max(MIN_PAYMENT_MINUTES, earliest - PAYMENT_BUFFER_MINUTES))


# ----------------------------
# Holder
# ----------------------------
async def create_hold(
    db: Database,
    *,
    kind: str,
    user_id: str,
    items: Sequence[Dict[str, Any]],
    customer: Dict[str, Any],
    settings: Settings,
    now: Optional[float] = None,
) -> PlacedHold:
    """`items` are raw request dicts; validated here."""
    if kind == HOLD_TICKET:
        lines = validate_ticket_items(items)
    elif kind == HOLD_PRODUCT:
        lines = validate_product_items(items)
    else:
        raise ValueError(f"unknown hold kind: {kind}")
    contact = validate_customer(customer)
    now = now_ts() if now is None else now

    try:
        if kind == HOLD_TICKET:
            expiry = ticket_expiry_minutes(
                lines, now, tz=settings.studio_timezone,
                duration_minutes=settings.session_duration_minutes,
            )
        else:
            # scarcity measured before our own reservation lands
            async with db.gated():
                async with db.session() as s:
                    lowest = await ledger.min_available(
                        s, [li["unit_id"] for li in lines])
            expiry = product_expiry_minutes(lowest)

        order_id = new_order_id(ORDER_PREFIX[kind])
        total = sum(li["quantity"] * li["unit_price"] for li in lines)
        expires_at = now + expiry * 60

        async with timeit("holder.create_hold"):
            async with db.transaction() as s:
                for li in ledger.in_lock_order(lines):
                    await ledger.reserve(s, li["unit_id"], li["quantity"],
                                         name=li["name"])
                hold_id = await holds.insert_hold(
                    s,
                    order_id=order_id,
                    kind=kind,
                    user_id=user_id,
                    customer=contact,
                    total_amount=total,
                    currency=settings.currency,
                    payment_expires_at=expires_at,
                    items=lines,
                )
    except SQLAlchemyError as e:
        logger.error("hold_storage_failed", kind=kind, error=str(e))
        raise StorageFailure("failed to create hold", cause=e) from e

    logger.info("hold_created", order_id=order_id, kind=kind,
                user_id=user_id, total_amount=total, expiry_minutes=expiry)
    return PlacedHold(
        hold_id=hold_id,
        order_id=order_id,
        kind=kind,
        total_amount=total,
        expiry_minutes=expiry,
        payment_expires_at=expires_at,
        items=lines,
        customer=contact,
    )

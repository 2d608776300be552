# model/holds.py
"""
Hold (order) rows and their immutable line items.

A hold is written once by the reservation holder; afterwards only the
reconciler / poller change it, through `update_hold` on a row they locked
with `lock_hold` inside the same transaction.
"""
from __future__ import annotations
import json
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso

# payment_status state machine
AWAITING_PAYMENT = "awaiting_payment"
PENDING = "pending"  # gateway-side only, never stored as payment_status
PAID = "paid"
EXPIRED = "expired"
FAILED = "failed"
REFUNDED = "refunded"

TERMINAL = frozenset({PAID, EXPIRED, FAILED, REFUNDED})

# fulfillment status (product holds)
PROCESSING = "processing"
REQUIRES_REVIEW = "requires_review"
COMPLETED = "completed"
CANCELLED = "cancelled"

# pickup_status
PICKUP_PENDING = "pending_pickup"
PICKUP_REVIEW = "pending_review"
PICKUP_COMPLETED = "completed"
PICKUP_EXPIRED = "expired"

_UPDATABLE = frozenset({
    "payment_status", "status", "payment_token", "payment_url",
    "gateway_status", "gateway_payload", "paid_at", "expired_at",
    "pickup_code", "pickup_status", "pickup_expires_at", "picked_up_at",
    "picked_up_by",
})


SQL_INSERT_HOLD = text("""
    INSERT INTO holds(
        order_id, kind, user_id, customer_name, customer_email,
        customer_phone, total_amount, currency, payment_status, status,
        payment_expires_at, created_at, updated_at)
    VALUES (
        :order_id, :kind, :user_id, :customer_name, :customer_email,
        :customer_phone, :total_amount, :currency, :initial,
        :initial, :payment_expires_at, :now, :now)
    RETURNING id
""")

SQL_INSERT_ITEM = text("""
    INSERT INTO line_items(
        hold_id, unit_id, name, quantity, unit_price, ref_id,
        slot_date, time_slot)
    VALUES (
        :hold_id, :unit_id, :name, :quantity, :unit_price, :ref_id,
        :slot_date, :time_slot)
""")

# Touching write first: takes the row lock on PostgreSQL and the write lock
# on SQLite, so concurrent deliveries for one order run one after the other.
SQL_LOCK_HOLD = text("""
    UPDATE holds SET updated_at = :now WHERE order_id = :order_id
    RETURNING id
""")

SQL_GET_HOLD = text("SELECT * FROM holds WHERE order_id = :order_id")

SQL_GET_ITEMS = text("""
    SELECT id, hold_id, unit_id, name, quantity, unit_price, ref_id,
           slot_date, time_slot
    FROM line_items WHERE hold_id = :hold_id ORDER BY id
""")


async def insert_hold(
    db: AsyncSession,
    *,
    order_id: str,
    kind: str,
    user_id: str,
    customer: Dict[str, str],
    total_amount: int,
    currency: str,
    payment_expires_at: float,
    items: Sequence[Dict[str, Any]],
) -> int:
    hold_id = (await db.execute(SQL_INSERT_HOLD, {
        "order_id": order_id,
        "kind": kind,
        "user_id": user_id,
        "customer_name": customer.get("name", ""),
        "customer_email": customer.get("email", ""),
        "customer_phone": customer.get("phone") or "",
        "total_amount": int(total_amount),
        "currency": currency,
        "initial": AWAITING_PAYMENT,
        "payment_expires_at": float(payment_expires_at),
        "now": now_ts(),
    })).scalar_one()

    for it in items:
        await db.execute(SQL_INSERT_ITEM, {
            "hold_id": hold_id,
            "unit_id": it["unit_id"],
            "name": it.get("name", ""),
            "quantity": int(it["quantity"]),
            "unit_price": int(it["unit_price"]),
            "ref_id": int(it["ref_id"]),
            "slot_date": it.get("slot_date"),
            "time_slot": it.get("time_slot"),
        })
    return int(hold_id)


async def lock_hold(db: AsyncSession, order_id: str) -> bool:
    row = (await db.execute(
        SQL_LOCK_HOLD, {"order_id": order_id, "now": now_ts()}
    )).first()
    return row is not None


async def get_hold(db: AsyncSession, order_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        SQL_GET_HOLD, {"order_id": order_id}
    )).mappings().first()
    return dict(row) if row else None


async def get_line_items(db: AsyncSession, hold_id: int) -> List[Dict[str, Any]]:
    rows = (await db.execute(
        SQL_GET_ITEMS, {"hold_id": hold_id}
    )).mappings().all()
    return [dict(r) for r in rows]


async def update_hold(db: AsyncSession, hold_id: int, **fields: Any) -> None:
    bad = set(fields) - _UPDATABLE
    if bad:
        raise ValueError(f"not updatable: {sorted(bad)}")
    fields["updated_at"] = now_ts()
    assignments = ", ".join(f"{k} = :{k}" for k in fields)
    await db.execute(
        text(f"UPDATE holds SET {assignments} WHERE id = :hold_id"),
        {**fields, "hold_id": hold_id},
    )


async def delete_hold(db: AsyncSession, hold_id: int) -> None:
    await db.execute(text("DELETE FROM line_items WHERE hold_id = :h"),
                     {"h": hold_id})
    await db.execute(text("DELETE FROM holds WHERE id = :h"), {"h": hold_id})


def dump_payload(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str, separators=(",", ":"))


def hold_view(
    hold: Dict[str, Any],
    items: List[Dict[str, Any]],
    tickets: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """JSON shape returned by the order endpoints."""
    return {
        "order_id": hold["order_id"],
        "kind": hold["kind"],
        "status": hold["status"],
        "payment_status": hold["payment_status"],
        "total_amount": hold["total_amount"],
        "currency": hold["currency"],
        "payment_expires_at": to_iso(hold["payment_expires_at"]),
        "payment_url": hold["payment_url"],
        "paid_at": to_iso(hold["paid_at"]),
        "pickup_code": hold["pickup_code"],
        "pickup_status": hold["pickup_status"],
        "pickup_expires_at": to_iso(hold["pickup_expires_at"]),
        "items": [
            {
                "unit_id": it["unit_id"],
                "name": it["name"],
                "quantity": it["quantity"],
                "unit_price": it["unit_price"],
                "slot_date": it["slot_date"],
                "time_slot": it["time_slot"],
            }
            for it in items
        ],
        "tickets": [
            {
                "ticket_code": t["ticket_code"],
                "valid_date": t["valid_date"],
                "time_slot": t["time_slot"],
                "status": t["status"],
            }
            for t in (tickets or [])
        ],
    }


async def lock_hold_by_pickup_code(
    db: AsyncSession, pickup_code: str
) -> Optional[str]:
    """Same touching lock as lock_hold, keyed by pickup code. Returns the
    order id, or None for an unknown code."""
    row = (await db.execute(text("""
        UPDATE holds SET updated_at = :now WHERE pickup_code = :c
        RETURNING order_id
    """), {"c": pickup_code, "now": now_ts()})).first()
    return row[0] if row else None

# model/ledger.py
"""
Inventory ledger: per-unit counters for product stock and ticket slot
capacity.

- reserve: time-limited hold on capacity while the customer pays
- commit:  reserved -> sold on payment success
- release: give a reservation back (failure / expiry / rollback)
- increment_sold: reporting-only sold counter bump (optimistic, bounded)

Invariant per row: reserved + sold <= total, so
available = total - reserved - sold never goes negative. reserve() enforces
it in a single conditional UPDATE, which is atomic on both PostgreSQL and
SQLite; no read-check-write in Python.

All functions below except compute_inventory are UN-GATED: they take a
session that already sits inside `db.transaction()`.
"""
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, InvalidLineItem
from ..helpers import now_ts, to_iso
from ..infra.sql import Database
from .counter import OptimisticCounter
from .db import UNIT_PRODUCT, UNIT_TICKET_SLOT

ALL_DAY = "all-day"

SOLD_COUNTER = OptimisticCounter(
    "inventory_units", "sold", ceiling="total - reserved",
)


# ------------------------------------------------------------------------------
# Unit ids
# ------------------------------------------------------------------------------

def variant_unit_id(variant_id: int) -> str:
    return f"variant:{int(variant_id)}"


def normalize_time_slot(value: Optional[str]) -> Optional[str]:
    """'' / None / 'all-day' -> None (unscoped), otherwise HH:MM."""
    if not value or value == ALL_DAY:
        return None
    return str(value)


def slot_unit_id(ticket_id: int, slot_date: str,
                 time_slot: Optional[str]) -> str:
    return (f"ticket:{int(ticket_id)}:{slot_date}:"
            f"{normalize_time_slot(time_slot) or ALL_DAY}")


def in_lock_order(lines: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Line items sorted by unit id. Every transaction that writes several unit
    rows walks them in this order, so two holds over the same units can
    never wait on each other's row locks.
    """
    return sorted(lines, key=lambda li: li["unit_id"])


# ------------------------------------------------------------------------------
# SQL
# ------------------------------------------------------------------------------

SQL_UPSERT_UNIT = text("""
    INSERT INTO inventory_units(
        id, kind, ref_id, slot_date, time_slot, name,
        total, reserved, sold, version, updated_at)
    VALUES (:id, :kind, :ref_id, :slot_date, :time_slot, :name,
            :total, 0, 0, 0, :now)
    ON CONFLICT (id) DO UPDATE SET
        total = EXCLUDED.total,
        name = EXCLUDED.name,
        version = inventory_units.version + 1,
        updated_at = EXCLUDED.updated_at
    WHERE inventory_units.reserved + inventory_units.sold <= EXCLUDED.total
    RETURNING id
""")

SQL_GET_UNIT = text("""
    SELECT id, kind, ref_id, slot_date, time_slot, name,
           total, reserved, sold, version, updated_at
    FROM inventory_units WHERE id = :id
""")

SQL_RESERVE = text("""
    UPDATE inventory_units
    SET reserved = reserved + :q, version = version + 1, updated_at = :now
    WHERE id = :id AND total - reserved - sold >= :q
    RETURNING reserved
""")

# floored at 0: a second release of the same reservation is a no-op
SQL_RELEASE = text("""
    UPDATE inventory_units
    SET reserved = CASE WHEN reserved > :q THEN reserved - :q ELSE 0 END,
        version = version + 1,
        updated_at = :now
    WHERE id = :id
    RETURNING reserved
""")

SQL_COMMIT = text("""
    UPDATE inventory_units
    SET reserved = reserved - :q, sold = sold + :q,
        version = version + 1, updated_at = :now
    WHERE id = :id AND reserved >= :q
    RETURNING sold
""")


# ------------------------------------------------------------------------------
# Core logic (UN-GATED)
# ------------------------------------------------------------------------------

def available_of(row: Dict[str, Any]) -> int:
    return int(row["total"]) - int(row["reserved"]) - int(row["sold"])


async def upsert_unit(
    db: AsyncSession,
    unit_id: str,
    *,
    kind: str,
    ref_id: int,
    total: int,
    name: str = "",
    slot_date: Optional[str] = None,
    time_slot: Optional[str] = None,
) -> bool:
    """
    Define or resize a unit. Returns False when the new total would drop
    below what is already reserved + sold (row left untouched).
    """
    if kind not in (UNIT_PRODUCT, UNIT_TICKET_SLOT):
        raise ValueError(f"unknown unit kind: {kind}")
    if total < 0:
        raise ValueError("total must be >= 0")
    row = (await db.execute(SQL_UPSERT_UNIT, {
        "id": unit_id, "kind": kind, "ref_id": int(ref_id),
        "slot_date": slot_date, "time_slot": normalize_time_slot(time_slot),
        "name": name, "total": int(total), "now": now_ts(),
    })).first()
    return row is not None


async def get_unit(db: AsyncSession, unit_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(SQL_GET_UNIT, {"id": unit_id})).mappings().first()
    return dict(row) if row else None


async def min_available(db: AsyncSession, unit_ids: Iterable[str]) -> Optional[int]:
    """Lowest availability among the given units (None if none exist)."""
    lowest: Optional[int] = None
    for unit_id in unit_ids:
        row = await get_unit(db, unit_id)
        if row is None:
            continue
        avail = available_of(row)
        lowest = avail if lowest is None else min(lowest, avail)
    return lowest


async def reserve(
    db: AsyncSession, unit_id: str, qty: int, *, name: Optional[str] = None
) -> int:
    """
    Reserve `qty` units or raise. Returns the unit's new reserved count.
    Raises InvalidLineItem for an unknown unit, InsufficientStock otherwise.
    """
    if qty <= 0:
        raise InvalidLineItem(f"quantity must be positive, got {qty}")
    row = (await db.execute(
        SQL_RESERVE, {"id": unit_id, "q": int(qty), "now": now_ts()}
    )).first()
    if row is not None:
        return int(row[0])

    unit = await get_unit(db, unit_id)
    if unit is None:
        raise InvalidLineItem(f"unknown unit {unit_id}")
    raise InsufficientStock(unit_id, qty, max(0, available_of(unit)),
                            name=name or unit["name"] or None)


async def release(db: AsyncSession, unit_id: str, qty: int) -> None:
    if qty <= 0:
        return
    await db.execute(SQL_RELEASE,
                     {"id": unit_id, "q": int(qty), "now": now_ts()})


async def commit(db: AsyncSession, unit_id: str, qty: int) -> bool:
    """
    Convert `qty` reserved units into sold ones. Returns False (no change)
    when the unit no longer holds that many reserved units.
    """
    if qty <= 0:
        return True
    row = (await db.execute(
        SQL_COMMIT, {"id": unit_id, "q": int(qty), "now": now_ts()}
    )).first()
    return row is not None


async def increment_sold(db: AsyncSession, unit_id: str, qty: int) -> bool:
    """
    Reporting-only sold bump for capacity that never went through reserve()
    on this row. Bounded optimistic retry; gives up silently (logged).
    """
    return await SOLD_COUNTER.increment(db, unit_id, qty)


# ------------------------------------------------------------------------------
# Read APIs (gated)
# ------------------------------------------------------------------------------

async def compute_inventory(
    db: Database, kind: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Returns one entry per unit:
      { "unit_id", "kind", "name", "capacity", "sold", "active_holds",
        "available", "sold_out", "timestamp" }
    """
    now = now_ts()
    sql = ("SELECT id, kind, name, slot_date, time_slot, total, reserved, sold"
           " FROM inventory_units")
    params: Dict[str, Any] = {}
    if kind:
        sql += " WHERE kind = :kind"
        params["kind"] = kind
    sql += " ORDER BY id"

    async with db.gated():
        async with db.session() as s:
            rows = (await s.execute(text(sql), params)).mappings().all()

    out = []
    for r in rows:
        avail = available_of(r)
        out.append({
            "unit_id": r["id"],
            "kind": r["kind"],
            "name": r["name"],
            "slot_date": r["slot_date"],
            "time_slot": (
                (r["time_slot"] or ALL_DAY)
                if r["kind"] == UNIT_TICKET_SLOT else None
            ),
            "capacity": int(r["total"]),
            "sold": int(r["sold"]),
            "active_holds": int(r["reserved"]),
            "available": max(0, avail),
            "sold_out": avail <= 0,
            "timestamp": to_iso(now),
        })
    return out

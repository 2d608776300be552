# model/tickets.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_ticket_code, now_ts

SQL_COUNT_ISSUED = text(
    "SELECT COUNT(*) FROM issued_tickets WHERE line_item_id = :li"
)

SQL_INSERT_TICKET = text("""
    INSERT INTO issued_tickets(
        ticket_code, line_item_id, hold_id, user_id, ticket_id,
        valid_date, time_slot, status, created_at)
    VALUES (
        :ticket_code, :line_item_id, :hold_id, :user_id, :ticket_id,
        :valid_date, :time_slot, 'active', :now)
""")


async def count_issued(db: AsyncSession, line_item_id: int) -> int:
    return int((await db.execute(
        SQL_COUNT_ISSUED, {"li": line_item_id}
    )).scalar_one())


async def issue(
    db: AsyncSession,
    *,
    hold_id: int,
    line_item_id: int,
    user_id: str,
    ticket_id: int,
    valid_date: Optional[str],
    time_slot: Optional[str],
    count: int,
) -> List[str]:
    """Insert `count` tickets for one line item, returns their codes."""
    codes = []
    now = now_ts()
    for _ in range(max(0, count)):
        code = new_ticket_code()
        await db.execute(SQL_INSERT_TICKET, {
            "ticket_code": code,
            "line_item_id": line_item_id,
            "hold_id": hold_id,
            "user_id": user_id,
            "ticket_id": int(ticket_id),
            "valid_date": valid_date,
            "time_slot": time_slot,
            "now": now,
        })
        codes.append(code)
    return codes


async def list_for_hold(db: AsyncSession, hold_id: int) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT ticket_code, line_item_id, ticket_id, valid_date, time_slot,
               status, created_at
        FROM issued_tickets WHERE hold_id = :h ORDER BY id
    """), {"h": hold_id})).mappings().all()
    return [dict(r) for r in rows]

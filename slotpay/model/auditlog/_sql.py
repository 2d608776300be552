from __future__ import annotations
import json
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ...helpers import now_ts, to_iso
from ...infra.sql import Database

logger = structlog.get_logger(component="audit")

SQL_INSERT_AUDIT = text("""
    INSERT INTO audit_records(
        order_id, event_type, payload, success, error_message, processed_at)
    VALUES (:order_id, :event_type, :payload, :success, :error_message, :now)
""")


class AuditLog:
    """
    Append-only webhook/reconciliation log in the main database.

    append() runs in its own short transaction, never inside the caller's;
    a failed write is logged and dropped so it can't undo a transition.
    """

    def __init__(self, *, db: Database) -> None:
        self.db = db

    async def append(
        self,
        order_id: Optional[str],
        event_type: str,
        payload: Any = None,
        *,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        params = {
            "order_id": order_id,
            "event_type": event_type,
            "payload": (json.dumps(payload, default=str)
                        if payload is not None else None),
            "success": bool(success),
            "error_message": error_message,
            "now": now_ts(),
        }
        try:
            async with self.db.transaction() as s:
                await s.execute(SQL_INSERT_AUDIT, params)
        except SQLAlchemyError as e:
            logger.error("audit_append_failed", order_id=order_id,
                         event_type=event_type, error=str(e))

    async def recent(
        self, limit: int = 100, order_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = ("SELECT id, order_id, event_type, payload, success,"
               " error_message, processed_at FROM audit_records")
        params: Dict[str, Any] = {"limit": int(limit)}
        if order_id:
            sql += " WHERE order_id = :order_id"
            params["order_id"] = order_id
        sql += " ORDER BY id DESC LIMIT :limit"

        async with self.db.gated():
            async with self.db.session() as s:
                rows = (await s.execute(text(sql), params)).mappings().all()

        return [
            {
                "order_id": r["order_id"],
                "event_type": r["event_type"],
                "payload": json.loads(r["payload"]) if r["payload"] else None,
                "success": bool(r["success"]),
                "error_message": r["error_message"],
                "processed_at": to_iso(r["processed_at"]),
            }
            for r in rows
        ]

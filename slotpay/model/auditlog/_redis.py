from __future__ import annotations
import json
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from ...helpers import now_ts, to_iso

logger = structlog.get_logger(component="audit")

STREAM = "audit:events"
MAXLEN = 100_000


class AuditLog:
    """Audit records as entries of one capped Redis stream."""

    def __init__(self, r: redis.Redis, stream: str = STREAM) -> None:
        self.r = r
        self.stream = stream

    async def append(
        self,
        order_id: Optional[str],
        event_type: str,
        payload: Any = None,
        *,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        # stream values must be flat strings
        fields = {
            "order_id": order_id or "",
            "event_type": event_type,
            "payload": (json.dumps(payload, default=str)
                        if payload is not None else ""),
            "success": "1" if success else "0",
            "error_message": error_message or "",
            "processed_at": repr(now_ts()),
        }
        try:
            await self.r.xadd(self.stream, fields, maxlen=MAXLEN,
                              approximate=True)
        except RedisError as e:
            logger.error("audit_append_failed", order_id=order_id,
                         event_type=event_type, error=str(e))

    async def recent(
        self, limit: int = 100, order_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        # filtering happens client side, so over-read a bit when filtering
        count = limit if not order_id else limit * 10
        entries = await self.r.xrevrange(self.stream, count=count)
        out: List[Dict[str, Any]] = []
        for _entry_id, h in entries:
            if order_id and h.get("order_id") != order_id:
                continue
            out.append({
                "order_id": h.get("order_id") or None,
                "event_type": h.get("event_type"),
                "payload": (json.loads(h["payload"])
                            if h.get("payload") else None),
                "success": h.get("success") == "1",
                "error_message": h.get("error_message") or None,
                "processed_at": to_iso(float(h["processed_at"]))
                if h.get("processed_at") else None,
            })
            if len(out) >= limit:
                break
        return out

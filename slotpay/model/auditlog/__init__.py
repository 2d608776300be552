from typing import Optional

import redis.asyncio as redis

from ...infra.sql import Database
from ._sql import AuditLog as SqlAuditLog
from ._redis import AuditLog as RedisAuditLog

BACKENDS = ("sql", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_audit_log(backend: str = "sql", *,
                  db: Optional[Database] = None,
                  r: Optional[redis.Redis] = None):
    backend = (backend or "sql").lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("AuditLog(redis) requires r=redis.Redis")
        return RedisAuditLog(r=r)
    if backend == "sql":
        if db is None:
            raise RuntimeError("AuditLog(sql) requires db=Database")
        return SqlAuditLog(db=db)
    raise ValueError(f"unknown audit backend: {backend}")


__all__ = ["SqlAuditLog", "RedisAuditLog", "new_audit_log", "BACKENDS"]

# model/counter.py
"""
Approximate counters under light contention.

read (value, version) -> conditional write on unchanged version -> retry a
bounded number of times -> give up. Never blocks and never raises on
contention; a lost increment only skews reporting.
"""
from __future__ import annotations
from typing import Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts

logger = structlog.get_logger(component="counter")

MAX_ATTEMPTS = 3


class OptimisticCounter:
    """
    One integer column guarded by a version column.

    `ceiling` is an optional SQL expression over the same row; an increment
    that would push the counter past it is dropped like a conflict.
    Table/column names are code constants, never user input.
    """

    def __init__(
        self,
        table: str,
        column: str,
        *,
        key: str = "id",
        version: str = "version",
        ceiling: Optional[str] = None,
        touch: Optional[str] = "updated_at",
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.table = table
        self.column = column
        self.key = key
        self.version = version
        self.ceiling = ceiling
        self.touch = touch
        self.max_attempts = max_attempts

        ceil = f", {ceiling} AS ceiling" if ceiling else ""
        self._select = text(
            f"SELECT {column} AS value, {version} AS version{ceil} "
            f"FROM {table} WHERE {key} = :k"
        )
        touch_sql = f", {touch} = :now" if touch else ""
        self._update = text(
            f"UPDATE {table} SET {column} = :next, {version} = :next_version"
            f"{touch_sql} WHERE {key} = :k AND {version} = :version "
            f"RETURNING {key}"
        )

    async def increment(
        self, db: AsyncSession, key_value: object, delta: int
    ) -> bool:
        """Returns True if the increment landed."""
        if delta <= 0:
            return True

        for attempt in range(1, self.max_attempts + 1):
            row = (await db.execute(
                self._select, {"k": key_value}
            )).mappings().first()
            if row is None:
                logger.warning("counter_row_missing", table=self.table,
                               key=key_value)
                return False

            current = int(row["value"] or 0)
            version = int(row["version"] or 0)
            if self.ceiling and current + delta > int(row["ceiling"] or 0):
                logger.warning("counter_ceiling_reached", table=self.table,
                               column=self.column, key=key_value,
                               current=current, delta=delta)
                return False

            params = {
                "k": key_value,
                "next": current + delta,
                "next_version": version + 1,
                "version": version,
            }
            if self.touch:
                params["now"] = now_ts()
            updated = (await db.execute(self._update, params)).first()
            if updated is not None:
                return True
            logger.debug("counter_conflict", table=self.table,
                         key=key_value, attempt=attempt)

        logger.warning("counter_gave_up", table=self.table,
                       column=self.column, key=key_value, delta=delta,
                       attempts=self.max_attempts)
        return False

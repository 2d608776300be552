from __future__ import annotations
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .errors import InvalidLineItem, OrderNotFound, PickupRejected, StorageFailure
from .helpers import now_ts, to_iso
from .infra.sql import Database
from .model import holds, ledger
from .model.holds import (
    COMPLETED, PAID, PICKUP_COMPLETED, PICKUP_EXPIRED, REQUIRES_REVIEW,
)

logger = structlog.get_logger(component="pickup")


async def complete_pickup(
    db: Database,
    pickup_code: str,
    *,
    picked_up_by: str,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Redeem a pickup code at the counter.

    A hold parked in requires_review still carries its reservation; it is
    committed here, once somebody has sorted the stock out.
    """
    code = (pickup_code or "").strip()
    if not code:
        raise InvalidLineItem("missing pickup code")
    now = now_ts() if now is None else now

    expired = False
    try:
        async with db.transaction() as s:
            order_id = await holds.lock_hold_by_pickup_code(s, code)
            if order_id is None:
                raise OrderNotFound(code)
            hold = await holds.get_hold(s, order_id)

            if hold["payment_status"] != PAID:
                raise PickupRejected("Order not paid")
            if hold["pickup_status"] == PICKUP_COMPLETED:
                raise PickupRejected("Order already completed")

            if hold["pickup_expires_at"] and now > hold["pickup_expires_at"]:
                if (hold["status"] == REQUIRES_REVIEW
                        and hold["pickup_status"] != PICKUP_EXPIRED):
                    # never committed; give the stock back exactly once
                    items = await holds.get_line_items(s, hold["id"])
                    for li in ledger.in_lock_order(items):
                        await ledger.release(s, li["unit_id"], li["quantity"])
                    logger.warning("review_hold_pickup_expired",
                                   order_id=order_id)
                await holds.update_hold(s, hold["id"],
                                        pickup_status=PICKUP_EXPIRED)
                expired = True
            else:
                if hold["status"] == REQUIRES_REVIEW:
                    items = await holds.get_line_items(s, hold["id"])
                    for li in ledger.in_lock_order(items):
                        if not await ledger.commit(s, li["unit_id"],
                                                   li["quantity"]):
                            raise PickupRejected("Insufficient stock")
                await holds.update_hold(
                    s, hold["id"],
                    pickup_status=PICKUP_COMPLETED,
                    status=COMPLETED,
                    picked_up_at=now,
                    picked_up_by=picked_up_by,
                )
    except SQLAlchemyError as e:
        raise StorageFailure("failed to complete pickup", cause=e) from e

    # raised outside the transaction so the expired flag is kept
    if expired:
        logger.info("pickup_code_expired", order_id=order_id)
        raise PickupRejected("Pickup code expired")

    logger.info("pickup_completed", order_id=order_id, by=picked_up_by)
    return {
        "status": "ok",
        "order_id": order_id,
        "picked_up_at": to_iso(now),
        "picked_up_by": picked_up_by,
    }

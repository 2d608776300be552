from __future__ import annotations
from typing import Optional

import structlog

from .config import Settings
from .errors import Forbidden, OrderNotFound
from .gateway import PaymentGateway
from .infra.sql import Database
from .model import holds
from .reconciler import Outcome, apply_gateway_status

logger = structlog.get_logger(component="poller")


async def sync_status(
    db: Database,
    audit,
    gateway: PaymentGateway,
    order_id: str,
    *,
    user_id: str,
    settings: Settings,
    now: Optional[float] = None,
) -> Outcome:
    """
    Pull the gateway's view of an order and run it through the same state
    machine as the webhook. Only the hold's owner may trigger it.
    """
    async with db.gated():
        async with db.session() as s:
            hold = await holds.get_hold(s, order_id)
    if hold is None:
        raise OrderNotFound(order_id)
    if hold["user_id"] != user_id:
        logger.warning("sync_forbidden", order_id=order_id, user_id=user_id)
        raise Forbidden("Forbidden")

    status = await gateway.get_status(order_id)
    return await apply_gateway_status(
        db, audit, order_id,
        status["transaction_status"], status["fraud_status"], status["raw"],
        settings=settings, source="poller", now=now,
    )

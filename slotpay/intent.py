from __future__ import annotations
from typing import Any, Dict

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .errors import GatewayUnavailable, StorageFailure
from .gateway import PaymentGateway
from .infra.sql import Database
from .infra.timings import timeit
from .model import holds, ledger
from .reservation import PlacedHold

logger = structlog.get_logger(component="intent")


def item_details(placed: PlacedHold):
    return [
        {
            "id": li["unit_id"],
            "price": li["unit_price"],
            "quantity": li["quantity"],
            "name": li["name"][:50],
        }
        for li in placed.items
    ]


async def rollback_hold(db: Database, placed: PlacedHold) -> None:
    """Give every reservation back and drop the hold with its items."""
    async with db.transaction() as s:
        for li in ledger.in_lock_order(placed.items):
            await ledger.release(s, li["unit_id"], li["quantity"])
        await holds.delete_hold(s, placed.hold_id)


async def create_payment_intent(
    db: Database,
    gateway: PaymentGateway,
    placed: PlacedHold,
    *,
    finish_url: str,
) -> Dict[str, Any]:
    try:
        tx = await gateway.create_transaction(
            order_id=placed.order_id,
            gross_amount=placed.total_amount,
            item_details=item_details(placed),
            customer=placed.customer,
            expiry_minutes=placed.expiry_minutes,
            finish_url=finish_url,
        )
    except GatewayUnavailable:
        async with timeit("intent.rollback"):
            await rollback_hold(db, placed)
        logger.warning("hold_rolled_back", order_id=placed.order_id)
        raise

    try:
        async with db.transaction() as s:
            await holds.update_hold(s, placed.hold_id,
                                    payment_token=tx["token"],
                                    payment_url=tx["redirect_url"])
    except SQLAlchemyError as e:
        raise StorageFailure("failed to store payment token", cause=e) from e

    return {
        "order_id": placed.order_id,
        "token": tx["token"],
        "redirect_url": tx["redirect_url"],
        "total_amount": placed.total_amount,
        "expiry_minutes": placed.expiry_minutes,
    }

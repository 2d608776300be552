"""Tests for the status poller."""

import pytest

from conftest import NOW, UNIT_PRODUCT
from slotpay.errors import Forbidden, GatewayUnavailable, OrderNotFound
from slotpay.model.db import HOLD_PRODUCT
from slotpay.poller import sync_status
from slotpay.reservation import create_hold

CUSTOMER = {"name": "Alice", "email": "alice@example.com"}


class FlakyGateway:
    async def get_status(self, order_id):
        raise GatewayUnavailable("Failed to fetch payment status")


@pytest.fixture
async def placed(db, settings, seed, gateway):
    await seed(UNIT_PRODUCT, 1, 10)
    await seed(UNIT_PRODUCT, 2, 4)
    p = await create_hold(
        db, kind=HOLD_PRODUCT, user_id="u1",
        items=[{"variant_id": 1, "quantity": 2, "price": 1000},
               {"variant_id": 2, "quantity": 3, "price": 500}],
        customer=CUSTOMER, settings=settings, now=NOW)
    await gateway.create_transaction(
        order_id=p.order_id, gross_amount=p.total_amount, item_details=[],
        customer=CUSTOMER, expiry_minutes=p.expiry_minutes, finish_url="")
    return p


class TestSyncStatus:
    """Pull-based reconciliation."""

    async def test_scenario_d(self, db, audit, settings, gateway, placed,
                              hold, unit) -> None:
        """Expired hold, gateway says expire: exact quantities released."""
        gateway.transactions[placed.order_id]["transaction_status"] = "expire"
        later = placed.payment_expires_at + 60
        outcome = await sync_status(db, audit, gateway, placed.order_id,
                                    user_id="u1", settings=settings,
                                    now=later)
        assert outcome.payment_status == "expired"
        assert (await hold(placed.order_id))["status"] == "expired"
        assert ledger_available(await unit("variant:1")) == 10
        assert ledger_available(await unit("variant:2")) == 4

    async def test_paid_through_poller(self, db, audit, settings, gateway,
                                       placed, hold) -> None:
        gateway.transactions[placed.order_id]["transaction_status"] = \
            "settlement"
        await sync_status(db, audit, gateway, placed.order_id, user_id="u1",
                          settings=settings, now=NOW)
        assert (await hold(placed.order_id))["status"] == "processing"

    async def test_not_found_on_overdue_hold(self, db, audit, settings,
                                             placed, hold) -> None:
        """The gateway never saw it and the window is gone: expire."""
        from slotpay.gateway import MockGateway

        empty = MockGateway(settings.midtrans_server_key)
        late = placed.payment_expires_at + settings.expiry_grace_seconds + 1
        await sync_status(db, audit, empty, placed.order_id, user_id="u1",
                          settings=settings, now=late)
        assert (await hold(placed.order_id))["payment_status"] == "expired"

    async def test_owner_only(self, db, audit, settings, gateway,
                              placed) -> None:
        with pytest.raises(Forbidden):
            await sync_status(db, audit, gateway, placed.order_id,
                              user_id="u2", settings=settings)

    async def test_unknown_order(self, db, audit, settings, gateway) -> None:
        with pytest.raises(OrderNotFound):
            await sync_status(db, audit, gateway, "PRD-0-XXXXX",
                              user_id="u1", settings=settings)

    async def test_gateway_down_changes_nothing(self, db, audit, settings,
                                                placed, hold) -> None:
        with pytest.raises(GatewayUnavailable):
            await sync_status(db, audit, FlakyGateway(), placed.order_id,
                              user_id="u1", settings=settings)
        assert (await hold(placed.order_id))["payment_status"] == \
            "awaiting_payment"


def ledger_available(row):
    return row["total"] - row["reserved"] - row["sold"]

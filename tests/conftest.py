"""Shared fixtures: a throwaway SQLite database per test, seeded units and a
mock gateway signing with a known server key."""

from datetime import datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from slotpay.config import Settings
from slotpay.gateway import MockGateway
from slotpay.identity import StaticIdentity
from slotpay.infra.sql import make_database
from slotpay.model import holds, ledger, tickets
from slotpay.model.auditlog import new_audit_log
from slotpay.model.db import UNIT_PRODUCT, UNIT_TICKET_SLOT, create_schema

SERVER_KEY = "SB-Mid-server-test"
JAKARTA = ZoneInfo("Asia/Jakarta")

# 2026-01-10 10:00 WIB
NOW = datetime(2026, 1, 10, 10, 0, tzinfo=JAKARTA).timestamp()

USERS = {"token-alice": "user-alice", "token-bob": "user-bob"}


def wib(day: int, hour: int, minute: int = 0) -> float:
    return datetime(2026, 1, day, hour, minute, tzinfo=JAKARTA).timestamp()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'slotpay.db'}",
        gateway="mock",
        midtrans_server_key=SERVER_KEY,
        public_base_url="http://testserver",
        session_secret="test-secret",
        admin_username="admin",
        admin_password="pw",
    )


@pytest.fixture
async def db(settings):
    database = make_database(settings.database_url)
    await create_schema(database.engine)
    yield database
    await database.dispose()


@pytest.fixture
def audit(db):
    return new_audit_log("sql", db=db)


@pytest.fixture
def gateway():
    return MockGateway(SERVER_KEY, base_url="http://testserver")


@pytest.fixture
def seed(db):
    """seed(kind, ref_id, total, slot_date=None, time_slot=None) -> unit id"""

    async def _seed(kind, ref_id, total, slot_date=None, time_slot=None,
                    name=""):
        if kind == UNIT_PRODUCT:
            unit_id = ledger.variant_unit_id(ref_id)
        else:
            unit_id = ledger.slot_unit_id(ref_id, slot_date, time_slot)
        async with db.transaction() as s:
            assert await ledger.upsert_unit(
                s, unit_id, kind=kind, ref_id=ref_id, total=total,
                name=name or unit_id, slot_date=slot_date,
                time_slot=time_slot,
            )
        return unit_id

    return _seed


@pytest.fixture
def unit(db):
    async def _unit(unit_id):
        async with db.session() as s:
            return await ledger.get_unit(s, unit_id)

    return _unit


@pytest.fixture
def hold(db):
    async def _hold(order_id):
        async with db.session() as s:
            return await holds.get_hold(s, order_id)

    return _hold


@pytest.fixture
def issued(db):
    async def _issued(order_id):
        async with db.session() as s:
            row = await holds.get_hold(s, order_id)
            return await tickets.list_for_hold(s, row["id"])

    return _issued


@pytest.fixture
def app(settings, db, gateway):
    from slotpay.server import create_app

    return create_app(settings, db=db, gateway=gateway,
                      identity=StaticIdentity(USERS))


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://testserver") as c:
        yield c


def auth(token="token-alice"):
    return {"Authorization": f"Bearer {token}"}



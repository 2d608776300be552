"""HTTP surface tests over ASGITransport (startup events do not run, the
fixtures create the schema themselves)."""

from sqlalchemy.exc import OperationalError

from conftest import SERVER_KEY, UNIT_PRODUCT, UNIT_TICKET_SLOT, auth
from slotpay.gateway import compute_signature
from slotpay.model import holds

TICKET_ITEM = {"ticket_id": 1, "date": "2099-01-01", "time_slot": "10:00",
               "quantity": 2, "price": 50000, "name": "Studio session"}
PRODUCT_ITEM = {"variant_id": 1, "quantity": 1, "price": 15000,
                "name": "Tee"}
CONTACT = {"customer_name": "Alice", "customer_email": "alice@example.com"}


def signed(order_id, transaction_status, amount, status_code="200"):
    gross = f"{amount}.00"
    return {
        "order_id": order_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross,
        "signature_key": compute_signature(order_id, status_code, gross,
                                           SERVER_KEY),
    }


async def login(client):
    r = await client.post("/admin/login",
                          data={"username": "admin", "password": "pw",
                                "next": "/api/admin/audit"})
    assert r.status_code == 303


class TestCheckout:
    """Checkout endpoints."""

    async def test_ticket_checkout(self, client, seed, unit) -> None:
        uid = await seed(UNIT_TICKET_SLOT, 1, 5, slot_date="2099-01-01",
                         time_slot="10:00")
        r = await client.post("/api/checkout/tickets", headers=auth(),
                              json={"items": [TICKET_ITEM], **CONTACT})
        assert r.status_code == 200
        body = r.json()
        assert body["order_id"].startswith("TIX-")
        assert body["token"].startswith("mock_")
        assert body["redirect_url"].endswith(f"/mockpay/{body['order_id']}")
        assert body["total_amount"] == 100000
        assert body["expiry_minutes"] == 20
        assert (await unit(uid))["reserved"] == 2

    async def test_requires_identity(self, client) -> None:
        r = await client.post("/api/checkout/tickets",
                              json={"items": [TICKET_ITEM], **CONTACT})
        assert r.status_code == 401
        assert r.json()["code"] == "INVALID_TOKEN"

    async def test_out_of_stock(self, client, seed) -> None:
        await seed(UNIT_PRODUCT, 1, 0)
        r = await client.post("/api/checkout/products", headers=auth(),
                              json={"items": [PRODUCT_ITEM], **CONTACT})
        assert r.status_code == 409
        assert r.json()["code"] == "INSUFFICIENT_STOCK"

    async def test_invalid_items(self, client) -> None:
        r = await client.post("/api/checkout/products", headers=auth(),
                              json={"items": "nope", **CONTACT})
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_LINE_ITEM"


class TestOrdersAndWebhook:
    """Order read model, webhook and sync."""

    async def _checkout(self, client, seed):
        await seed(UNIT_PRODUCT, 1, 10)
        r = await client.post("/api/checkout/products", headers=auth(),
                              json={"items": [PRODUCT_ITEM], **CONTACT})
        return r.json()

    async def test_webhook_paid(self, client, seed) -> None:
        order = await self._checkout(client, seed)
        oid = order["order_id"]
        r = await client.post("/payments/webhook",
                              json=signed(oid, "settlement", 15000))
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}

        r = await client.get(f"/api/orders/{oid}", headers=auth())
        assert r.status_code == 200
        body = r.json()
        assert body["payment_status"] == "paid"
        assert body["status"] == "processing"
        assert body["pickup_code"].startswith("PU-")
        assert "user_id" not in body

    async def test_webhook_bad_signature(self, client, seed) -> None:
        order = await self._checkout(client, seed)
        ev = signed(order["order_id"], "settlement", 15000)
        ev["signature_key"] = "0" * 128
        r = await client.post("/payments/webhook", json=ev)
        assert r.status_code == 403
        assert r.json()["error"] == "Invalid signature"

    async def test_webhook_unknown_order(self, client) -> None:
        r = await client.post("/payments/webhook",
                              json=signed("PRD-0-NONE0", "settlement", 1))
        assert r.status_code == 404

    async def test_webhook_bad_json(self, client) -> None:
        r = await client.post("/payments/webhook", content=b"{not json",
                              headers={"content-type": "application/json"})
        assert r.status_code == 400

    async def test_webhook_storage_failure(self, client, seed, hold,
                                           monkeypatch) -> None:
        """A failed write answers 5xx so the gateway delivers again."""
        order = await self._checkout(client, seed)
        oid = order["order_id"]

        async def failing(*args, **kwargs):
            raise OperationalError("UPDATE holds", {}, Exception("locked"))

        monkeypatch.setattr(holds, "update_hold", failing)
        r = await client.post("/payments/webhook",
                              json=signed(oid, "settlement", 15000))
        assert r.status_code == 500
        assert r.json()["code"] == "STORAGE_FAILURE"
        assert (await hold(oid))["payment_status"] == "awaiting_payment"

    async def test_order_owner_only(self, client, seed) -> None:
        order = await self._checkout(client, seed)
        r = await client.get(f"/api/orders/{order['order_id']}",
                             headers=auth("token-bob"))
        assert r.status_code == 403
        r = await client.get("/api/orders/PRD-0-NONE0", headers=auth())
        assert r.status_code == 404

    async def test_sync(self, client, seed, gateway) -> None:
        order = await self._checkout(client, seed)
        oid = order["order_id"]
        gateway.transactions[oid]["transaction_status"] = "deny"
        r = await client.post(f"/api/orders/{oid}/sync", headers=auth())
        assert r.status_code == 200
        body = r.json()
        assert body["changed"] is True
        assert body["order"]["payment_status"] == "failed"
        assert body["order"]["status"] == "cancelled"

    async def test_mockpay_emit(self, client, seed) -> None:
        order = await self._checkout(client, seed)
        oid = order["order_id"]
        r = await client.get(f"/mockpay/{oid}")
        assert r.status_code == 200
        assert oid in r.text
        assert 'value="settlement"' in r.text
        r = await client.post(f"/mockpay/{oid}/emit", data={"t": "settlement"})
        assert r.status_code == 200
        assert r.json()["payment_status"] == "paid"
        r = await client.post(f"/mockpay/{oid}/emit", data={"t": "bogus"})
        assert r.status_code == 400


class TestInventory:
    async def test_public_inventory(self, client, seed) -> None:
        await seed(UNIT_PRODUCT, 1, 3)
        r = await client.get("/api/inventory")
        assert r.status_code == 200
        assert r.json()[0]["available"] == 3


class TestAdmin:
    """Admin session and endpoints."""

    async def test_requires_login(self, client) -> None:
        r = await client.get("/api/admin/audit")
        assert r.status_code == 401
        assert r.json()["code"] == "ADMIN_REQUIRED"

    async def test_bad_credentials(self, client) -> None:
        r = await client.post("/admin/login",
                              data={"username": "admin", "password": "no"})
        assert r.status_code == 401

    async def test_login_page_escapes_next(self, client) -> None:
        payload = '"><script>alert(1)</script>'
        r = await client.get("/admin/login", params={"next": payload})
        assert r.status_code == 200
        assert "<script>alert(1)</script>" not in r.text
        assert "&lt;script&gt;" in r.text

    async def test_failed_login_escapes_next(self, client) -> None:
        r = await client.post("/admin/login",
                              data={"username": "admin", "password": "no",
                                    "next": '"><img src=x onerror=alert(1)>'})
        assert r.status_code == 401
        assert "Invalid credentials." in r.text
        assert "<img src=x" not in r.text

    async def test_login_logout(self, client) -> None:
        await login(client)
        assert (await client.get("/api/admin/timings")).status_code == 200
        r = await client.get("/admin/logout")
        assert r.status_code == 303
        assert (await client.get("/api/admin/timings")).status_code == 401

    async def test_define_unit(self, client, unit) -> None:
        await login(client)
        r = await client.put("/api/admin/inventory/variant:7",
                             json={"kind": "product", "ref_id": 7,
                                   "total": 12, "name": "Cap"})
        assert r.status_code == 200
        assert r.json()["available"] == 12
        assert (await unit("variant:7"))["name"] == "Cap"

    async def test_define_unit_id_mismatch(self, client) -> None:
        await login(client)
        r = await client.put("/api/admin/inventory/variant:8",
                             json={"kind": "product", "ref_id": 7,
                                   "total": 12})
        assert r.status_code == 400

    async def test_shrink_below_reserved(self, client, seed) -> None:
        await seed(UNIT_PRODUCT, 1, 10)
        await client.post("/api/checkout/products", headers=auth(),
                          json={"items": [dict(PRODUCT_ITEM, quantity=5)],
                                **CONTACT})
        await login(client)
        r = await client.put("/api/admin/inventory/variant:1",
                             json={"kind": "product", "ref_id": 1,
                                   "total": 4})
        assert r.status_code == 409

    async def test_pickup_and_audit(self, client, seed, hold) -> None:
        await seed(UNIT_PRODUCT, 1, 10)
        r = await client.post("/api/checkout/products", headers=auth(),
                              json={"items": [PRODUCT_ITEM], **CONTACT})
        oid = r.json()["order_id"]
        await client.post("/payments/webhook",
                          json=signed(oid, "settlement", 15000))
        code = (await hold(oid))["pickup_code"]

        await login(client)
        r = await client.post("/api/admin/pickup", json={"pickup_code": code})
        assert r.status_code == 200
        assert r.json()["picked_up_by"] == "admin"
        r = await client.post("/api/admin/pickup", json={"pickup_code": code})
        assert r.status_code == 409

        r = await client.get("/api/admin/audit", params={"order_id": oid})
        items = r.json()["items"]
        assert items[0]["event_type"] == "product_order_processed"

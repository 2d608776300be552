"""Tests for the payment gateway clients and notification signatures."""

import hashlib
import json

import httpx
import pytest

from slotpay.errors import GatewayUnavailable
from slotpay.gateway import (
    MidtransGateway,
    MockGateway,
    compute_signature,
    format_gross_amount,
    new_gateway,
    verify_signature,
)

KEY = "SB-Mid-server-test"

CREATE_KW = dict(
    order_id="PRD-1-ABCDE",
    gross_amount=30000,
    item_details=[{"id": "variant:1", "price": 15000, "quantity": 2,
                   "name": "Tee"}],
    customer={"name": " Alice ", "email": "alice@example.com", "phone": ""},
    expiry_minutes=30,
    finish_url="http://shop.test/order/product/success/PRD-1-ABCDE",
)


def _midtrans(handler) -> MidtransGateway:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MidtransGateway(KEY, http=http, base_delay_ms=0)


class TestSignature:
    """sha512(order_id + status_code + gross_amount + server_key)."""

    def test_known_digest(self) -> None:
        expected = hashlib.sha512(
            b"TIX-1-AAAAA200150000.00" + KEY.encode()).hexdigest()
        assert compute_signature("TIX-1-AAAAA", "200", "150000.00",
                                 KEY) == expected

    def test_numeric_amount_formatted(self) -> None:
        """Numbers are signed as two-decimal strings."""
        assert format_gross_amount(150000) == "150000.00"
        assert format_gross_amount(99.5) == "99.50"
        assert format_gross_amount("150000.00") == "150000.00"
        assert compute_signature("o", "200", 150000, KEY) == \
            compute_signature("o", "200", "150000.00", KEY)

    def test_verify(self) -> None:
        event = {"order_id": "o", "status_code": "200",
                 "gross_amount": "10.00"}
        event["signature_key"] = compute_signature("o", "200", "10.00", KEY)
        assert verify_signature(event, KEY)
        assert not verify_signature(event, "other-key")

    def test_verify_rejects_tampering(self) -> None:
        event = {"order_id": "o", "status_code": "200",
                 "gross_amount": "10.00"}
        event["signature_key"] = compute_signature("o", "200", "10.00", KEY)
        event["gross_amount"] = "1.00"
        assert not verify_signature(event, KEY)

    def test_verify_is_exact(self) -> None:
        """An upper-cased hex digest is not the signature that was sent."""
        event = {"order_id": "o", "status_code": "200",
                 "gross_amount": "10.00"}
        event["signature_key"] = compute_signature(
            "o", "200", "10.00", KEY).upper()
        assert not verify_signature(event, KEY)

    def test_verify_missing_signature(self) -> None:
        assert not verify_signature({"order_id": "o"}, KEY)


class TestMidtransGateway:
    """Snap token creation and status lookups over a mocked transport."""

    async def test_create_transaction_payload(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={
                "token": "tok-1", "redirect_url": "https://pay.test/tok-1"})

        gw = _midtrans(handler)
        result = await gw.create_transaction(**CREATE_KW)
        assert result == {"token": "tok-1",
                          "redirect_url": "https://pay.test/tok-1"}
        assert seen["url"] == \
            "https://app.sandbox.midtrans.com/snap/v1/transactions"
        assert seen["auth"].startswith("Basic ")
        body = seen["body"]
        assert body["transaction_details"] == {"order_id": "PRD-1-ABCDE",
                                               "gross_amount": 30000}
        assert body["custom_expiry"] == {"expiry_duration": 30,
                                         "unit": "minute"}
        assert body["customer_details"]["first_name"] == "Alice"
        assert body["callbacks"]["finish"].endswith("/PRD-1-ABCDE")

    async def test_rejection(self) -> None:
        """4xx from the gateway is final: no retry, GatewayUnavailable."""
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400, json={"error_messages": ["bad"]})

        gw = _midtrans(handler)
        with pytest.raises(GatewayUnavailable) as ei:
            await gw.create_transaction(**CREATE_KW)
        assert ei.value.details == {"error_messages": ["bad"]}
        assert len(calls) == 1

    async def test_retries_transient_failures(self) -> None:
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(201, json={"token": "t", "redirect_url": ""})

        gw = _midtrans(handler)
        assert (await gw.create_transaction(**CREATE_KW))["token"] == "t"
        assert len(calls) == 3

    async def test_unreachable(self) -> None:
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gw = _midtrans(handler)
        with pytest.raises(GatewayUnavailable) as ei:
            await gw.create_transaction(**CREATE_KW)
        assert isinstance(ei.value.cause, httpx.ConnectError)

    async def test_get_status(self) -> None:
        def handler(request):
            assert request.url.path == "/v2/PRD-1-ABCDE/status"
            return httpx.Response(200, json={
                "status_code": "200", "transaction_status": "capture",
                "fraud_status": "accept"})

        status = await _midtrans(handler).get_status("PRD-1-ABCDE")
        assert status["transaction_status"] == "capture"
        assert status["fraud_status"] == "accept"
        assert status["raw"]["status_code"] == "200"

    async def test_get_status_not_found(self) -> None:
        """Unknown transactions answer 200 with status_code 404."""
        def handler(request):
            return httpx.Response(200, json={"status_code": "404"})

        status = await _midtrans(handler).get_status("nope")
        assert status["transaction_status"] == "not_found"


class TestMockGateway:
    """The in-process gateway used for local runs."""

    async def test_create_is_idempotent_per_order(self) -> None:
        gw = MockGateway(KEY, base_url="http://local/")
        first = await gw.create_transaction(**CREATE_KW)
        again = await gw.create_transaction(**CREATE_KW)
        assert first == again
        assert first["redirect_url"] == "http://local/mockpay/PRD-1-ABCDE"

    async def test_notification_is_signed(self) -> None:
        gw = MockGateway(KEY)
        await gw.create_transaction(**CREATE_KW)
        event = gw.notification("PRD-1-ABCDE", "settlement")
        assert event["gross_amount"] == "30000.00"
        assert verify_signature(event, KEY)
        status = await gw.get_status("PRD-1-ABCDE")
        assert status["transaction_status"] == "settlement"

    async def test_unknown_order_status(self) -> None:
        status = await MockGateway(KEY).get_status("missing")
        assert status["transaction_status"] == "not_found"

    def test_factory(self) -> None:
        assert isinstance(new_gateway("mock", server_key=KEY), MockGateway)
        with pytest.raises(ValueError):
            new_gateway("paypal", server_key=KEY)

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, TypedDict
import hashlib
import uuid

import httpx
import structlog

from .errors import GatewayUnavailable
from .helpers import ct_equal
from .infra.timings import timeit
from .retry import call_with_retries

logger = structlog.get_logger(component="gateway")

SNAP_URL_PRODUCTION = "https://app.midtrans.com/snap/v1/transactions"
SNAP_URL_SANDBOX = "https://app.sandbox.midtrans.com/snap/v1/transactions"
API_URL_PRODUCTION = "https://api.midtrans.com"
API_URL_SANDBOX = "https://api.sandbox.midtrans.com"

# status_code values the gateway puts on notifications
STATUS_CODES = {
    "capture": "200",
    "settlement": "200",
    "refund": "200",
    "partial_refund": "200",
    "pending": "201",
    "deny": "202",
    "cancel": "202",
    "expire": "407",
    "failure": "202",
}

NOT_FOUND = "not_found"


# ----------------------------
# Signature
# ----------------------------
def format_gross_amount(gross_amount: Any) -> str:
    """Numbers are signed with two decimals ("150000.00"); strings as sent."""
    if isinstance(gross_amount, bool):
        raise TypeError("gross_amount must be a number or string")
    if isinstance(gross_amount, (int, float)):
        return f"{gross_amount:.2f}"
    return str(gross_amount if gross_amount is not None else "")


def compute_signature(order_id: str, status_code: Any, gross_amount: Any,
                      server_key: str) -> str:
    raw = (f"{order_id}{status_code if status_code is not None else ''}"
           f"{format_gross_amount(gross_amount)}{server_key}")
    return hashlib.sha512(raw.encode()).hexdigest()


def verify_signature(event: Dict[str, Any], server_key: str) -> bool:
    sig = event.get("signature_key")
    if not sig or not isinstance(sig, str):
        return False
    expected = compute_signature(
        str(event.get("order_id") or ""),
        event.get("status_code"),
        event.get("gross_amount"),
        server_key,
    )
    return ct_equal(expected, sig)


# ----------------------------
# Gateway interface
# ----------------------------
class CreateTransactionResult(TypedDict):
    token: str
    redirect_url: str


class GatewayStatus(TypedDict):
    transaction_status: str
    fraud_status: Optional[str]
    raw: Dict[str, Any]


class PaymentGateway(ABC):
    server_key: str

    @abstractmethod
    async def create_transaction(
        self,
        *,
        order_id: str,
        gross_amount: int,
        item_details: List[Dict[str, Any]],
        customer: Dict[str, str],
        expiry_minutes: int,
        finish_url: str,
    ) -> CreateTransactionResult:
        """order_id doubles as the gateway idempotency key."""

    @abstractmethod
    async def get_status(self, order_id: str) -> GatewayStatus: ...

    async def aclose(self) -> None:
        return None


def snap_payload(
    *,
    order_id: str,
    gross_amount: int,
    item_details: List[Dict[str, Any]],
    customer: Dict[str, str],
    expiry_minutes: int,
    finish_url: str,
) -> Dict[str, Any]:
    return {
        "transaction_details": {
            "order_id": order_id,
            "gross_amount": int(gross_amount),
        },
        "item_details": item_details,
        "customer_details": {
            "first_name": (customer.get("name") or "").strip(),
            "email": customer.get("email") or "",
            "phone": customer.get("phone") or "",
        },
        "custom_expiry": {
            "expiry_duration": int(expiry_minutes),
            "unit": "minute",
        },
        "callbacks": {"finish": finish_url},
    }


# ----------------------------
# Midtrans (Snap + Core status API)
# ----------------------------
class MidtransGateway(PaymentGateway):

    def __init__(self, server_key: str, *, is_production: bool = False,
                 http: Optional[httpx.AsyncClient] = None,
                 max_attempts: int = 3, base_delay_ms: int = 1000):
        self.server_key = server_key
        self.snap_url = SNAP_URL_PRODUCTION if is_production \
            else SNAP_URL_SANDBOX
        self.api_url = API_URL_PRODUCTION if is_production \
            else API_URL_SANDBOX
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=10.0)
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms

    @property
    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.server_key, "")

    async def create_transaction(self, **kw) -> CreateTransactionResult:
        payload = snap_payload(**kw)
        order_id = kw["order_id"]

        async def _post() -> httpx.Response:
            resp = await self.http.post(
                self.snap_url, json=payload, auth=self._auth,
                headers={"Accept": "application/json"},
            )
            # 5xx go through the retry policy, 4xx are final
            if resp.status_code >= 500:
                resp.raise_for_status()
            return resp

        try:
            async with timeit("gateway.create_transaction"):
                resp = await call_with_retries(
                    _post, what="gateway.create_transaction",
                    max_attempts=self.max_attempts,
                    base_delay_ms=self.base_delay_ms,
                )
        except httpx.HTTPError as e:
            logger.error("gateway_unreachable", order_id=order_id,
                         error=str(e))
            raise GatewayUnavailable("Failed to create payment token",
                                     cause=e) from e

        data = _json_or_none(resp)
        if resp.status_code >= 400 or not data or not data.get("token"):
            logger.error("gateway_rejected", order_id=order_id,
                         http_status=resp.status_code, details=data)
            raise GatewayUnavailable("Failed to create payment token",
                                     details=data)

        logger.info("gateway_token_created", order_id=order_id)
        return {
            "token": data["token"],
            "redirect_url": data.get("redirect_url") or "",
        }

    async def get_status(self, order_id: str) -> GatewayStatus:
        url = f"{self.api_url}/v2/{order_id}/status"

        async def _get() -> httpx.Response:
            resp = await self.http.get(
                url, auth=self._auth, headers={"Accept": "application/json"},
            )
            if resp.status_code >= 500:
                resp.raise_for_status()
            return resp

        try:
            async with timeit("gateway.get_status"):
                resp = await call_with_retries(
                    _get, what="gateway.get_status",
                    max_attempts=self.max_attempts,
                    base_delay_ms=self.base_delay_ms,
                )
        except httpx.HTTPError as e:
            raise GatewayUnavailable("Failed to fetch payment status",
                                     cause=e) from e

        data = _json_or_none(resp) or {}
        # unknown transactions come back as HTTP 200 with status_code "404"
        if resp.status_code == 404 or str(data.get("status_code")) == "404":
            return {"transaction_status": NOT_FOUND, "fraud_status": None,
                    "raw": data}
        if resp.status_code >= 400:
            raise GatewayUnavailable("Failed to fetch payment status",
                                     details=data)
        return {
            "transaction_status": str(data.get("transaction_status") or ""),
            "fraud_status": data.get("fraud_status"),
            "raw": data,
        }

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()


def _json_or_none(resp: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


# ----------------------------
# Mock gateway (local runs)
# ----------------------------
class MockGateway(PaymentGateway):
    """
    In-process stand-in: mints local tokens and remembers the last status
    it emitted per order so the status poller has something to ask.
    """

    def __init__(self, server_key: str, base_url: str = ""):
        self.server_key = server_key
        self.base_url = base_url.rstrip("/")
        self.transactions: Dict[str, Dict[str, Any]] = {}

    async def create_transaction(self, **kw) -> CreateTransactionResult:
        order_id = kw["order_id"]
        if order_id not in self.transactions:
            self.transactions[order_id] = {
                "token": f"mock_{uuid.uuid4().hex}",
                "gross_amount": int(kw["gross_amount"]),
                "transaction_status": "pending",
                "fraud_status": None,
            }
        tx = self.transactions[order_id]
        return {
            "token": tx["token"],
            "redirect_url": f"{self.base_url}/mockpay/{order_id}",
        }

    async def get_status(self, order_id: str) -> GatewayStatus:
        tx = self.transactions.get(order_id)
        if tx is None:
            return {"transaction_status": NOT_FOUND, "fraud_status": None,
                    "raw": {"status_code": "404"}}
        return {
            "transaction_status": tx["transaction_status"],
            "fraud_status": tx["fraud_status"],
            "raw": {"order_id": order_id, **tx},
        }

    def notification(self, order_id: str, transaction_status: str,
                     gross_amount: Optional[int] = None,
                     fraud_status: Optional[str] = None) -> Dict[str, Any]:
        """Build a signed notification like the real gateway would POST."""
        tx = self.transactions.setdefault(order_id, {
            "token": f"mock_{uuid.uuid4().hex}",
            "gross_amount": int(gross_amount or 0),
        })
        tx["transaction_status"] = transaction_status
        tx["fraud_status"] = fraud_status
        amount = format_gross_amount(
            gross_amount if gross_amount is not None else tx["gross_amount"]
        )
        status_code = STATUS_CODES.get(transaction_status, "200")
        event = {
            "order_id": order_id,
            "transaction_status": transaction_status,
            "status_code": status_code,
            "gross_amount": amount,
            "transaction_id": uuid.uuid4().hex,
            "signature_key": compute_signature(
                order_id, status_code, amount, self.server_key),
        }
        if fraud_status is not None:
            event["fraud_status"] = fraud_status
        return event


def new_gateway(kind: str, *, server_key: str, is_production: bool = False,
                base_url: str = "",
                http: Optional[httpx.AsyncClient] = None) -> PaymentGateway:
    kind = (kind or "mock").lower()
    if kind == "midtrans":
        return MidtransGateway(server_key, is_production=is_production,
                               http=http)
    if kind == "mock":
        return MockGateway(server_key, base_url=base_url)
    raise ValueError(f"unknown gateway: {kind}")

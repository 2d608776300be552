"""Error types raised by the reservation and reconciliation core.

Every error carries the HTTP status it maps to at the API boundary and a
short machine readable ``code``; ``server.py`` installs one exception handler
for the whole family.
"""

from typing import Optional


class SlotpayError(Exception):
    """Base class for domain errors."""

    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message


class InsufficientStock(SlotpayError):
    """Not enough available inventory to reserve a line item."""

    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, unit_id: str, requested: int, available: int | None = None,
                 name: str | None = None):
        label = name or unit_id
        msg = f"out of stock for {label}: requested={requested}"
        if available is not None:
            msg += f", available={available}"
        super().__init__(msg)
        self.unit_id = unit_id
        self.requested = requested
        self.available = available


class InvalidLineItem(SlotpayError):
    status_code = 400
    code = "INVALID_LINE_ITEM"

    def __init__(self, message: str):
        super().__init__(f"invalid line item: {message}")


class InvalidSignature(SlotpayError):
    status_code = 403
    code = "INVALID_SIGNATURE"

    def __init__(self, order_id: str = ""):
        super().__init__("Invalid signature")
        self.order_id = order_id


class OrderNotFound(SlotpayError):
    status_code = 404
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"order not found: {order_id}")
        self.order_id = order_id


class Forbidden(SlotpayError):
    status_code = 403
    code = "FORBIDDEN"


class Unauthorized(SlotpayError):
    """Caller identity could not be verified."""

    status_code = 401
    code = "INVALID_TOKEN"

    def __init__(self, message: str, code: str = "INVALID_TOKEN",
                 cause: Optional[Exception] = None):
        super().__init__(message, cause)
        self.code = code


class GatewayUnavailable(SlotpayError):
    """Payment gateway rejected the call or could not be reached."""

    status_code = 502
    code = "GATEWAY_UNAVAILABLE"

    def __init__(self, message: str, details: object = None,
                 cause: Optional[Exception] = None):
        super().__init__(message, cause)
        self.details = details


class StockValidationFailed(SlotpayError):
    """Post-payment stock check found a shortfall.

    Never raised past the reconciler: the order is downgraded to manual
    review and the issues are written to the audit log.
    """

    status_code = 200
    code = "STOCK_VALIDATION_FAILED"

    def __init__(self, order_id: str, issues: list[str]):
        super().__init__(f"stock insufficient for {order_id}: "
                         + "; ".join(issues))
        self.order_id = order_id
        self.issues = issues


class StorageFailure(SlotpayError):
    status_code = 500
    code = "STORAGE_FAILURE"


class PickupRejected(SlotpayError):
    status_code = 409
    code = "PICKUP_REJECTED"

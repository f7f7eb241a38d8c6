"""
Error taxonomy for the order fulfillment and inventory ledger.

Every error carries the HTTP status it is surfaced with; the FastAPI
handlers in ``main.py`` turn them into ``{"success": false, "error": ...}``
bodies.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger operations"""
    status_code = 400
    retryable = False

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(LedgerError):
    """Missing or invalid field, non-positive quantity/rate, malformed date"""
    status_code = 400


class ConstraintError(LedgerError):
    """Over-dispatch attempt or reference to a non-existent record"""
    status_code = 400


class OverDispatchError(ConstraintError):
    """Dispatch quantity exceeds the balance of an order item"""

    def __init__(self, order_item_id: int, requested, balance):
        super().__init__(
            f"Dispatch quantity {requested} exceeds balance quantity {balance} "
            f"for order item {order_item_id}",
            field="items",
        )
        self.order_item_id = order_item_id
        self.requested = requested
        self.balance = balance


class NotFoundError(ConstraintError):
    """The resource addressed by the request path does not exist"""
    status_code = 404


class ConcurrencyConflict(LedgerError):
    """Lock wait timeout or serialization failure; safe for the caller to retry"""
    status_code = 409
    retryable = True


class StorageError(LedgerError):
    """Underlying database unavailable or failed"""
    status_code = 503


class InsufficientStockError(ConstraintError):
    """An issue would take an item's ledger balance below zero"""

    def __init__(self, shortages):
        lines = [
            f"item {item_id}: available {available}, required {required}"
            for item_id, available, required in shortages
        ]
        super().__init__("Insufficient stock for " + "; ".join(lines), field="consumptions")
        self.shortages = list(shortages)

"""Error taxonomy for the stock and order engine.

Every error carries the HTTP-equivalent status an outer API layer should map it
to and whether retrying the whole user action can help.
"""

from dataclasses import dataclass, asdict


class StorefrontError(Exception):
    code = "STOREFRONT_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details(),
        }


class NotFoundError(StorefrontError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, key):
        super().__init__(f"{entity} {key!r} not found")
        self.entity = entity
        self.key = key

    def details(self):
        return {"entity": self.entity, "key": self.key}


class ItemUnavailableError(StorefrontError):
    code = "ITEM_UNAVAILABLE"
    http_status = 409

    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id!r} is not available for sale")
        self.item_id = item_id

    def details(self):
        return {"item_id": self.item_id}


class InsufficientStockError(StorefrontError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, requested: int, available: int, item_id: str | None = None):
        super().__init__(f"Insufficient stock for item {item_id!r}: requested={requested}, available={available}")
        self.requested = requested
        self.available = available
        self.item_id = item_id

    def details(self):
        return {"item_id": self.item_id, "requested": self.requested, "available": self.available}


class InvalidReleaseError(StorefrontError):
    code = "INVALID_RELEASE"
    http_status = 409

    def __init__(self, requested: int, reserved: int, item_id: str | None = None):
        super().__init__(f"Cannot release {requested} units of item {item_id!r}: only {reserved} reserved")
        self.requested = requested
        self.reserved = reserved
        self.item_id = item_id

    def details(self):
        return {"item_id": self.item_id, "requested": self.requested, "reserved": self.reserved}


class ConcurrencyExhaustedError(StorefrontError):
    code = "CONCURRENCY_EXHAUSTED"
    http_status = 503
    retryable = True

    def __init__(self, item_id: str, attempts: int):
        super().__init__(f"Concurrent updates on item {item_id!r}; gave up after {attempts} attempts")
        self.item_id = item_id
        self.attempts = attempts

    def details(self):
        return {"item_id": self.item_id, "attempts": self.attempts}


class InvalidTransitionError(StorefrontError):
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current, requested):
        super().__init__(f"Cannot change order status from {_value(current)} to {_value(requested)}")
        self.current = current
        self.requested = requested

    def details(self):
        return {"current": _value(self.current), "requested": _value(self.requested)}


class EmptyCartError(StorefrontError):
    code = "EMPTY_CART"
    http_status = 422

    def __init__(self, user_id: str):
        super().__init__(f"Cart for user {user_id!r} is empty")
        self.user_id = user_id

    def details(self):
        return {"user_id": self.user_id}


@dataclass(frozen=True)
class StockShortfall:
    item_id: str
    reason: str
    required: int
    actual: int


class StockValidationError(StorefrontError):
    code = "STOCK_VALIDATION_FAILED"
    http_status = 409

    def __init__(self, shortfalls: list[StockShortfall]):
        lines = "; ".join(f"{s.item_id}: {s.reason} (required {s.required}, actual {s.actual})" for s in shortfalls)
        super().__init__(f"Order cannot be created: {lines}")
        self.shortfalls = list(shortfalls)

    def details(self):
        return {"shortfalls": [asdict(s) for s in self.shortfalls]}


class StaleStockVersion(Exception):
    """A conditional stock update matched no row; another writer got there first."""


def _value(status):
    return getattr(status, "value", status)

"""Exceptions raised by the order core.

Every business failure carries a short, stable ``code`` (also used as the
exception message) plus the attributes a caller needs to act on it: which
product ran out, which order was touched, which status blocked a
transition. Storage failures are not wrapped; they propagate as SQLAlchemy
exceptions after the unit of work has rolled back.
"""


class OrderError(Exception):
    """Base exception for all order core errors."""

    code = "ORDER_ERROR"

    def __init__(self, **detail):
        self.detail = detail
        super().__init__(self.code)


# ---- Validation ----
class InvalidCheckout(OrderError):
    """The checkout request was rejected before any side effect."""

    code = "INVALID_CHECKOUT"


class EmptyCart(InvalidCheckout):
    """The user's cart has nothing to check out."""

    code = "EMPTY_CART"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(user_id=user_id)


class InvalidQuantity(InvalidCheckout):
    """A quantity was zero or negative."""

    code = "INVALID_QUANTITY"

    def __init__(self, product_id: int, quantity: int):
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(product_id=product_id, quantity=quantity)


class InvalidReceiver(InvalidCheckout):
    """Receiver name, phone or address failed validation."""

    code = "INVALID_RECEIVER"

    def __init__(self, errors: list):
        self.errors = errors
        super().__init__(errors=errors)


# ---- Resource state ----
class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, requested: int):
        self.product_id = product_id
        self.requested = requested
        super().__init__(product_id=product_id, requested=requested)


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(product_id=product_id)


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id=None, order_number: str | None = None):
        self.order_id = order_id
        self.order_number = order_number
        super().__init__(order_id=order_id, order_number=order_number)


class InvalidTransition(OrderError):
    """The event is not allowed from the order's current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, order_id: int, status, event):
        self.order_id = order_id
        self.status = status
        self.event = event
        super().__init__(order_id=order_id, status=str(status), event=str(event))


class OrderLocked(OrderError):
    """An administrative or editing action is not allowed in the current status."""

    code = "ORDER_LOCKED"

    def __init__(self, order_id: int, status, action: str):
        self.order_id = order_id
        self.status = status
        self.action = action
        super().__init__(order_id=order_id, status=str(status), action=action)


# ---- Conflicts ----
class OrderNumberConflict(OrderError):
    """The generated order number is already taken. Retryable."""

    code = "ORDER_NUMBER_CONFLICT"

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(order_number=order_number)


class IdempotencyConflict(OrderError):
    """An idempotency key was reused with a different request."""

    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str):
        self.key = key
        super().__init__(key=key)


# ---- Fatal ----
class OrderPersistenceError(OrderError):
    code = "SYSTEM_ERROR"

    def __init__(self, reason: str, attempts: int):
        self.reason = reason
        self.attempts = attempts
        super().__init__(reason=reason, attempts=attempts)


def error_payload(exc: Exception) -> dict:
    """Map an exception to a response body for presentation collaborators.

    Args:
        exc: Any exception raised out of the order core.

    Returns:
        dict: ``{"detail": code, **detail}`` for order core errors, and
        ``{"detail": "SYSTEM_ERROR"}`` for anything else (storage failures,
        bugs) so internals never leak to the user.
    """
    if isinstance(exc, OrderError):
        body = {"detail": exc.code}
        body.update({k: v for k, v in exc.detail.items() if v is not None})
        return body
    return {"detail": "SYSTEM_ERROR"}

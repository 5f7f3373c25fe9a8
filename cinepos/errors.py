"""Domain error kinds surfaced by the order core.

Each error carries a stable ``kind`` string that is part of the wire contract,
an HTTP status used by the exception handler in ``cinepos.main``, and optional
structured extras (for example the offending ``productId``).
"""


class OrderError(Exception):
    kind = "INTERNAL"
    status_code = 500

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message, **self.extra}


class ValidationFailed(OrderError):
    kind = "VALIDATION"
    status_code = 422


class AuthenticationFailed(OrderError):
    kind = "AUTHENTICATION"
    status_code = 401


class Forbidden(OrderError):
    kind = "FORBIDDEN"
    status_code = 403


class NotFound(OrderError):
    kind = "NOT_FOUND"
    status_code = 404


class InsufficientStock(OrderError):
    kind = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, product_id: str, available: int):
        super().__init__(f"insufficient stock for product {product_id}", productId=product_id, available=available)
        self.product_id = product_id
        self.available = available


class StalePricing(OrderError):
    kind = "STALE_PRICING"
    status_code = 409


class PaymentMethodNotAllowed(OrderError):
    kind = "PAYMENT_METHOD_NOT_ALLOWED"
    status_code = 400


class GatewayUnavailable(OrderError):
    kind = "GATEWAY_UNAVAILABLE"
    status_code = 502


class GatewayVerifyFailed(OrderError):
    kind = "GATEWAY_VERIFY_FAILED"
    status_code = 402


class Conflict(OrderError):
    kind = "CONFLICT"
    status_code = 409


class DeadlineExceeded(OrderError):
    kind = "TIMEOUT"
    status_code = 504


class InternalError(OrderError):
    kind = "INTERNAL"
    status_code = 500


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        ValidationFailed, AuthenticationFailed, Forbidden, NotFound, StalePricing,
        PaymentMethodNotAllowed, GatewayUnavailable, GatewayVerifyFailed,
        Conflict, DeadlineExceeded, InternalError,
    )
}


def error_from_payload(status_code: int, payload: dict | None) -> OrderError:
    """Rebuild a domain error from an API error body (used by the client library)."""
    payload = payload or {}
    kind = payload.get("error")
    detail = payload.get("detail") or f"HTTP {status_code}"
    extra = {k: v for k, v in payload.items() if k not in ("error", "detail")}
    if kind == InsufficientStock.kind:
        return InsufficientStock(extra.get("productId", ""), int(extra.get("available") or 0))
    cls = ERROR_KINDS.get(kind)
    if cls is None:
        cls = ValidationFailed if 400 <= status_code < 500 else InternalError
    if not isinstance(detail, str):
        extra["errors"] = detail
        detail = cls.kind
    return cls(detail, **extra)

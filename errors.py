"""Error taxonomy for the ordering backend.

Every business-rule failure is an ``OrderingError`` carrying the HTTP status it
maps to, a short machine-readable ``code`` and a dict of extra fields that the
API merges into the JSON error body.
"""


class OrderingError(Exception):
    status_code = 400
    code = "OrderingError"

    def __init__(self, message, **detail):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self):
        body = {"success": False, "error": self.code, "message": self.message}
        body.update(self.detail)
        return body


class ValidationError(OrderingError):
    code = "ValidationError"


class ItemNotFound(OrderingError):
    code = "ItemNotFound"


class ItemUnavailable(OrderingError):
    code = "ItemUnavailable"


class PriceMismatch(OrderingError):
    code = "PriceMismatch"


class PaymentVerificationFailed(OrderingError):
    code = "PaymentVerificationFailed"


class InvalidSignature(PaymentVerificationFailed):
    code = "InvalidSignature"


class IllegalTransition(OrderingError):
    code = "IllegalTransition"


class NotFound(OrderingError):
    status_code = 404
    code = "NotFound"


class Unauthenticated(OrderingError):
    status_code = 401
    code = "Unauthenticated"


class Forbidden(OrderingError):
    status_code = 403
    code = "Forbidden"


class UpstreamError(OrderingError):
    """A payment provider or other remote dependency failed or timed out."""

    status_code = 502
    code = "UpstreamError"

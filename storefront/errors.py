from typing import Optional


class StorefrontError(Exception):
    """Base error; each subclass maps to one HTTP status."""

    status_code = 500

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reference = reference


class ValidationError(StorefrontError):
    status_code = 400


class Unauthorized(StorefrontError):
    status_code = 401


class Forbidden(StorefrontError):
    status_code = 403


class NotFound(StorefrontError):
    status_code = 404


class GatewayError(StorefrontError):
    """Upstream payment provider failed or refused the call."""

    status_code = 502

    def __init__(self, message: str, reference: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message, reference)
        self.provider = provider


class GatewayTimeout(GatewayError):
    status_code = 504


class IntegrityError(StorefrontError):
    """Local financial data disagrees with itself; needs repair."""

    status_code = 500


class OrderMaterializationError(IntegrityError):
    """Payment is paid but its order could not be written."""

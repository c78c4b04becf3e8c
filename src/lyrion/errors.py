"""Exception types for the order broker.

Each maps onto one row of the error taxonomy: validation errors are
reported straight back to the caller, provider and transport errors are
logged and surfaced as a generic failure, signature errors are a hard
rejection, and reference-data errors degrade the dependent feature.
"""

from __future__ import annotations


class LyrionError(Exception):
    """Base exception for all storefront and broker errors."""

    status = 500


class CheckoutValidationError(LyrionError):
    """Request data failed validation before any network call."""

    status = 400

    def __init__(self, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(message)


class ProviderError(LyrionError):
    """An external API rejected the request."""

    status = 502

    def __init__(self, provider: str, message: str, http_status: int | None = None):
        self.provider = provider
        self.message = message
        self.http_status = http_status
        super().__init__(f"{provider}: {message}")


class TransportError(LyrionError):
    """An external API could not be reached."""

    status = 502

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class SignatureError(LyrionError):
    """Webhook signature missing, malformed or not matching."""

    status = 400


class ReferenceDataError(LyrionError):
    """A static JSON reference document is unreachable or malformed."""

    status = 502


class ConflictError(LyrionError):
    """A conditional write lost against a concurrent update."""

    status = 409


class InvalidCodeError(LyrionError):
    """An access code cannot be redeemed (unknown, expired, used up)."""

    status = 400

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Access code {code!r} cannot be redeemed: {reason}")

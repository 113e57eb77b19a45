"""
Domain-specific exceptions for the slotbridge service.

Each exception maps to an HTTP status so the API layer can render it
without knowing which collaborator raised it. Upstream failures keep
their provider context in ``details`` for server-side logs; only
exceptions flagged ``expose_details`` send those details to callers.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    expose_details: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def public_details(self) -> Dict[str, Any]:
        return dict(self.details) if self.expose_details else {}


class ValidationError(DomainException):
    """Raised when caller input is missing or malformed."""

    status_code = status.HTTP_400_BAD_REQUEST
    expose_details = True


class NotFound(DomainException):
    """Raised when a requested catalog record does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    expose_details = True


class AuthenticationError(DomainException):
    """Raised when the scheduling provider refuses or omits a token."""

    status_code = status.HTTP_502_BAD_GATEWAY


class TransportError(DomainException):
    """Raised when an upstream is unreachable, times out or answers 5xx."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class UpstreamRejected(DomainException):
    """Raised when an upstream answered with a structured error."""

    status_code = status.HTTP_502_BAD_GATEWAY


class RpcError(UpstreamRejected):
    """JSON-RPC ``error`` member returned by the scheduling provider."""

    def __init__(self, rpc_code: Any, message: str, method: str) -> None:
        self.rpc_code = rpc_code
        self.method = method
        super().__init__(
            message,
            code="upstream_rejected",
            details={"method": method, "rpc_code": rpc_code},
        )


class PaymentProviderError(UpstreamRejected):
    """Structured rejection from the payment provider."""


class AvailabilityUnavailable(DomainException):
    """Raised when every availability strategy has been exhausted."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class CatalogUnavailable(DomainException):
    """Raised when no catalog source returned any bookable item."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class SlotUnavailable(DomainException):
    """Raised when no performer can take the requested slot."""

    status_code = status.HTTP_409_CONFLICT
    expose_details = True


class PaymentMismatch(DomainException):
    """Raised when finalize is called for an unpaid or unknown payment."""

    status_code = status.HTTP_409_CONFLICT
    expose_details = True


class BookingFailed(DomainException):
    """
    Raised when the reservation fails after the payment was captured.

    Details carry the payment id and the pending request so the booking
    can be reconciled by hand.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    expose_details = True

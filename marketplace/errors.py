"""Domain exceptions raised by the marketplace services."""
from __future__ import annotations

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base exception for all marketplace errors."""

    code = "marketplace_error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(MarketplaceError):
    """Raised when input is missing or malformed."""

    code = "validation_error"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, **details: Any) -> None:
        if field:
            details["field"] = field
        super().__init__(message, **details)
        self.field = field


class AuthorizationError(MarketplaceError):
    """Raised when the acting principal may not touch the target entity."""

    code = "authorization_error"
    http_status = 403


class NotFoundError(MarketplaceError):
    """Raised when a referenced store, product, coupon or order does not exist."""

    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, identifier: Any) -> None:
        super().__init__(f"{entity} not found: {identifier}", entity=entity, id=identifier)
        self.entity = entity
        self.identifier = identifier


class ConflictError(MarketplaceError):
    """Raised on uniqueness violations and lost compare-and-swap races."""

    code = "conflict"
    http_status = 409


class InvalidTransitionError(ConflictError):
    """Raised when a state machine edge is not allowed."""

    code = "invalid_transition"

    def __init__(self, entity: str, current: Any, requested: Any) -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            f"Cannot move {entity} from {current_value} to {requested_value}",
            current=current_value,
            requested=requested_value,
        )


class ExpiredError(MarketplaceError):
    """Raised when a coupon is redeemed after its expiry date."""

    code = "expired"
    http_status = 410


class UpstreamError(MarketplaceError):
    """Raised when blob storage or the database fails; safe to retry."""

    code = "upstream_error"
    http_status = 503

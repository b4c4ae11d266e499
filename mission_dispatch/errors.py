"""
Typed errors raised by the dispatch engine.

Every error is raised before the surrounding transaction commits, so the
caller never observes a half-applied mission, offer or invoice. Nothing here
is retried by the engine; retry policy belongs to the caller.
"""
from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch engine errors."""

    code: str = "ERROR"

    def __init__(self, detail: str = "Dispatch error", **context: Any):
        self.detail = detail
        self.context = context
        super().__init__(detail)


class NotFound(DispatchError):
    """Mission, offer, invoice or user is absent."""

    code = "NOT_FOUND"


class ValidationFailed(DispatchError):
    """Command arguments are malformed."""

    code = "VALIDATION_FAILED"


class InvalidTransition(DispatchError):
    """Operation is not legal from the mission's current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, operation: str, current_status: Any, detail: str | None = None):
        self.operation = operation
        self.current_status = current_status
        status_value = getattr(current_status, "value", current_status)
        super().__init__(
            detail or f"'{operation}' is not allowed from status {status_value}",
            operation=operation,
            current_status=status_value,
        )


class MissionLocked(DispatchError):
    """Mission has an assignee and can no longer be edited or deleted."""

    code = "MISSION_LOCKED"


class AlreadyAssigned(DispatchError):
    """Another caller assigned or claimed the mission first."""

    code = "ALREADY_TAKEN"


class OfferExpiredOrMissing(DispatchError):
    """Caller holds no live offer for the mission."""

    code = "OFFER_NOT_FOUND_OR_EXPIRED"


class OutOfRadius(DispatchError):
    """Candidate sits outside their own radius; needs an explicit override."""

    code = "OUT_OF_RADIUS"

    def __init__(self, distance_km: float, radius_km: float):
        self.distance_km = distance_km
        self.radius_km = radius_km
        super().__init__(
            f"Candidate is {distance_km:.1f} km away, radius is {radius_km:.1f} km; "
            "pass override_radius=True to assign anyway",
            distance_km=distance_km,
            radius_km=radius_km,
        )


class InvoiceAlreadyExists(DispatchError):
    code = "INVOICE_ALREADY_EXISTS"


class NoUnpaidInvoice(DispatchError):
    code = "NO_UNPAID_INVOICE"

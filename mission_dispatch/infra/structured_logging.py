"""
Structured logging for offer broadcast, acceptance and lifecycle transitions.

Emits one compact JSON object per event so dispatch decisions can be replayed
from the logs (who was offered what, who won the race, why a candidate was
skipped).
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

__all__ = [
    "DispatchEvent",
    "DispatchLogEntry",
    "log_dispatch_event",
    "log_candidate_rejection",
]

_event_logger = logging.getLogger("dispatch.structured")
_rejection_logger = logging.getLogger("dispatch.candidates")


class DispatchEvent(str, Enum):
    MISSION_PUBLISHED = "mission_published"
    CANDIDATES_FOUND = "candidates_found"
    NO_CANDIDATES = "no_candidates"
    OFFER_SENT = "offer_sent"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    OFFER_REFUSED = "offer_refused"
    OFFERS_EXPIRED = "offers_expired"
    MANUAL_ASSIGN = "manual_assign"
    UNASSIGN = "unassign"
    TRANSITION = "transition"
    INVOICE_ISSUED = "invoice_issued"
    PAYMENT_RECEIVED = "payment_received"
    NOTIFICATION_FAILED = "notification_failed"
    ERROR = "error"


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DispatchLogEntry:
    timestamp: str
    event: str
    mission_id: Optional[int] = None
    user_id: Optional[int] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    candidates_count: Optional[int] = None
    offers_created: Optional[int] = None
    outcome: Optional[str] = None
    expires_at: Optional[str] = None
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


def log_dispatch_event(
    event: DispatchEvent,
    *,
    mission_id: Optional[int] = None,
    user_id: Optional[int] = None,
    from_status: Any = None,
    to_status: Any = None,
    candidates_count: Optional[int] = None,
    offers_created: Optional[int] = None,
    outcome: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    reason: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    level: str = "INFO",
) -> None:
    """Log a dispatch event as a single JSON line."""
    entry = DispatchLogEntry(
        timestamp=_iso(datetime.now(timezone.utc)),
        event=event.value,
        mission_id=mission_id,
        user_id=user_id,
        from_status=getattr(from_status, "value", from_status),
        to_status=getattr(to_status, "value", to_status),
        candidates_count=candidates_count,
        offers_created=offers_created,
        outcome=outcome,
        expires_at=_iso(expires_at) if expires_at else None,
        reason=reason,
        details=details or {},
    )
    log_method = getattr(_event_logger, level.lower(), _event_logger.info)
    log_method(entry.to_json())


def log_candidate_rejection(
    mission_id: int,
    user_id: int,
    rejection_reasons: list[str],
    candidate_details: Optional[dict[str, Any]] = None,
) -> None:
    """Record why a candidate did not receive an offer."""
    payload = {
        "timestamp": _iso(datetime.now(timezone.utc)),
        "mission_id": mission_id,
        "user_id": user_id,
        "rejection_reasons": rejection_reasons,
        "candidate_details": candidate_details or {},
    }
    _rejection_logger.info(
        json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    )

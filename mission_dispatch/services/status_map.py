"""
Single translation point between raw status strings and the closed enums.

Historical rows and clients use many spellings for the same state
("PUBLIEE", "Publiée", "published", "EN_INTERVENTION", ...). Everything that
reads a status from outside goes through this module once; internal code only
compares enum members afterwards.

Two vocabularies are kept apart:

- ``DisplayStatus``: the six coarse values shown to read-side consumers;
- ``MissionStatus``: the fine-grained lifecycle used by the state machine.
"""
from __future__ import annotations

import enum
import logging
import re
import unicodedata
from typing import Any

from mission_dispatch.db.models import MissionStatus

__all__ = [
    "DisplayStatus",
    "DISPLAY_LABELS",
    "normalize_status",
    "display_status",
    "status_label",
]

logger = logging.getLogger(__name__)


class DisplayStatus(str, enum.Enum):
    NEW = "Nouveau"
    PUBLISHED = "Publiée"
    ASSIGNED = "Assignée"
    IN_PROGRESS = "En cours"
    BLOCKED = "Bloqué"
    DONE = "Terminé"


DISPLAY_LABELS: dict[DisplayStatus, str] = {
    DisplayStatus.NEW: "Brouillon",
    DisplayStatus.PUBLISHED: "Publiée",
    DisplayStatus.ASSIGNED: "Assignée",
    DisplayStatus.IN_PROGRESS: "En cours",
    DisplayStatus.BLOCKED: "Bloqué",
    DisplayStatus.DONE: "Terminé",
}

# Keys are folded: no accents, upper case, "_"/"-" read as spaces.
_DISPLAY_SYNONYMS: dict[str, DisplayStatus] = {
    "NOUVEAU": DisplayStatus.NEW,
    "NEW": DisplayStatus.NEW,
    "DRAFT": DisplayStatus.NEW,
    "BROUILLON": DisplayStatus.NEW,
    "BROUILLON INCOMPLET": DisplayStatus.NEW,
    "PUBLIEE": DisplayStatus.PUBLISHED,
    "PUBLIE": DisplayStatus.PUBLISHED,
    "PUBLISHED": DisplayStatus.PUBLISHED,
    "ASSIGNEE": DisplayStatus.ASSIGNED,
    "ASSIGNE": DisplayStatus.ASSIGNED,
    "ASSIGNED": DisplayStatus.ASSIGNED,
    "ACCEPTEE": DisplayStatus.ASSIGNED,
    "ACCEPTED": DisplayStatus.ASSIGNED,
    "PLANIFIEE": DisplayStatus.ASSIGNED,
    "PLANIFIE": DisplayStatus.ASSIGNED,
    "SCHEDULED": DisplayStatus.ASSIGNED,
    "EN COURS": DisplayStatus.IN_PROGRESS,
    "IN PROGRESS": DisplayStatus.IN_PROGRESS,
    "EN ROUTE": DisplayStatus.IN_PROGRESS,
    "EN INTERVENTION": DisplayStatus.IN_PROGRESS,
    "BLOQUE": DisplayStatus.BLOCKED,
    "BLOQUEE": DisplayStatus.BLOCKED,
    "BLOCKED": DisplayStatus.BLOCKED,
    "EN PAUSE": DisplayStatus.BLOCKED,
    "PAUSED": DisplayStatus.BLOCKED,
    "ANNULEE": DisplayStatus.BLOCKED,
    "ANNULE": DisplayStatus.BLOCKED,
    "CANCELLED": DisplayStatus.BLOCKED,
    "CANCELED": DisplayStatus.BLOCKED,
    "TERMINE": DisplayStatus.DONE,
    "TERMINEE": DisplayStatus.DONE,
    "DONE": DisplayStatus.DONE,
    "COMPLETED": DisplayStatus.DONE,
    "FACTURABLE": DisplayStatus.DONE,
    "BILLABLE": DisplayStatus.DONE,
    "FACTUREE": DisplayStatus.DONE,
    "INVOICED": DisplayStatus.DONE,
    "PAYEE": DisplayStatus.DONE,
    "PAID": DisplayStatus.DONE,
    "CLOTUREE": DisplayStatus.DONE,
    "CLOSED": DisplayStatus.DONE,
}

_SEPARATORS = re.compile(r"[\s_\-]+")


def _fold(raw: Any) -> str:
    if isinstance(raw, enum.Enum):
        raw = raw.value
    text = unicodedata.normalize("NFD", str(raw))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _SEPARATORS.sub(" ", text).strip().upper()


def normalize_status(raw: Any) -> DisplayStatus:
    """Map any status spelling onto one of the six display values.

    Total and idempotent: unknown, empty or ``None`` input yields
    ``DisplayStatus.NEW`` and the function never raises.
    """
    if raw is None:
        return DisplayStatus.NEW
    if isinstance(raw, DisplayStatus):
        return raw
    try:
        key = _fold(raw)
    except Exception:
        logger.debug("normalize_status: unfoldable input %r", raw, exc_info=True)
        return DisplayStatus.NEW
    return _DISPLAY_SYNONYMS.get(key, DisplayStatus.NEW)


def display_status(status: MissionStatus) -> DisplayStatus:
    return normalize_status(status)


def status_label(raw: Any) -> str:
    return DISPLAY_LABELS[normalize_status(raw)]

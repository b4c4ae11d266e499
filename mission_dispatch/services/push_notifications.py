"""
Lifecycle notifications queued through the ``notifications_outbox`` table.

The engine only enqueues; delivery is done by ``notifications_worker``.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional, Protocol

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.db import models as m

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    # To candidates
    NEW_OFFER = "new_offer"
    MISSION_ACCEPTED = "mission_accepted"
    MISSION_ASSIGNED = "mission_assigned"
    MISSION_UNASSIGNED = "mission_unassigned"
    MISSION_SCHEDULED = "mission_scheduled"
    MISSION_CANCELLED = "mission_cancelled"
    REPORT_REJECTED = "report_rejected"

    # To operators
    MISSION_PUBLISHED = "mission_published"
    INVOICE_ISSUED = "invoice_issued"
    PAYMENT_RECEIVED = "payment_received"


NOTIFICATION_TEMPLATES: dict[NotificationEvent, str] = {
    NotificationEvent.NEW_OFFER: (
        "🔔 <b>Nouvelle mission #{mission_id}</b>\n\n"
        "{title}\n"
        "📍 {city} ({distance_km} km)\n"
        "⏳ Offre valable jusqu'à {expires_at}"
    ),
    NotificationEvent.MISSION_ACCEPTED: (
        "✅ <b>Mission #{mission_id} acceptée</b>\n\n"
        "Vous êtes assigné(e) à cette mission."
    ),
    NotificationEvent.MISSION_ASSIGNED: (
        "📌 <b>Mission #{mission_id} assignée</b>\n\n"
        "Un opérateur vous a assigné(e) à cette mission."
    ),
    NotificationEvent.MISSION_UNASSIGNED: (
        "↩️ <b>Mission #{mission_id}</b>\n\n"
        "Vous n'êtes plus assigné(e) à cette mission."
    ),
    NotificationEvent.MISSION_SCHEDULED: (
        "🗓 <b>Mission #{mission_id} planifiée</b>\n\n"
        "Début : {start}\n"
        "Fin : {end}"
    ),
    NotificationEvent.MISSION_CANCELLED: (
        "🚫 <b>Mission #{mission_id} annulée</b>\n\n"
        "Cette mission ne sera pas réalisée."
    ),
    NotificationEvent.REPORT_REJECTED: (
        "❌ <b>Rapport refusé, mission #{mission_id}</b>\n\n"
        "Motif : {reason}\n"
        "{details}"
    ),
    NotificationEvent.MISSION_PUBLISHED: (
        "📣 <b>Mission #{mission_id} publiée</b>\n\n"
        "Offres envoyées : {offers_created}"
    ),
    NotificationEvent.INVOICE_ISSUED: (
        "🧾 <b>Facture émise, mission #{mission_id}</b>\n\n"
        "Total : {total} {currency}"
    ),
    NotificationEvent.PAYMENT_RECEIVED: (
        "💶 <b>Paiement reçu, mission #{mission_id}</b>\n\n"
        "Moyen : {method}"
    ),
}


def render_message(event: NotificationEvent, **fields: Any) -> str:
    template = NOTIFICATION_TEMPLATES.get(event) or "Événement : {event}"
    try:
        return template.format(event=event.value, **fields)
    except KeyError as exc:
        logger.error("Template error for %s: missing key %s", event.value, exc)
        return f"Événement : {event.value}"


async def enqueue_notification(
    session: AsyncSession,
    *,
    event: NotificationEvent,
    mission_id: Optional[int] = None,
    recipient_user_id: Optional[int] = None,
    **fields: Any,
) -> None:
    """Insert one outbox row. Does not commit."""
    message = render_message(event, mission_id=mission_id, **fields)
    await session.execute(
        insert(m.notifications_outbox).values(
            event=event.value,
            mission_id=mission_id,
            recipient_user_id=recipient_user_id,
            payload={"message": message, **{k: _jsonable(v) for k, v in fields.items()}},
        )
    )
    logger.info(
        "Queued %s for mission#%s recipient=%s", event.value, mission_id, recipient_user_id
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class Notifier(Protocol):
    async def notify(
        self,
        event: NotificationEvent,
        *,
        mission_id: Optional[int] = None,
        recipient_user_id: Optional[int] = None,
        **fields: Any,
    ) -> None: ...


class OutboxNotifier:
    """Writes events to the outbox in their own short transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def notify(
        self,
        event: NotificationEvent,
        *,
        mission_id: Optional[int] = None,
        recipient_user_id: Optional[int] = None,
        **fields: Any,
    ) -> None:
        await enqueue_notification(
            self.session,
            event=event,
            mission_id=mission_id,
            recipient_user_id=recipient_user_id,
            **fields,
        )
        await self.session.commit()

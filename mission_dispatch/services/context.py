"""Explicit handle threaded through every engine operation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from aiogram import Bot
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.config import Settings, settings as default_settings
from mission_dispatch.infra.notify import send_alert
from mission_dispatch.infra.structured_logging import DispatchEvent, log_dispatch_event
from mission_dispatch.services.change_feed import ChangeFeed
from mission_dispatch.services.push_notifications import (
    NotificationEvent,
    Notifier,
    OutboxNotifier,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchContext:
    session: AsyncSession
    notifier: Optional[Notifier] = None
    feed: Optional[ChangeFeed] = None
    settings: Settings = field(default_factory=lambda: default_settings)
    alert_bot: Optional[Bot] = None

    def __post_init__(self) -> None:
        if self.notifier is None:
            self.notifier = OutboxNotifier(self.session)

    async def emit(
        self,
        event: NotificationEvent,
        *,
        mission_id: Optional[int] = None,
        recipient_user_id: Optional[int] = None,
        **fields: Any,
    ) -> None:
        """Fire-and-forget; call only after the triggering transition committed."""
        try:
            await self.notifier.notify(
                event,
                mission_id=mission_id,
                recipient_user_id=recipient_user_id,
                **fields,
            )
        except Exception as exc:
            logger.warning(
                "notification %s for mission#%s failed", event.value, mission_id, exc_info=True
            )
            if self.session.in_transaction():
                await self.session.rollback()
            log_dispatch_event(
                DispatchEvent.NOTIFICATION_FAILED,
                mission_id=mission_id,
                user_id=recipient_user_id,
                reason=f"{type(exc).__name__}: {exc}",
                details={"notification": event.value},
                level="WARNING",
            )
            await send_alert(
                self.alert_bot,
                f"Notification {event.value} failed for mission #{mission_id}",
                chat_id=self.settings.alerts_channel_id,
                exc=exc,
            )

    async def changed(self, table: str, row_id: int, *, mission_id: Optional[int] = None) -> None:
        if self.feed is not None:
            await self.feed.publish(table, row_id, mission_id=mission_id)

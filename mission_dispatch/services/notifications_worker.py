"""
Drains ``notifications_outbox`` to Telegram.

Candidate events go to the recipient's ``tg_chat_id``; operator events
(no recipient) go to the alerts channel. A row that keeps failing is marked
dead after ``outbox_max_attempts`` and reported once to operators.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from aiogram import Bot
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.config import Settings, settings as default_settings
from mission_dispatch.db import models as m
from mission_dispatch.infra.notify import deliver, send_alert, send_log
from mission_dispatch.services.time_service import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeliveryReport:
    sent: int = 0
    failed: int = 0
    dead: int = 0
    skipped: int = 0


async def deliver_pending(
    session: AsyncSession,
    bot: Optional[Bot],
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> DeliveryReport:
    cfg = settings or default_settings
    now = now or utcnow()
    report = DeliveryReport()

    rows = (
        await session.execute(
            select(m.notifications_outbox, m.profiles.tg_chat_id)
            .outerjoin(m.profiles, m.profiles.id == m.notifications_outbox.recipient_user_id)
            .where(
                m.notifications_outbox.processed_at.is_(None),
                m.notifications_outbox.is_dead.is_(False),
            )
            .order_by(m.notifications_outbox.id)
            .limit(cfg.outbox_batch_size)
        )
    ).all()

    dead_rows: list[m.notifications_outbox] = []
    for row, tg_chat_id in rows:
        chat_id = tg_chat_id if row.recipient_user_id is not None else cfg.alerts_channel_id
        if chat_id is None:
            row.processed_at = now
            row.last_error = "no delivery address"
            report.skipped += 1
            continue

        message = (row.payload or {}).get("message") or row.event
        if await deliver(bot, chat_id, message, escape=False, parse_mode="HTML"):
            row.processed_at = now
            row.last_error = None
            report.sent += 1
            continue

        row.attempts = (row.attempts or 0) + 1
        row.last_error = "delivery failed" if bot is not None else "bot not configured"
        report.failed += 1
        if row.attempts >= cfg.outbox_max_attempts:
            row.is_dead = True
            dead_rows.append(row)
            report.dead += 1

    await session.commit()

    for row in dead_rows:
        logger.error(
            "notification #%s (%s) dead after %s attempts", row.id, row.event, row.attempts
        )
        await send_alert(
            bot,
            f"Notification #{row.id} ({row.event}) for mission #{row.mission_id} "
            f"dropped after {row.attempts} attempts",
            chat_id=cfg.alerts_channel_id,
        )
    if rows:
        logger.info(
            "deliver_pending: sent=%s failed=%s dead=%s skipped=%s",
            report.sent, report.failed, report.dead, report.skipped,
        )
    if report.failed:
        await send_log(
            bot,
            f"Outbox: {report.sent} sent, {report.failed} failed, {report.dead} dead",
            chat_id=cfg.logs_channel_id,
        )
    return report

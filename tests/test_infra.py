"""Structured logging, log setup and Telegram delivery helpers."""
from __future__ import annotations

import json
import logging

import pytest
from aiogram.exceptions import TelegramBadRequest

from mission_dispatch.db import models as m
from mission_dispatch.infra import notify
from mission_dispatch.infra.logging_utils import JsonFormatter, configure_logging
from mission_dispatch.infra.structured_logging import (
    DispatchEvent,
    DispatchLogEntry,
    log_candidate_rejection,
    log_dispatch_event,
)


class RecordingBot:
    def __init__(self, exc=None):
        self.exc = exc
        self.sent = []

    async def send_message(self, chat_id, text, **kwargs):
        if self.exc is not None:
            raise self.exc
        self.sent.append((chat_id, text, kwargs))


def test_log_entry_drops_empty_fields():
    entry = DispatchLogEntry(timestamp="2026-10-19T08:00:00Z", event="transition", mission_id=4)

    assert json.loads(entry.to_json()) == {
        "timestamp": "2026-10-19T08:00:00Z",
        "event": "transition",
        "mission_id": 4,
    }


def test_log_dispatch_event_emits_one_json_line(caplog):
    caplog.set_level(logging.INFO, logger="dispatch.structured")

    log_dispatch_event(
        DispatchEvent.OFFER_ACCEPTED,
        mission_id=12,
        user_id=3,
        from_status=m.MissionStatus.PUBLISHED,
        to_status=m.MissionStatus.ASSIGNED,
        details={"offer_id": 40},
    )

    (record,) = [r for r in caplog.records if r.name == "dispatch.structured"]
    data = json.loads(record.getMessage())
    assert data["event"] == "offer_accepted"
    assert data["from_status"] == "PUBLISHED"
    assert data["to_status"] == "ASSIGNED"
    assert data["details"] == {"offer_id": 40}
    assert data["timestamp"].endswith("Z")


def test_log_candidate_rejection(caplog):
    caplog.set_level(logging.DEBUG, logger="dispatch.candidates")

    log_candidate_rejection(
        mission_id=5,
        user_id=9,
        rejection_reasons=["out_of_radius"],
        candidate_details={"distance_km": 31.2},
    )

    messages = [r.getMessage() for r in caplog.records if r.name == "dispatch.candidates"]
    assert len(messages) == 1
    assert "out_of_radius" in messages[0]


def test_json_formatter_embeds_structured_events():
    record = logging.LogRecord(
        "dispatch.structured", logging.INFO, __file__, 1, '{"event":"transition"}', None, None
    )
    plain = logging.LogRecord("mission_dispatch.x", logging.WARNING, __file__, 1, "hello %s", ("you",), None)

    structured = json.loads(JsonFormatter().format(record))
    text = json.loads(JsonFormatter().format(plain))

    assert structured["event"] == {"event": "transition"}
    assert text["message"] == "hello you"
    assert text["level"] == "WARNING"


def test_configure_logging_replaces_its_own_handler(test_settings):
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging(test_settings.model_copy(update={"log_json": True, "log_level": "debug"}))
        configure_logging(test_settings.model_copy(update={"log_json": True, "log_level": "debug"}))

        ours = [h for h in root.handlers if getattr(h, "_mission_dispatch", False)]
        assert len(ours) == 1
        assert isinstance(ours[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        for handler in [h for h in root.handlers if getattr(h, "_mission_dispatch", False)]:
            root.removeHandler(handler)
        root.setLevel(previous_level)


@pytest.mark.asyncio
async def test_deliver_escapes_and_trims():
    bot = RecordingBot()

    assert await notify.deliver(bot, 10, "<b>" + "x" * 5000) is True

    (chat_id, text, _), = bot.sent
    assert chat_id == 10
    assert text.startswith("&lt;b&gt;")
    assert text.endswith("...")


@pytest.mark.asyncio
async def test_deliver_reports_failures_instead_of_raising():
    assert await notify.deliver(None, 10, "hello") is False
    assert await notify.deliver(RecordingBot(), None, "hello") is False
    assert await notify.deliver(RecordingBot(), 10, "   ") is False
    assert await notify.deliver(RecordingBot(exc=RuntimeError("boom")), 10, "hello") is False
    bad_request = TelegramBadRequest(method=None, message="chat not found")
    assert await notify.deliver(RecordingBot(exc=bad_request), 10, "hello") is False


@pytest.mark.asyncio
async def test_send_alert_includes_exception():
    bot = RecordingBot()
    try:
        raise ValueError("bad coordinates")
    except ValueError as exc:
        await notify.send_alert(bot, "publish failed", chat_id=-1, exc=exc)

    (chat_id, text, _), = bot.sent
    assert chat_id == -1
    assert "publish failed" in text
    assert "ValueError: bad coordinates" in text

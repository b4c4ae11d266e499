"""Work lifecycle from assignment to closure."""
from __future__ import annotations

import json
import logging
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import PARIS, north_of
from mission_dispatch.db import models as m
from mission_dispatch.errors import InvalidTransition, NotFound, ValidationFailed
from mission_dispatch.services import billing_service, manual_assign
from mission_dispatch.services import lifecycle as lifecycle_module
from mission_dispatch.services.lifecycle import TRANSITIONS, MissionLifecycle, apply_transition
from mission_dispatch.services.offers_broadcast import publish_mission
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.status_map import DisplayStatus, display_status
from mission_dispatch.services.time_service import ensure_utc, utcnow


@pytest.fixture
def lifecycle(ctx):
    return MissionLifecycle(ctx)


def _next_morning():
    return (utcnow() + timedelta(days=1)).replace(hour=8, minute=30, second=0, microsecond=0)


async def _assigned(ctx, make_profile, make_mission, **mission_kwargs):
    tech = await make_profile()
    mission = await make_mission(**mission_kwargs)
    await manual_assign.assign(ctx, mission.id, tech.id)
    return mission, tech


async def _operations(session, mission_id):
    rows = await session.execute(
        select(m.mission_status_history.operation)
        .where(m.mission_status_history.mission_id == mission_id)
        .order_by(m.mission_status_history.id)
    )
    return list(rows.scalars())


@pytest.mark.asyncio
async def test_happy_path_to_closed(ctx, async_session, lifecycle, make_profile, make_mission):
    mission, tech = await _assigned(ctx, make_profile, make_mission, estimated_duration_min=90)
    start = _next_morning()

    scheduled = await lifecycle.schedule(mission.id, start)
    assert scheduled.status == m.MissionStatus.SCHEDULED
    assert ensure_utc(scheduled.scheduled_start) == start
    assert ensure_utc(scheduled.scheduled_end) == start + timedelta(minutes=90)
    assert display_status(scheduled.status) is DisplayStatus.ASSIGNED

    en_route = await lifecycle.start_travel(mission.id, actor_id=tech.id)
    assert en_route.status == m.MissionStatus.EN_ROUTE
    assert display_status(en_route.status) is DisplayStatus.IN_PROGRESS

    working = await lifecycle.start_work(mission.id, actor_id=tech.id)
    assert working.status == m.MissionStatus.IN_PROGRESS

    paused = await lifecycle.pause(mission.id, "Missing_Parts", "joint introuvable")
    assert paused.status == m.MissionStatus.PAUSED
    assert paused.pause_reason == m.PauseReason.MISSING_PARTS
    assert paused.pause_note == "joint introuvable"
    assert display_status(paused.status) is DisplayStatus.BLOCKED

    resumed = await lifecycle.resume(mission.id)
    assert resumed.status == m.MissionStatus.IN_PROGRESS
    assert resumed.pause_reason is None

    done = await lifecycle.complete(mission.id, actor_id=tech.id)
    assert done.status == m.MissionStatus.COMPLETED
    assert done.completed_at is not None
    assert done.report_status == m.ReportStatus.PENDING_REVIEW

    validated = await lifecycle.validate_report(mission.id)
    assert validated.status == m.MissionStatus.BILLABLE
    assert validated.billing_status == m.BillingStatus.BILLABLE

    await billing_service.issue_invoice(
        ctx, mission.id, [{"description": "Main d'oeuvre", "unit_price_minor": 25000}]
    )
    await billing_service.mark_paid(ctx, mission.id, "virement", "VIR-2026-118")
    closed = await lifecycle.close(mission.id)

    assert closed.status == m.MissionStatus.CLOSED
    assert closed.assigned_user_id == tech.id
    assert display_status(closed.status) is DisplayStatus.DONE
    assert await _operations(async_session, mission.id) == [
        "assign",
        "schedule",
        "start_travel",
        "start_work",
        "pause",
        "resume",
        "complete",
        "validate_report",
        "invoice",
        "mark_paid",
        "close",
    ]


@pytest.mark.asyncio
async def test_history_records_actor_and_statuses(ctx, async_session, lifecycle, make_profile, make_mission):
    mission, tech = await _assigned(ctx, make_profile, make_mission)
    await lifecycle.schedule(mission.id, _next_morning())
    await lifecycle.start_work(mission.id, actor_id=tech.id)

    last = (
        await async_session.execute(
            select(m.mission_status_history)
            .where(m.mission_status_history.mission_id == mission.id)
            .order_by(m.mission_status_history.id.desc())
            .limit(1)
        )
    ).scalar_one()
    assert last.from_status == m.MissionStatus.SCHEDULED
    assert last.to_status == m.MissionStatus.IN_PROGRESS
    assert last.actor_type == m.ActorType.CANDIDATE
    assert last.actor_id == tech.id
    assert last.created_at is not None


@pytest.mark.asyncio
async def test_version_increments_per_transition(ctx, async_session, lifecycle, make_profile, make_mission):
    mission, _ = await _assigned(ctx, make_profile, make_mission)
    before = (await async_session.get(m.missions, mission.id, populate_existing=True)).version

    after = await lifecycle.schedule(mission.id, _next_morning())

    assert after.version == before + 1


@pytest.mark.asyncio
async def test_schedule_explicit_window(ctx, lifecycle, notifier, make_profile, make_mission):
    mission, tech = await _assigned(ctx, make_profile, make_mission)
    start = _next_morning()

    scheduled = await lifecycle.schedule(mission.id, start, start + timedelta(hours=3))

    assert ensure_utc(scheduled.scheduled_end) - ensure_utc(scheduled.scheduled_start) == timedelta(hours=3)
    sent = notifier.of(NotificationEvent.MISSION_SCHEDULED)
    assert [(e[1], e[2]) for e in sent] == [(mission.id, tech.id)]

    rescheduled = await lifecycle.schedule(mission.id, start + timedelta(days=1))
    assert rescheduled.status == m.MissionStatus.SCHEDULED


@pytest.mark.asyncio
async def test_schedule_rejects_inverted_window(ctx, lifecycle, make_profile, make_mission):
    mission, _ = await _assigned(ctx, make_profile, make_mission)
    start = _next_morning()

    with pytest.raises(ValidationFailed):
        await lifecycle.schedule(mission.id, start, start)
    with pytest.raises(ValidationFailed):
        await lifecycle.schedule(mission.id, start, start - timedelta(minutes=1))


@pytest.mark.asyncio
async def test_schedule_needs_an_assignee(lifecycle, make_mission):
    mission = await make_mission()

    with pytest.raises(InvalidTransition) as exc_info:
        await lifecycle.schedule(mission.id, _next_morning())
    assert exc_info.value.operation == "schedule"
    assert exc_info.value.code == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_illegal_transitions_leave_state_untouched(
    ctx, async_session, lifecycle, make_profile, make_mission
):
    mission, _ = await _assigned(ctx, make_profile, make_mission)

    with pytest.raises(InvalidTransition):
        await lifecycle.start_travel(mission.id)
    with pytest.raises(InvalidTransition):
        await lifecycle.complete(mission.id)
    with pytest.raises(InvalidTransition):
        await lifecycle.close(mission.id)
    with pytest.raises(InvalidTransition):
        await lifecycle.pause(mission.id, "safety")

    current = await async_session.get(m.missions, mission.id, populate_existing=True)
    assert current.status == m.MissionStatus.ASSIGNED
    assert await _operations(async_session, mission.id) == ["assign"]


@pytest.mark.asyncio
async def test_in_progress_without_assignee_cannot_complete(lifecycle, make_mission):
    mission = await make_mission(status=m.MissionStatus.IN_PROGRESS)

    with pytest.raises(InvalidTransition, match="no assignee"):
        await lifecycle.complete(mission.id)


@pytest.mark.asyncio
async def test_unknown_mission(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.start_work(424242)


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["weather", "", None])
async def test_pause_requires_known_reason(ctx, lifecycle, make_profile, make_mission, reason):
    mission, _ = await _assigned(ctx, make_profile, make_mission)
    await lifecycle.schedule(mission.id, _next_morning())
    await lifecycle.start_work(mission.id)

    with pytest.raises(ValidationFailed):
        await lifecycle.pause(mission.id, reason)


@pytest.mark.asyncio
async def test_reject_report_sends_work_back(
    ctx, lifecycle, notifier, make_profile, make_mission
):
    mission, tech = await _assigned(ctx, make_profile, make_mission)
    await lifecycle.schedule(mission.id, _next_morning())
    await lifecycle.start_work(mission.id)
    await lifecycle.complete(mission.id)

    with pytest.raises(ValidationFailed):
        await lifecycle.reject_report(mission.id, "   ")

    rejected = await lifecycle.reject_report(mission.id, "Photos manquantes", "ajouter l'après")

    assert rejected.status == m.MissionStatus.IN_PROGRESS
    assert rejected.report_status == m.ReportStatus.REJECTED
    assert rejected.report_rejection_reason == "Photos manquantes"
    assert rejected.completed_at is None
    sent = notifier.of(NotificationEvent.REPORT_REJECTED)
    assert sent[0][2] == tech.id
    assert sent[0][3]["reason"] == "Photos manquantes"

    again = await lifecycle.complete(mission.id)
    assert again.report_status == m.ReportStatus.PENDING_REVIEW
    assert again.report_rejection_reason is None


@pytest.mark.asyncio
async def test_cancel_published_mission_voids_offers(
    ctx, async_session, lifecycle, notifier, make_profile, make_mission
):
    await make_profile(lat=north_of(PARIS[0], 2.0))
    await make_profile(lat=north_of(PARIS[0], 5.0))
    mission = await make_mission()
    await publish_mission(ctx, mission.id)

    cancelled = await lifecycle.cancel(mission.id)

    assert cancelled.status == m.MissionStatus.CANCELLED
    states = (
        await async_session.execute(
            select(m.mission_offers.state).where(m.mission_offers.mission_id == mission.id)
        )
    ).scalars().all()
    assert states == [m.OfferState.CANCELED, m.OfferState.CANCELED]
    assert notifier.of(NotificationEvent.MISSION_CANCELLED) == []


@pytest.mark.asyncio
async def test_cancel_assigned_mission_keeps_assignee_and_notifies(
    ctx, lifecycle, notifier, make_profile, make_mission
):
    mission, tech = await _assigned(ctx, make_profile, make_mission)

    cancelled = await lifecycle.cancel(mission.id)

    assert cancelled.status == m.MissionStatus.CANCELLED
    assert cancelled.assigned_user_id == tech.id
    assert [e[2] for e in notifier.of(NotificationEvent.MISSION_CANCELLED)] == [tech.id]
    assert display_status(cancelled.status) is DisplayStatus.BLOCKED

    with pytest.raises(InvalidTransition):
        await lifecycle.cancel(mission.id)


@pytest.mark.asyncio
async def test_only_reject_report_takes_free_text(ctx, async_session, lifecycle, make_profile, make_mission):
    mission, _ = await _assigned(ctx, make_profile, make_mission)

    with pytest.raises(TypeError):
        await lifecycle.cancel(mission.id, "le client a changé d'avis")
    with pytest.raises(TypeError):
        await manual_assign.unassign(ctx, mission.id, reason="erreur de saisie")
    assert not hasattr(m.missions, "cancel_reason")

    await lifecycle.cancel(mission.id)

    reasons = (
        await async_session.execute(
            select(m.mission_status_history.operation, m.mission_status_history.reason)
            .where(m.mission_status_history.mission_id == mission.id)
            .order_by(m.mission_status_history.id)
        )
    ).all()
    assert reasons[-1] == ("cancel", None)


@pytest.mark.asyncio
async def test_concurrent_modification_is_reported(ctx, async_session, make_profile, make_mission):
    mission, _ = await _assigned(ctx, make_profile, make_mission)

    with pytest.raises(InvalidTransition, match="modified concurrently"):
        await apply_transition(
            async_session,
            mission.id,
            "schedule",
            values={"scheduled_start": _next_morning()},
            extra_conditions=(m.missions.assigned_user_id == -1,),
        )
    await async_session.rollback()


def test_every_state_except_terminal_can_be_cancelled():
    cancellable = TRANSITIONS["cancel"].sources
    assert m.MissionStatus.CLOSED not in cancellable
    assert m.MissionStatus.CANCELLED not in cancellable
    assert len(cancellable) == len(m.MissionStatus) - 2


@pytest.mark.asyncio
async def test_unexpected_failure_rolls_back_and_logs_error(
    caplog, monkeypatch, ctx, async_session, lifecycle, make_profile, make_mission
):
    async def _broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(lifecycle_module, "void_live_offers", _broken)
    caplog.set_level(logging.INFO, logger="dispatch.structured")
    mission, _ = await _assigned(ctx, make_profile, make_mission)

    with pytest.raises(RuntimeError):
        await lifecycle.cancel(mission.id)

    errors = [
        json.loads(r.getMessage())
        for r in caplog.records
        if r.name == "dispatch.structured" and r.levelno == logging.ERROR
    ]
    assert [(e["event"], e["reason"]) for e in errors] == [("error", "cancel: disk full")]
    current = await async_session.get(m.missions, mission.id, populate_existing=True)
    assert current.status == m.MissionStatus.ASSIGNED

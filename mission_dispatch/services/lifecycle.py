"""
Mission work lifecycle.

Every status change goes through :func:`apply_transition`: one conditional
UPDATE guarded by the expected status and ``version`` plus one history row,
inside the caller's transaction. Nothing is committed here except by
:class:`MissionLifecycle`, which wraps each command in its own unit of work.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import ColumnElement, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.db import models as m
from mission_dispatch.errors import DispatchError, InvalidTransition, NotFound, ValidationFailed
from mission_dispatch.infra.structured_logging import DispatchEvent, log_dispatch_event
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.time_service import ensure_utc, utcnow

logger = logging.getLogger(__name__)

S = m.MissionStatus


@dataclass(frozen=True, slots=True)
class Transition:
    name: str
    sources: frozenset[m.MissionStatus]
    target: Optional[m.MissionStatus]  # None keeps the current status
    requires_assignee: bool = False


def _t(name: str, sources: Iterable[S], target: Optional[S], requires_assignee: bool = False) -> Transition:
    return Transition(name, frozenset(sources), target, requires_assignee)


IN_FLIGHT = (S.ASSIGNED, S.SCHEDULED, S.EN_ROUTE, S.IN_PROGRESS, S.PAUSED)
TERMINAL = frozenset({S.CLOSED, S.CANCELLED})

TRANSITIONS: dict[str, Transition] = {
    t.name: t
    for t in (
        _t("publish", (S.DRAFT, S.PUBLISHED), S.PUBLISHED),
        _t("assign", (S.DRAFT, S.PUBLISHED), S.ASSIGNED),
        _t("accept", (S.PUBLISHED,), S.ASSIGNED),
        _t("unassign", (S.ASSIGNED, S.SCHEDULED), S.PUBLISHED, True),
        _t("reassign", IN_FLIGHT, None, True),
        _t("schedule", (S.ASSIGNED, S.SCHEDULED), S.SCHEDULED, True),
        _t("start_travel", (S.SCHEDULED,), S.EN_ROUTE, True),
        _t("start_work", (S.SCHEDULED, S.EN_ROUTE), S.IN_PROGRESS, True),
        _t("pause", (S.IN_PROGRESS,), S.PAUSED, True),
        _t("resume", (S.PAUSED,), S.IN_PROGRESS, True),
        _t("complete", (S.IN_PROGRESS,), S.COMPLETED, True),
        _t("validate_report", (S.COMPLETED,), S.BILLABLE, True),
        _t("reject_report", (S.COMPLETED,), S.IN_PROGRESS, True),
        _t("invoice", (S.COMPLETED, S.BILLABLE), S.INVOICED, True),
        _t("mark_paid", (S.INVOICED,), S.PAID, True),
        _t("close", (S.PAID,), S.CLOSED, True),
        _t("cancel", frozenset(S) - TERMINAL, S.CANCELLED),
    )
}


@dataclass(frozen=True, slots=True)
class TransitionResult:
    mission_id: int
    from_status: m.MissionStatus
    to_status: m.MissionStatus
    assigned_user_id: Optional[int]
    version: int


async def apply_transition(
    session: AsyncSession,
    mission_id: int,
    name: str,
    *,
    values: Optional[Mapping[str, Any]] = None,
    actor_type: m.ActorType = m.ActorType.SYSTEM,
    actor_id: Optional[int] = None,
    reason: Optional[str] = None,
    context: Optional[dict[str, Any]] = None,
    extra_conditions: Iterable[ColumnElement[bool]] = (),
) -> TransitionResult:
    """Move *mission_id* through transition *name* without committing.

    Raises ``NotFound`` or ``InvalidTransition``. A concurrent writer that
    bumped ``version`` in between also yields ``InvalidTransition``.
    """
    transition = TRANSITIONS[name]
    row = (
        await session.execute(
            select(
                m.missions.status,
                m.missions.version,
                m.missions.assigned_user_id,
            ).where(m.missions.id == mission_id)
        )
    ).first()
    if row is None:
        raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)

    current_status, current_version, assignee = row.status, row.version or 1, row.assigned_user_id
    if current_status not in transition.sources:
        raise InvalidTransition(name, current_status)
    if transition.requires_assignee and assignee is None:
        raise InvalidTransition(name, current_status, "Mission has no assignee")

    target = transition.target or current_status
    new_values = dict(values or {})
    updated = await session.execute(
        update(m.missions)
        .where(
            m.missions.id == mission_id,
            m.missions.status == current_status,
            m.missions.version == current_version,
            *extra_conditions,
        )
        .values(status=target, version=current_version + 1, **new_values)
        .returning(m.missions.assigned_user_id, m.missions.version)
        .execution_options(synchronize_session=False)
    )
    written = updated.first()
    if written is None:
        logger.warning(
            "%s: mission=%s changed concurrently (expected status=%s version=%s)",
            name, mission_id, current_status.value, current_version,
        )
        raise InvalidTransition(
            name, current_status, f"Mission {mission_id} was modified concurrently"
        )

    await session.execute(
        insert(m.mission_status_history).values(
            mission_id=mission_id,
            from_status=current_status,
            to_status=target,
            operation=name,
            reason=reason,
            actor_type=actor_type,
            actor_id=actor_id,
            context=context or {},
        )
    )
    return TransitionResult(
        mission_id=mission_id,
        from_status=current_status,
        to_status=target,
        assigned_user_id=written.assigned_user_id,
        version=written.version,
    )


async def void_live_offers(
    session: AsyncSession,
    mission_id: int,
    *,
    now: datetime,
    keep_user_id: Optional[int] = None,
) -> int:
    """Cancel every still-SENT offer of the mission, except *keep_user_id*'s."""
    conditions = [
        m.mission_offers.mission_id == mission_id,
        m.mission_offers.state == m.OfferState.SENT,
    ]
    if keep_user_id is not None:
        conditions.append(m.mission_offers.candidate_user_id != keep_user_id)
    result = await session.execute(
        update(m.mission_offers)
        .where(*conditions)
        .values(state=m.OfferState.CANCELED, voided_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _coerce_pause_reason(reason: Any) -> m.PauseReason:
    if isinstance(reason, m.PauseReason):
        return reason
    try:
        return m.PauseReason(str(reason).strip().lower())
    except ValueError:
        allowed = ", ".join(r.value for r in m.PauseReason)
        raise ValidationFailed(f"Unknown pause reason {reason!r}; expected one of: {allowed}") from None


class MissionLifecycle:
    """Operator and assignee commands on the work lifecycle."""

    def __init__(self, ctx: DispatchContext):
        self.ctx = ctx
        self.session = ctx.session

    async def _run(
        self,
        mission_id: int,
        name: str,
        *,
        values: Optional[Mapping[str, Any]] = None,
        actor_type: m.ActorType = m.ActorType.ADMIN,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        before_commit=None,
    ) -> TransitionResult:
        logger.info("%s START: mission=%s", name, mission_id)
        try:
            result = await apply_transition(
                self.session,
                mission_id,
                name,
                values=values,
                actor_type=actor_type,
                actor_id=actor_id,
                reason=reason,
                context=context,
            )
            if before_commit is not None:
                await before_commit(result)
            await self.session.commit()
        except DispatchError:
            await self.session.rollback()
            raise
        except Exception as exc:
            await self.session.rollback()
            logger.exception("%s: mission=%s failed", name, mission_id)
            log_dispatch_event(
                DispatchEvent.ERROR, mission_id=mission_id, reason=f"{name}: {exc}", level="ERROR"
            )
            raise

        log_dispatch_event(
            DispatchEvent.TRANSITION,
            mission_id=mission_id,
            user_id=result.assigned_user_id,
            from_status=result.from_status,
            to_status=result.to_status,
            reason=reason,
            details={"operation": name},
        )
        await self.ctx.changed("missions", mission_id, mission_id=mission_id)
        return result

    async def _reload(self, mission_id: int) -> m.missions:
        mission = await self.session.get(m.missions, mission_id, populate_existing=True)
        if mission is None:
            raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
        return mission

    async def schedule(
        self,
        mission_id: int,
        start: datetime,
        end: Optional[datetime] = None,
        *,
        actor_id: Optional[int] = None,
    ) -> m.missions:
        if start is None:
            raise ValidationFailed("Schedule start is required")
        start = ensure_utc(start)
        if end is None:
            duration = (
                await self.session.execute(
                    select(m.missions.estimated_duration_min).where(m.missions.id == mission_id)
                )
            ).scalar_one_or_none()
            if duration:
                end = start + timedelta(minutes=duration)
        else:
            end = ensure_utc(end)
            if end <= start:
                raise ValidationFailed("Schedule end must be after start")

        result = await self._run(
            mission_id,
            "schedule",
            values={"scheduled_start": start, "scheduled_end": end},
            actor_id=actor_id,
            context={"start": start.isoformat(), "end": end.isoformat() if end else None},
        )
        await self.ctx.emit(
            NotificationEvent.MISSION_SCHEDULED,
            mission_id=mission_id,
            recipient_user_id=result.assigned_user_id,
            start=start,
            end=end or "-",
        )
        return await self._reload(mission_id)

    async def start_travel(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        await self._run(mission_id, "start_travel", actor_type=m.ActorType.CANDIDATE, actor_id=actor_id)
        return await self._reload(mission_id)

    async def start_work(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        await self._run(mission_id, "start_work", actor_type=m.ActorType.CANDIDATE, actor_id=actor_id)
        return await self._reload(mission_id)

    async def pause(
        self,
        mission_id: int,
        reason: Any,
        note: Optional[str] = None,
        *,
        actor_id: Optional[int] = None,
    ) -> m.missions:
        pause_reason = _coerce_pause_reason(reason)
        await self._run(
            mission_id,
            "pause",
            values={"pause_reason": pause_reason, "pause_note": note},
            actor_type=m.ActorType.CANDIDATE,
            actor_id=actor_id,
            context={"pause_reason": pause_reason.value, "note": note},
        )
        return await self._reload(mission_id)

    async def resume(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        await self._run(
            mission_id,
            "resume",
            values={"pause_reason": None, "pause_note": None},
            actor_type=m.ActorType.CANDIDATE,
            actor_id=actor_id,
        )
        return await self._reload(mission_id)

    async def complete(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        await self._run(
            mission_id,
            "complete",
            values={
                "completed_at": utcnow(),
                "report_status": m.ReportStatus.PENDING_REVIEW,
                "report_rejection_reason": None,
                "report_rejection_details": None,
            },
            actor_type=m.ActorType.CANDIDATE,
            actor_id=actor_id,
        )
        return await self._reload(mission_id)

    async def validate_report(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        await self._run(
            mission_id,
            "validate_report",
            values={
                "report_status": m.ReportStatus.VALIDATED,
                "billing_status": m.BillingStatus.BILLABLE,
            },
            actor_id=actor_id,
        )
        return await self._reload(mission_id)

    async def reject_report(
        self,
        mission_id: int,
        reason: str,
        details: Optional[str] = None,
        *,
        actor_id: Optional[int] = None,
    ) -> m.missions:
        if not reason or not reason.strip():
            raise ValidationFailed("A reason is required to reject a report")
        reason = reason.strip()
        result = await self._run(
            mission_id,
            "reject_report",
            values={
                "report_status": m.ReportStatus.REJECTED,
                "report_rejection_reason": reason,
                "report_rejection_details": details,
                "completed_at": None,
            },
            actor_id=actor_id,
            reason=reason,
            context={"details": details} if details else None,
        )
        await self.ctx.emit(
            NotificationEvent.REPORT_REJECTED,
            mission_id=mission_id,
            recipient_user_id=result.assigned_user_id,
            reason=reason,
            details=details or "",
        )
        return await self._reload(mission_id)

    async def close(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        await self._run(mission_id, "close", actor_id=actor_id)
        return await self._reload(mission_id)

    async def cancel(self, mission_id: int, *, actor_id: Optional[int] = None) -> m.missions:
        now = utcnow()

        async def _void(result: TransitionResult) -> None:
            voided = await void_live_offers(self.session, mission_id, now=now)
            if voided:
                logger.info("cancel: mission=%s voided %s live offers", mission_id, voided)

        result = await self._run(mission_id, "cancel", actor_id=actor_id, before_commit=_void)
        if result.assigned_user_id is not None:
            await self.ctx.emit(
                NotificationEvent.MISSION_CANCELLED,
                mission_id=mission_id,
                recipient_user_id=result.assigned_user_id,
            )
        return await self._reload(mission_id)

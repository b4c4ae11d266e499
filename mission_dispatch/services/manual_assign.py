"""
Operator assignment path.

``assign`` bypasses offers and eligibility, except for the radius check
which needs an explicit ``override_radius=True``. Every still-live offer of
the mission is voided once an assignee is set, whatever the path.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.db import models as m
from mission_dispatch.errors import (
    AlreadyAssigned,
    DispatchError,
    InvalidTransition,
    NotFound,
    OutOfRadius,
    ValidationFailed,
)
from mission_dispatch.infra.structured_logging import DispatchEvent, log_dispatch_event
from mission_dispatch.services.candidates import ASSIGNABLE_ROLES
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.geo import (
    GeoPoint,
    distance_km,
    effective_radius,
    is_within_radius,
    resolve_position,
)
from mission_dispatch.services.lifecycle import TRANSITIONS, apply_transition, void_live_offers
from mission_dispatch.services.offers_broadcast import live_offer_conditions
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.time_service import ensure_utc, utcnow

_log = logging.getLogger(__name__)


async def _load_mission_row(session: AsyncSession, mission_id: int):
    row = (
        await session.execute(
            select(
                m.missions.id,
                m.missions.status,
                m.missions.assigned_user_id,
                m.missions.lat,
                m.missions.lng,
            ).where(m.missions.id == mission_id)
        )
    ).first()
    if row is None:
        raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
    return row


async def _load_assignable_user(session: AsyncSession, user_id: int) -> m.profiles:
    profile = await session.get(m.profiles, user_id)
    if profile is None:
        raise NotFound(f"User {user_id} not found", user_id=user_id)
    if profile.role not in ASSIGNABLE_ROLES:
        raise ValidationFailed(
            f"User {user_id} has role {profile.role.value} and cannot be assigned missions",
            user_id=user_id,
        )
    return profile


async def _check_radius(
    ctx: DispatchContext,
    mission_row,
    profile: m.profiles,
    *,
    override_radius: bool,
    now: datetime,
) -> Optional[float]:
    """Distance to the mission, or ``None`` when it cannot be computed."""
    if mission_row.lat is None or mission_row.lng is None:
        _log.warning("manual_assign: mission=%s has no coordinates, radius not checked", mission_row.id)
        return None
    live = await ctx.session.get(m.person_locations, profile.id)
    position, _source = resolve_position(
        profile.location_mode,
        fixed_lat=profile.lat,
        fixed_lng=profile.lng,
        live_lat=live.lat if live is not None else None,
        live_lng=live.lng if live is not None else None,
        live_updated_at=ensure_utc(live.updated_at) if live is not None else None,
        max_live_age=timedelta(minutes=ctx.settings.gps_max_age_minutes),
        now=now,
    )
    if position is None:
        _log.warning("manual_assign: user=%s has no position, radius not checked", profile.id)
        return None
    distance = distance_km(GeoPoint(mission_row.lat, mission_row.lng), position)
    radius = effective_radius(profile.radius_km, ctx.settings.default_radius_km)
    if not is_within_radius(distance, radius):
        if not override_radius:
            raise OutOfRadius(distance, radius)
        _log.info(
            "manual_assign: user=%s is %.1f km away (radius %.1f), override confirmed",
            profile.id, distance, radius,
        )
    return distance


async def _release_accepted_offer(session: AsyncSession, mission_id: int, *, now: datetime) -> None:
    # clears accepted_at so the one-accepted-offer index allows the next winner
    await session.execute(
        update(m.mission_offers)
        .where(
            m.mission_offers.mission_id == mission_id,
            m.mission_offers.accepted_at.is_not(None),
        )
        .values(state=m.OfferState.CANCELED, accepted_at=None, voided_at=now)
        .execution_options(synchronize_session=False)
    )


async def assign(
    ctx: DispatchContext,
    mission_id: int,
    user_id: int,
    *,
    override_radius: bool = False,
    staff_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> m.missions:
    """Assign *user_id* to an unassigned mission on behalf of an operator."""
    session = ctx.session
    now = now or utcnow()
    _log.info(
        "manual_assign START: mission=%s user=%s staff=%s override=%s",
        mission_id, user_id, staff_id, override_radius,
    )
    try:
        row = await _load_mission_row(session, mission_id)
        if row.assigned_user_id is not None:
            raise AlreadyAssigned(
                f"Mission {mission_id} is already assigned to user {row.assigned_user_id}",
                mission_id=mission_id,
            )
        if row.status not in TRANSITIONS["assign"].sources:
            raise InvalidTransition("assign", row.status)
        profile = await _load_assignable_user(session, user_id)
        distance = await _check_radius(
            ctx, row, profile, override_radius=override_radius, now=now
        )

        try:
            result = await apply_transition(
                session,
                mission_id,
                "assign",
                values={"assigned_user_id": user_id, "accepted_at": now},
                actor_type=m.ActorType.ADMIN,
                actor_id=staff_id,
                reason="manual_assign",
                context={
                    "user_id": user_id,
                    "distance_km": round(distance, 3) if distance is not None else None,
                    "override_radius": override_radius,
                },
                extra_conditions=(m.missions.assigned_user_id.is_(None),),
            )
        except InvalidTransition:
            # lost to a concurrent accept or assign
            current = await _load_mission_row(session, mission_id)
            if current.assigned_user_id is not None:
                raise AlreadyAssigned(
                    f"Mission {mission_id} was assigned concurrently", mission_id=mission_id
                ) from None
            raise

        own_offer_id = (
            await session.execute(
                select(m.mission_offers.id)
                .where(
                    m.mission_offers.mission_id == mission_id,
                    m.mission_offers.candidate_user_id == user_id,
                    *live_offer_conditions(now),
                )
                .order_by(m.mission_offers.created_at.desc(), m.mission_offers.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if own_offer_id is not None:
            await session.execute(
                update(m.mission_offers)
                .where(m.mission_offers.id == own_offer_id)
                .values(state=m.OfferState.ACCEPTED, accepted_at=now)
                .execution_options(synchronize_session=False)
            )
        voided = await void_live_offers(session, mission_id, now=now)
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise
    except Exception:
        await session.rollback()
        _log.exception("manual_assign: mission=%s user=%s failed", mission_id, user_id)
        raise

    _log.info("manual_assign OK: mission=%s user=%s voided=%s", mission_id, user_id, voided)
    log_dispatch_event(
        DispatchEvent.MANUAL_ASSIGN,
        mission_id=mission_id,
        user_id=user_id,
        from_status=result.from_status,
        to_status=result.to_status,
        details={
            "staff_id": staff_id,
            "override_radius": override_radius,
            "voided_offers": voided,
        },
    )
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    await ctx.emit(
        NotificationEvent.MISSION_ASSIGNED,
        mission_id=mission_id,
        recipient_user_id=user_id,
    )
    return await session.get(m.missions, mission_id, populate_existing=True)


async def unassign(
    ctx: DispatchContext,
    mission_id: int,
    *,
    staff_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> m.missions:
    """Return an Assigned/Scheduled mission to Published with no assignee."""
    session = ctx.session
    now = now or utcnow()
    _log.info("unassign START: mission=%s staff=%s", mission_id, staff_id)
    try:
        previous = (await _load_mission_row(session, mission_id)).assigned_user_id
        result = await apply_transition(
            session,
            mission_id,
            "unassign",
            values={
                "assigned_user_id": None,
                "accepted_at": None,
                "scheduled_start": None,
                "scheduled_end": None,
            },
            actor_type=m.ActorType.ADMIN,
            actor_id=staff_id,
            reason="unassign",
            context={"previous_user_id": previous},
            extra_conditions=(m.missions.assigned_user_id == previous,),
        )
        await _release_accepted_offer(session, mission_id, now=now)
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise

    log_dispatch_event(
        DispatchEvent.UNASSIGN,
        mission_id=mission_id,
        user_id=previous,
        from_status=result.from_status,
        to_status=result.to_status,
        reason="unassign",
    )
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    if previous is not None:
        await ctx.emit(
            NotificationEvent.MISSION_UNASSIGNED,
            mission_id=mission_id,
            recipient_user_id=previous,
        )
    return await session.get(m.missions, mission_id, populate_existing=True)


async def reassign(
    ctx: DispatchContext,
    mission_id: int,
    user_id: int,
    *,
    override_radius: bool = False,
    staff_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> m.missions:
    """Replace the assignee of an in-flight mission, keeping its status."""
    session = ctx.session
    now = now or utcnow()
    _log.info("reassign START: mission=%s user=%s staff=%s", mission_id, user_id, staff_id)
    try:
        row = await _load_mission_row(session, mission_id)
        if row.status not in TRANSITIONS["reassign"].sources:
            raise InvalidTransition("reassign", row.status)
        previous = row.assigned_user_id
        if previous == user_id:
            raise ValidationFailed(f"User {user_id} is already the assignee", mission_id=mission_id)
        profile = await _load_assignable_user(session, user_id)
        distance = await _check_radius(
            ctx, row, profile, override_radius=override_radius, now=now
        )
        await apply_transition(
            session,
            mission_id,
            "reassign",
            values={"assigned_user_id": user_id, "accepted_at": now},
            actor_type=m.ActorType.ADMIN,
            actor_id=staff_id,
            reason="reassign",
            context={
                "previous_user_id": previous,
                "user_id": user_id,
                "distance_km": round(distance, 3) if distance is not None else None,
                "override_radius": override_radius,
            },
            extra_conditions=(m.missions.assigned_user_id == previous,),
        )
        await _release_accepted_offer(session, mission_id, now=now)
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise

    log_dispatch_event(
        DispatchEvent.MANUAL_ASSIGN,
        mission_id=mission_id,
        user_id=user_id,
        reason="reassign",
        details={"previous_user_id": previous, "staff_id": staff_id},
    )
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    await ctx.emit(
        NotificationEvent.MISSION_ASSIGNED,
        mission_id=mission_id,
        recipient_user_id=user_id,
    )
    if previous is not None:
        await ctx.emit(
            NotificationEvent.MISSION_UNASSIGNED,
            mission_id=mission_id,
            recipient_user_id=previous,
        )
    return await session.get(m.missions, mission_id, populate_existing=True)

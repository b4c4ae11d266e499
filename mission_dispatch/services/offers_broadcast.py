"""
Geofenced offer broadcast.

``publish_mission`` moves a mission to PUBLISHED and writes one time-bounded
offer per eligible candidate. Re-publishing only adds offers for candidates
who do not already hold a live one.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import insert, select

from mission_dispatch.db import models as m
from mission_dispatch.errors import DispatchError, InvalidTransition, NotFound, ValidationFailed
from mission_dispatch.infra.structured_logging import DispatchEvent, log_dispatch_event
from mission_dispatch.services.candidates import (
    CandidateSnapshot,
    evaluate_candidates,
    load_candidate_pool,
)
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.geo import GeoPoint
from mission_dispatch.services.lifecycle import apply_transition
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.time_service import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PublishResult:
    mission_id: int
    expires_at: datetime
    offered_user_ids: list[int] = field(default_factory=list)
    skipped_live_user_ids: list[int] = field(default_factory=list)
    offer_ids: list[int] = field(default_factory=list)
    eligible: list[CandidateSnapshot] = field(default_factory=list)

    @property
    def offers_created(self) -> int:
        return len(self.offered_user_ids)


def live_offer_conditions(now: datetime):
    """SQL conditions for an offer that can still be accepted at *now*."""
    return (
        m.mission_offers.state == m.OfferState.SENT,
        m.mission_offers.accepted_at.is_(None),
        m.mission_offers.refused_at.is_(None),
        m.mission_offers.voided_at.is_(None),
        m.mission_offers.expires_at > now,
    )


async def publish_mission(
    ctx: DispatchContext,
    mission_id: int,
    *,
    ttl_minutes: Optional[float] = None,
    include_employees: bool = False,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PublishResult:
    session = ctx.session
    cfg = ctx.settings
    ttl = cfg.offer_ttl_minutes_default if ttl_minutes is None else ttl_minutes
    if ttl is None or ttl <= 0:
        raise ValidationFailed(f"Offer TTL must be positive, got {ttl_minutes!r}")
    now = now or utcnow()
    expires_at = now + timedelta(minutes=ttl)

    logger.info(
        "publish START: mission=%s ttl=%s include_employees=%s",
        mission_id, ttl, include_employees,
    )
    try:
        mission = await session.get(m.missions, mission_id, populate_existing=True)
        if mission is None:
            raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
        if mission.assigned_user_id is not None:
            raise InvalidTransition("publish", mission.status, "Mission is already assigned")
        if mission.lat is None or mission.lng is None:
            raise ValidationFailed(
                f"Mission {mission_id} has no coordinates; geocode it before publishing"
            )
        title, city = mission.title, mission.city or "-"

        first_publish = mission.status == m.MissionStatus.DRAFT
        await apply_transition(
            session,
            mission_id,
            "publish",
            values={"published_at": now} if first_publish else None,
            actor_type=m.ActorType.ADMIN,
            actor_id=actor_id,
            reason="republish" if not first_publish else None,
            context={"ttl_minutes": ttl, "include_employees": include_employees},
            extra_conditions=(m.missions.assigned_user_id.is_(None),),
        )

        pool = await load_candidate_pool(
            session,
            mission,
            include_employees=include_employees,
            max_live_age=timedelta(minutes=cfg.gps_max_age_minutes),
            default_radius_km=cfg.default_radius_km,
            now=now,
        )
        eligible = evaluate_candidates(
            GeoPoint(mission.lat, mission.lng), pool, mission_id=mission_id
        )

        live_holders: set[int] = set()
        if eligible:
            live_holders = set(
                (
                    await session.execute(
                        select(m.mission_offers.candidate_user_id).where(
                            m.mission_offers.mission_id == mission_id,
                            *live_offer_conditions(now),
                        )
                    )
                ).scalars()
            )

        result = PublishResult(mission_id=mission_id, expires_at=expires_at, eligible=eligible)
        for candidate in eligible:
            if candidate.user_id in live_holders:
                result.skipped_live_user_ids.append(candidate.user_id)
                continue
            offer_id = await session.scalar(
                insert(m.mission_offers).values(
                    mission_id=mission_id,
                    candidate_user_id=candidate.user_id,
                    state=m.OfferState.SENT,
                    created_at=now,
                    expires_at=expires_at,
                    distance_km=round(candidate.distance_km, 3),
                    position_source=candidate.position_source,
                )
                .returning(m.mission_offers.id)
            )
            result.offer_ids.append(offer_id)
            result.offered_user_ids.append(candidate.user_id)
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise
    except Exception as exc:
        await session.rollback()
        logger.exception("publish: mission=%s failed", mission_id)
        log_dispatch_event(
            DispatchEvent.ERROR, mission_id=mission_id, reason=f"publish: {exc}", level="ERROR"
        )
        raise

    log_dispatch_event(
        DispatchEvent.MISSION_PUBLISHED,
        mission_id=mission_id,
        candidates_count=len(result.eligible),
        offers_created=result.offers_created,
        expires_at=expires_at,
        details={
            "skipped_live": result.skipped_live_user_ids,
            "include_employees": include_employees,
        },
    )
    if result.eligible:
        log_dispatch_event(
            DispatchEvent.CANDIDATES_FOUND,
            mission_id=mission_id,
            candidates_count=len(result.eligible),
            details={"user_ids": [c.user_id for c in result.eligible]},
        )
    else:
        log_dispatch_event(DispatchEvent.NO_CANDIDATES, mission_id=mission_id, level="WARNING")

    await ctx.changed("missions", mission_id, mission_id=mission_id)
    for offer_id in result.offer_ids:
        await ctx.changed("mission_offers", offer_id, mission_id=mission_id)
    by_id = {c.user_id: c for c in result.eligible}
    for user_id in result.offered_user_ids:
        candidate = by_id[user_id]
        log_dispatch_event(
            DispatchEvent.OFFER_SENT,
            mission_id=mission_id,
            user_id=user_id,
            expires_at=expires_at,
            details={"distance_km": round(candidate.distance_km, 3)},
        )
        await ctx.emit(
            NotificationEvent.NEW_OFFER,
            mission_id=mission_id,
            recipient_user_id=user_id,
            title=title,
            city=city,
            distance_km=round(candidate.distance_km, 1),
            expires_at=expires_at,
        )
    await ctx.emit(
        NotificationEvent.MISSION_PUBLISHED,
        mission_id=mission_id,
        offers_created=result.offers_created,
    )
    return result

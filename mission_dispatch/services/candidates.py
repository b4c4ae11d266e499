from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.db import models as m
from mission_dispatch.infra.structured_logging import log_candidate_rejection
from mission_dispatch.services.geo import (
    DEFAULT_RADIUS_KM,
    GeoPoint,
    distance_km,
    effective_radius,
    is_within_radius,
    resolve_position,
)
from mission_dispatch.services.time_service import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SUBCONTRACTOR_ROLES: tuple[m.UserRole, ...] = (m.UserRole.SUBCONTRACTOR,)
EMPLOYEE_ROLES: tuple[m.UserRole, ...] = (m.UserRole.EMPLOYEE, m.UserRole.TECHNICIAN)
ASSIGNABLE_ROLES: tuple[m.UserRole, ...] = SUBCONTRACTOR_ROLES + EMPLOYEE_ROLES


@dataclass(slots=True)
class CandidateSnapshot:
    """Per-broadcast view of one candidate; never persisted."""

    user_id: int
    full_name: Optional[str]
    role: m.UserRole
    radius_km: float
    position: Optional[GeoPoint]
    position_source: Optional[str]
    distance_km: Optional[float] = None

    @property
    def eligible(self) -> bool:
        return self.distance_km is not None and is_within_radius(self.distance_km, self.radius_km)


def _fold_city(city: Optional[str]) -> str:
    return (city or "").strip().casefold()


def pool_roles(include_employees: bool) -> tuple[m.UserRole, ...]:
    return ASSIGNABLE_ROLES if include_employees else SUBCONTRACTOR_ROLES


async def load_candidate_pool(
    session: AsyncSession,
    mission: m.missions,
    *,
    include_employees: bool,
    max_live_age: timedelta,
    default_radius_km: float = DEFAULT_RADIUS_KM,
    now: Optional[datetime] = None,
) -> list[CandidateSnapshot]:
    """Available candidates of the right role with a resolved position.

    Skill and city-blackout filters are applied here; the distance test is
    left to :func:`evaluate_candidates`.
    """
    now = now or utcnow()
    stmt = (
        select(m.profiles, m.person_locations)
        .outerjoin(m.person_locations, m.person_locations.user_id == m.profiles.id)
        .where(
            m.profiles.role.in_(pool_roles(include_employees)),
            m.profiles.is_available.is_(True),
        )
        .order_by(m.profiles.id)
    )
    rows = (await session.execute(stmt)).all()
    if not rows:
        return []

    user_ids = [profile.id for profile, _ in rows]
    skilled: Optional[set[int]] = None
    if mission.type:
        skilled = set(
            (
                await session.execute(
                    select(m.user_skills.user_id).where(
                        m.user_skills.user_id.in_(user_ids),
                        m.user_skills.mission_type == mission.type,
                    )
                )
            ).scalars()
        )
    blacked_out: set[int] = set()
    mission_city = _fold_city(mission.city)
    if mission_city:
        blackout_rows = await session.execute(
            select(m.user_city_blackouts.user_id, m.user_city_blackouts.city).where(
                m.user_city_blackouts.user_id.in_(user_ids)
            )
        )
        blacked_out = {uid for uid, city in blackout_rows if _fold_city(city) == mission_city}

    pool: list[CandidateSnapshot] = []
    for profile, live in rows:
        reasons: list[str] = []
        if skilled is not None and profile.id not in skilled:
            reasons.append("skill")
        if profile.id in blacked_out:
            reasons.append("city_blackout")
        position, source = resolve_position(
            profile.location_mode,
            fixed_lat=profile.lat,
            fixed_lng=profile.lng,
            live_lat=live.lat if live is not None else None,
            live_lng=live.lng if live is not None else None,
            live_updated_at=ensure_utc(live.updated_at) if live is not None else None,
            max_live_age=max_live_age,
            now=now,
        )
        if position is None:
            reasons.append("no_position")
        if reasons:
            _log_rejection(mission.id, profile.id, reasons, {"role": profile.role.value})
            continue
        pool.append(
            CandidateSnapshot(
                user_id=profile.id,
                full_name=profile.full_name,
                role=profile.role,
                radius_km=effective_radius(profile.radius_km, default_radius_km),
                position=position,
                position_source=source,
            )
        )
    return pool


def evaluate_candidates(
    mission_point: GeoPoint,
    pool: Sequence[CandidateSnapshot],
    *,
    mission_id: int,
) -> list[CandidateSnapshot]:
    """Attach distances and keep candidates inside their own radius, nearest first."""
    eligible: list[CandidateSnapshot] = []
    for candidate in pool:
        candidate.distance_km = distance_km(mission_point, candidate.position)
        if candidate.eligible:
            eligible.append(candidate)
        else:
            _log_rejection(
                mission_id,
                candidate.user_id,
                ["radius"],
                {
                    "distance_km": round(candidate.distance_km, 3),
                    "radius_km": candidate.radius_km,
                    "source": candidate.position_source,
                },
            )
    eligible.sort(key=lambda c: (c.distance_km, c.user_id))
    return eligible


def _log_rejection(
    mission_id: int,
    user_id: int,
    reasons: Iterable[str],
    details: Optional[dict] = None,
) -> None:
    reasons_list = list(reasons)
    logger.info(
        "[candidates] mission=%s user=%s skipped: %s",
        mission_id,
        user_id,
        ", ".join(reasons_list),
    )
    log_candidate_rejection(
        mission_id=mission_id,
        user_id=user_id,
        rejection_reasons=reasons_list,
        candidate_details=details,
    )

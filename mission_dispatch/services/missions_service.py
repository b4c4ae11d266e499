from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.db import models as m
from mission_dispatch.errors import DispatchError, MissionLocked, NotFound, ValidationFailed
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.geo import validate_coordinates
from mission_dispatch.services.time_service import ensure_utc

logger = logging.getLogger(__name__)

# Status, assignment and billing fields only change through lifecycle commands
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "type",
        "description",
        "city",
        "address",
        "lat",
        "lng",
        "scheduled_start",
        "scheduled_end",
        "estimated_duration_min",
        "price_total",
        "price_subcontractor",
        "currency",
    }
)


def _clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationFailed(f"Fields not editable: {', '.join(sorted(unknown))}")
    values = dict(fields)
    if "title" in values and not (values["title"] or "").strip():
        raise ValidationFailed("Mission title is required")
    for key in ("price_total", "price_subcontractor"):
        if key in values:
            if values[key] is None or int(values[key]) < 0:
                raise ValidationFailed(f"{key} must be a non-negative amount in minor units")
            values[key] = int(values[key])
    if "estimated_duration_min" in values and values["estimated_duration_min"] is not None:
        if int(values["estimated_duration_min"]) <= 0:
            raise ValidationFailed("estimated_duration_min must be positive")
    for key in ("scheduled_start", "scheduled_end"):
        if isinstance(values.get(key), datetime):
            values[key] = ensure_utc(values[key])
    start, end = values.get("scheduled_start"), values.get("scheduled_end")
    if start is not None and end is not None and end <= start:
        raise ValidationFailed("scheduled_end must be after scheduled_start")
    return values


async def get_mission(session: AsyncSession, mission_id: int) -> m.missions:
    mission = await session.get(m.missions, mission_id, populate_existing=True)
    if mission is None:
        raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
    return mission


async def create_mission(ctx: DispatchContext, *, title: str, **fields: Any) -> m.missions:
    """Insert a DRAFT mission."""
    values = _clean_fields({"title": title, **fields})
    validate_coordinates(values.get("lat"), values.get("lng"))
    mission_id = await ctx.session.scalar(
        insert(m.missions)
        .values(status=m.MissionStatus.DRAFT, **values)
        .returning(m.missions.id)
    )
    await ctx.session.commit()
    logger.info("create_mission: mission=%s title=%r", mission_id, title)
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    return await get_mission(ctx.session, mission_id)


async def update_mission(ctx: DispatchContext, mission_id: int, **fields: Any) -> m.missions:
    """Edit descriptive fields of a mission that nobody holds yet."""
    if not fields:
        return await get_mission(ctx.session, mission_id)
    values = _clean_fields(fields)
    session = ctx.session
    try:
        current = (
            await session.execute(
                select(m.missions.lat, m.missions.lng).where(m.missions.id == mission_id)
            )
        ).first()
        if current is None:
            raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
        validate_coordinates(values.get("lat", current.lat), values.get("lng", current.lng))
        updated = await session.execute(
            update(m.missions)
            .where(m.missions.id == mission_id, m.missions.assigned_user_id.is_(None))
            .values(version=m.missions.version + 1, **values)
            .returning(m.missions.id)
            .execution_options(synchronize_session=False)
        )
        if updated.first() is None:
            raise MissionLocked(
                f"Mission {mission_id} is assigned and can no longer be edited",
                mission_id=mission_id,
            )
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise
    logger.info("update_mission: mission=%s fields=%s", mission_id, sorted(values))
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    return await get_mission(session, mission_id)


async def delete_mission(ctx: DispatchContext, mission_id: int) -> None:
    session = ctx.session
    try:
        deleted = await session.execute(
            delete(m.missions)
            .where(m.missions.id == mission_id, m.missions.assigned_user_id.is_(None))
            .returning(m.missions.id)
            .execution_options(synchronize_session=False)
        )
        if deleted.first() is None:
            exists = await session.scalar(
                select(m.missions.id).where(m.missions.id == mission_id)
            )
            if exists is None:
                raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
            raise MissionLocked(
                f"Mission {mission_id} is assigned and can no longer be deleted",
                mission_id=mission_id,
            )
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise
    logger.info("delete_mission: mission=%s", mission_id)
    await ctx.changed("missions", mission_id, mission_id=mission_id)


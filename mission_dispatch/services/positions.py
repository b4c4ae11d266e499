"""Live GPS fixes from candidates. High frequency, last write wins."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from mission_dispatch.db import models as m
from mission_dispatch.errors import NotFound, ValidationFailed
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.geo import validate_coordinates
from mission_dispatch.services.time_service import ensure_utc, utcnow

logger = logging.getLogger(__name__)


async def record_position(
    ctx: DispatchContext,
    user_id: int,
    lat: float,
    lng: float,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Store the latest fix for *user_id*.

    Returns ``False`` when the write was dropped by the throttle.
    """
    if lat is None or lng is None:
        raise ValidationFailed("Both latitude and longitude are required")
    validate_coordinates(lat, lng)
    now = now or utcnow()
    min_interval = timedelta(seconds=ctx.settings.gps_min_interval_seconds)
    session = ctx.session

    location = await session.get(m.person_locations, user_id, populate_existing=True)
    if location is not None:
        last = ensure_utc(location.updated_at)
        if last is not None and timedelta(0) <= now - last < min_interval:
            logger.debug("record_position: user=%s throttled", user_id)
            return False
        location.lat = float(lat)
        location.lng = float(lng)
        location.updated_at = now
    else:
        if await session.get(m.profiles, user_id) is None:
            raise NotFound(f"User {user_id} not found", user_id=user_id)
        session.add(
            m.person_locations(user_id=user_id, lat=float(lat), lng=float(lng), updated_at=now)
        )
    try:
        await session.commit()
    except IntegrityError:
        # a concurrent first fix for the same user won
        await session.rollback()
        logger.debug("record_position: user=%s concurrent insert dropped", user_id)
        return False
    await ctx.changed("person_locations", user_id)
    return True

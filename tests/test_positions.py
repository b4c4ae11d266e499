from __future__ import annotations

from datetime import timedelta

import pytest

from mission_dispatch.db import models as m
from mission_dispatch.errors import NotFound, ValidationFailed
from mission_dispatch.services.positions import record_position
from mission_dispatch.services.time_service import ensure_utc, utcnow


@pytest.mark.asyncio
async def test_first_fix_is_stored(ctx, async_session, feed_events, make_profile):
    tech = await make_profile(location_mode=m.LocationMode.GPS_REALTIME)
    now = utcnow()

    assert await record_position(ctx, tech.id, 48.86, 2.34, now=now) is True

    stored = await async_session.get(m.person_locations, tech.id, populate_existing=True)
    assert (stored.lat, stored.lng) == (48.86, 2.34)
    assert ensure_utc(stored.updated_at) == now
    assert [(e.table, e.row_id) for e in feed_events] == [("person_locations", tech.id)]


@pytest.mark.asyncio
async def test_fixes_inside_min_interval_are_dropped(ctx, async_session, make_profile):
    tech = await make_profile(location_mode=m.LocationMode.GPS_REALTIME)
    now = utcnow()
    await record_position(ctx, tech.id, 48.86, 2.34, now=now)

    assert await record_position(ctx, tech.id, 48.87, 2.35, now=now + timedelta(seconds=2)) is False
    assert await record_position(ctx, tech.id, 48.88, 2.36, now=now + timedelta(seconds=6)) is True

    stored = await async_session.get(m.person_locations, tech.id, populate_existing=True)
    assert (stored.lat, stored.lng) == (48.88, 2.36)


@pytest.mark.asyncio
async def test_clock_going_backwards_is_not_throttled(ctx, make_profile):
    tech = await make_profile()
    now = utcnow()
    await record_position(ctx, tech.id, 48.86, 2.34, now=now)

    assert await record_position(ctx, tech.id, 48.87, 2.35, now=now - timedelta(minutes=1)) is True


@pytest.mark.asyncio
async def test_unknown_user(ctx):
    with pytest.raises(NotFound):
        await record_position(ctx, 424242, 48.86, 2.34)


@pytest.mark.asyncio
@pytest.mark.parametrize("lat, lng", [(None, 2.0), (48.0, None), (95.0, 2.0), (48.0, 181.0)])
async def test_invalid_coordinates(ctx, make_profile, lat, lng):
    tech = await make_profile()

    with pytest.raises(ValidationFailed):
        await record_position(ctx, tech.id, lat, lng)

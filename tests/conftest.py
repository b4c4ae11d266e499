"""
Shared fixtures: a throwaway SQLite database per test, a dispatch context
with recording test doubles, and small factories for profiles and missions.
"""
from __future__ import annotations

import math
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from mission_dispatch.config import settings as base_settings
from mission_dispatch.db import models as m
from mission_dispatch.db.base import metadata
from mission_dispatch.db.session import build_engine, build_session_factory
from mission_dispatch.services.change_feed import ChangeEvent, ChangeFeed
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.geo import EARTH_RADIUS_KM

PARIS = (48.8566, 2.3522)
KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * math.pi / 180.0


def north_of(lat: float, km: float) -> float:
    """Latitude *km* kilometres due north of *lat* (exact along a meridian)."""
    return lat + km / KM_PER_DEGREE_LAT


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[Any, Optional[int], Optional[int], dict[str, Any]]] = []

    async def notify(self, event, *, mission_id=None, recipient_user_id=None, **fields):
        self.events.append((event, mission_id, recipient_user_id, fields))

    def of(self, event) -> list[tuple[Any, Optional[int], Optional[int], dict[str, Any]]]:
        return [e for e in self.events if e[0] == event]


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def notify(self, event, **kwargs):
        self.calls += 1
        raise RuntimeError("notification channel down")


@pytest.fixture
def test_settings():
    return base_settings.model_copy(
        update={
            "offer_ttl_minutes_default": 30,
            "default_radius_km": 25.0,
            "gps_max_age_minutes": 30,
            "gps_min_interval_seconds": 5,
            "bot_token": None,
            "alerts_channel_id": None,
            "logs_channel_id": None,
            "outbox_batch_size": 50,
            "outbox_max_attempts": 3,
        }
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_path = tmp_path / "dispatch.db"
    engine = build_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def async_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def feed_events() -> list[ChangeEvent]:
    return []


@pytest.fixture
def feed(feed_events) -> ChangeFeed:
    feed = ChangeFeed()
    feed.subscribe(feed_events.append)
    return feed


@pytest.fixture
def ctx(async_session, notifier, feed, test_settings) -> DispatchContext:
    return DispatchContext(
        session=async_session,
        notifier=notifier,
        feed=feed,
        settings=test_settings,
    )


# Factories commit through their own session: objects they return stay
# loaded even when the code under test rolls back the shared session.
@pytest.fixture
def make_profile(session_factory):
    async def _make(
        *,
        role: m.UserRole = m.UserRole.SUBCONTRACTOR,
        lat: Optional[float] = PARIS[0],
        lng: Optional[float] = PARIS[1],
        radius_km: Optional[float] = 25.0,
        location_mode: m.LocationMode = m.LocationMode.FIXED_ADDRESS,
        is_available: bool = True,
        full_name: str = "Technicien",
        city: Optional[str] = "Paris",
        tg_chat_id: Optional[int] = None,
    ) -> m.profiles:
        profile = m.profiles(
            role=role,
            lat=lat,
            lng=lng,
            radius_km=radius_km,
            location_mode=location_mode,
            is_available=is_available,
            full_name=full_name,
            city=city,
            tg_chat_id=tg_chat_id,
        )
        async with session_factory() as session:
            session.add(profile)
            await session.commit()
        return profile

    return _make


@pytest.fixture
def make_mission(session_factory):
    async def _make(
        *,
        title: str = "Remplacement chauffe-eau",
        lat: Optional[float] = PARIS[0],
        lng: Optional[float] = PARIS[1],
        status: m.MissionStatus = m.MissionStatus.DRAFT,
        type: Optional[str] = None,
        city: Optional[str] = "Paris",
        assigned_user_id: Optional[int] = None,
        estimated_duration_min: Optional[int] = None,
        price_total: int = 25000,
        price_subcontractor: int = 18000,
    ) -> m.missions:
        mission = m.missions(
            title=title,
            lat=lat,
            lng=lng,
            status=status,
            type=type,
            city=city,
            assigned_user_id=assigned_user_id,
            estimated_duration_min=estimated_duration_min,
            price_total=price_total,
            price_subcontractor=price_subcontractor,
        )
        async with session_factory() as session:
            session.add(mission)
            await session.commit()
        return mission

    return _make

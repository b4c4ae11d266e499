from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mission_dispatch.db import models as m
from mission_dispatch.errors import (
    AlreadyAssigned,
    DispatchError,
    OfferExpiredOrMissing,
)
from mission_dispatch.infra.structured_logging import DispatchEvent, log_dispatch_event
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.lifecycle import void_live_offers
from mission_dispatch.services.offers_broadcast import live_offer_conditions
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.time_service import ensure_utc, is_expired, utcnow

_log = logging.getLogger(__name__)


class AcceptOutcome(str, enum.Enum):
    OK = "OK"
    ALREADY_TAKEN = "ALREADY_TAKEN"
    OFFER_NOT_FOUND_OR_EXPIRED = "OFFER_NOT_FOUND_OR_EXPIRED"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class AcceptResult:
    outcome: AcceptOutcome
    mission_id: int
    candidate_id: int
    message: Optional[str] = None
    offer_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome is AcceptOutcome.OK

    def raise_for_outcome(self) -> None:
        if self.outcome is AcceptOutcome.OK:
            return
        if self.outcome is AcceptOutcome.ALREADY_TAKEN:
            raise AlreadyAssigned(self.message or "Mission already taken", mission_id=self.mission_id)
        if self.outcome is AcceptOutcome.OFFER_NOT_FOUND_OR_EXPIRED:
            raise OfferExpiredOrMissing(
                self.message or "No live offer for this mission", mission_id=self.mission_id
            )
        raise DispatchError(self.message or "Accept failed", mission_id=self.mission_id)


@dataclass(frozen=True, slots=True)
class LiveOffer:
    offer_id: int
    mission_id: int
    title: str
    city: Optional[str]
    distance_km: Optional[float]
    expires_at: datetime


class OffersService:
    """Candidate-facing side of offers: accept, refuse, inbox."""

    def __init__(self, ctx: DispatchContext):
        self.ctx = ctx
        self.session = ctx.session

    async def accept(
        self,
        mission_id: int,
        candidate_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> AcceptResult:
        """
        Atomic claim of a published mission by a candidate.

        The claim is one conditional UPDATE on ``missions`` guarded by
        ``assigned_user_id IS NULL``, ``status = PUBLISHED`` and the existence
        of a live offer for the caller. Whoever's UPDATE matches first wins;
        every other caller matches zero rows and gets classified afterwards.
        Expired offers are excluded by the ``expires_at > now`` guard even if
        no sweep ever marked them.
        """
        now = now or utcnow()
        session = self.session
        _log.info("accept START: mission=%s candidate=%s", mission_id, candidate_id)

        caller_live_offer = (
            select(m.mission_offers.id)
            .where(
                m.mission_offers.mission_id == mission_id,
                m.mission_offers.candidate_user_id == candidate_id,
                *live_offer_conditions(now),
            )
            .exists()
        )
        try:
            claimed = await session.execute(
                update(m.missions)
                .where(
                    m.missions.id == mission_id,
                    m.missions.assigned_user_id.is_(None),
                    m.missions.status == m.MissionStatus.PUBLISHED,
                    caller_live_offer,
                )
                .values(
                    status=m.MissionStatus.ASSIGNED,
                    assigned_user_id=candidate_id,
                    accepted_at=now,
                    version=m.missions.version + 1,
                )
                .returning(m.missions.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.first() is None:
                await session.rollback()
                return await self._classify_failure(mission_id, candidate_id, now)

            offer_id = (
                await session.execute(
                    select(m.mission_offers.id)
                    .where(
                        m.mission_offers.mission_id == mission_id,
                        m.mission_offers.candidate_user_id == candidate_id,
                        *live_offer_conditions(now),
                    )
                    .order_by(m.mission_offers.created_at.desc(), m.mission_offers.id.desc())
                    .limit(1)
                )
            ).scalar_one()
            await session.execute(
                update(m.mission_offers)
                .where(m.mission_offers.id == offer_id)
                .values(state=m.OfferState.ACCEPTED, accepted_at=now)
                .execution_options(synchronize_session=False)
            )
            voided = await void_live_offers(session, mission_id, now=now)
            await session.execute(
                insert(m.mission_status_history).values(
                    mission_id=mission_id,
                    from_status=m.MissionStatus.PUBLISHED,
                    to_status=m.MissionStatus.ASSIGNED,
                    operation="accept",
                    reason="accepted_by_candidate",
                    actor_type=m.ActorType.CANDIDATE,
                    actor_id=candidate_id,
                    context={"offer_id": offer_id, "voided_offers": voided},
                )
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            _log.warning("accept: mission=%s unique accepted-offer guard hit", mission_id)
            return self._result(AcceptOutcome.ALREADY_TAKEN, mission_id, candidate_id, "Mission already taken")
        except SQLAlchemyError as exc:
            await session.rollback()
            _log.exception("accept: mission=%s candidate=%s failed", mission_id, candidate_id)
            return self._result(AcceptOutcome.ERROR, mission_id, candidate_id, f"Database error: {exc}")

        _log.info("accept OK: mission=%s candidate=%s offer=%s", mission_id, candidate_id, offer_id)
        log_dispatch_event(
            DispatchEvent.OFFER_ACCEPTED,
            mission_id=mission_id,
            user_id=candidate_id,
            from_status=m.MissionStatus.PUBLISHED,
            to_status=m.MissionStatus.ASSIGNED,
            outcome=AcceptOutcome.OK.value,
            details={"offer_id": offer_id, "voided_offers": voided},
        )
        await self.ctx.changed("missions", mission_id, mission_id=mission_id)
        await self.ctx.changed("mission_offers", offer_id, mission_id=mission_id)
        await self.ctx.emit(
            NotificationEvent.MISSION_ACCEPTED,
            mission_id=mission_id,
            recipient_user_id=candidate_id,
        )
        return AcceptResult(AcceptOutcome.OK, mission_id, candidate_id, None, offer_id)

    async def _classify_failure(
        self, mission_id: int, candidate_id: int, now: datetime
    ) -> AcceptResult:
        row = (
            await self.session.execute(
                select(m.missions.status, m.missions.assigned_user_id).where(
                    m.missions.id == mission_id
                )
            )
        ).first()
        if row is None:
            return self._result(
                AcceptOutcome.ERROR, mission_id, candidate_id, f"Mission {mission_id} not found"
            )
        if row.status == m.MissionStatus.CANCELLED:
            return self._result(
                AcceptOutcome.ERROR, mission_id, candidate_id, "Mission was cancelled"
            )
        if row.assigned_user_id is not None and row.assigned_user_id != candidate_id:
            return self._result(
                AcceptOutcome.ALREADY_TAKEN, mission_id, candidate_id, "Mission already taken"
            )
        if row.assigned_user_id == candidate_id:
            return self._result(
                AcceptOutcome.ERROR, mission_id, candidate_id, "Mission is already assigned to you"
            )
        if row.status != m.MissionStatus.PUBLISHED:
            return self._result(
                AcceptOutcome.ERROR,
                mission_id,
                candidate_id,
                f"Mission is not open for acceptance (status {row.status.value})",
            )
        latest_expiry = await self.session.scalar(
            select(m.mission_offers.expires_at)
            .where(
                m.mission_offers.mission_id == mission_id,
                m.mission_offers.candidate_user_id == candidate_id,
                m.mission_offers.refused_at.is_(None),
                m.mission_offers.voided_at.is_(None),
            )
            .order_by(m.mission_offers.expires_at.desc())
            .limit(1)
        )
        message = "No live offer for this mission"
        if is_expired(latest_expiry, now):
            message = f"Offer expired at {ensure_utc(latest_expiry).isoformat()}"
        return self._result(
            AcceptOutcome.OFFER_NOT_FOUND_OR_EXPIRED, mission_id, candidate_id, message
        )

    def _result(
        self,
        outcome: AcceptOutcome,
        mission_id: int,
        candidate_id: int,
        message: str,
    ) -> AcceptResult:
        _log.info(
            "accept %s: mission=%s candidate=%s (%s)",
            outcome.value, mission_id, candidate_id, message,
        )
        log_dispatch_event(
            DispatchEvent.OFFER_REJECTED,
            mission_id=mission_id,
            user_id=candidate_id,
            outcome=outcome.value,
            reason=message,
        )
        return AcceptResult(outcome, mission_id, candidate_id, message)

    async def refuse(
        self,
        mission_id: int,
        candidate_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Decline a live offer; returns the offer id."""
        now = now or utcnow()
        try:
            refused = await self.session.execute(
                update(m.mission_offers)
                .where(
                    m.mission_offers.mission_id == mission_id,
                    m.mission_offers.candidate_user_id == candidate_id,
                    *live_offer_conditions(now),
                )
                .values(state=m.OfferState.REFUSED, refused_at=now)
                .returning(m.mission_offers.id)
                .execution_options(synchronize_session=False)
            )
            offer_ids = list(refused.scalars())
            if not offer_ids:
                raise OfferExpiredOrMissing(
                    f"No live offer for mission {mission_id}",
                    mission_id=mission_id,
                    candidate_id=candidate_id,
                )
            await self.session.commit()
        except DispatchError:
            await self.session.rollback()
            raise

        log_dispatch_event(DispatchEvent.OFFER_REFUSED, mission_id=mission_id, user_id=candidate_id)
        for offer_id in offer_ids:
            await self.ctx.changed("mission_offers", offer_id, mission_id=mission_id)
        return offer_ids[0]

    async def list_live_offers(
        self,
        candidate_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> list[LiveOffer]:
        now = now or utcnow()
        rows = await self.session.execute(
            select(
                m.mission_offers.id,
                m.mission_offers.mission_id,
                m.missions.title,
                m.missions.city,
                m.mission_offers.distance_km,
                m.mission_offers.expires_at,
            )
            .join(m.missions, m.missions.id == m.mission_offers.mission_id)
            .where(
                m.mission_offers.candidate_user_id == candidate_id,
                *live_offer_conditions(now),
                m.missions.assigned_user_id.is_(None),
                m.missions.status == m.MissionStatus.PUBLISHED,
            )
            .order_by(m.mission_offers.expires_at, m.mission_offers.id)
        )
        return [
            LiveOffer(
                offer_id=row.id,
                mission_id=row.mission_id,
                title=row.title,
                city=row.city,
                distance_km=row.distance_km,
                expires_at=ensure_utc(row.expires_at),
            )
            for row in rows
        ]

    async def expire_stale_offers(self, *, now: Optional[datetime] = None) -> int:
        """Mark SENT offers past their deadline as EXPIRED. Acceptance never waits on this."""
        now = now or utcnow()
        result = await self.session.execute(
            update(m.mission_offers)
            .where(
                m.mission_offers.state == m.OfferState.SENT,
                m.mission_offers.expires_at <= now,
            )
            .values(state=m.OfferState.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        expired = result.rowcount or 0
        if expired:
            log_dispatch_event(DispatchEvent.OFFERS_EXPIRED, details={"count": expired})
        return expired

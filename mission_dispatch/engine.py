"""
Command surface of the dispatch engine.

``DispatchEngine`` binds one :class:`DispatchContext` and exposes every
operator and candidate command. It holds no state of its own; create one per
unit of work (request, job run, test).
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from mission_dispatch.db import models as m
from mission_dispatch.services import billing_service, manual_assign, missions_service
from mission_dispatch.services.billing_service import InvoiceLine
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.lifecycle import MissionLifecycle
from mission_dispatch.services.offers_broadcast import PublishResult, publish_mission
from mission_dispatch.services.offers_service import AcceptResult, LiveOffer, OffersService
from mission_dispatch.services.positions import record_position
from mission_dispatch.services.status_map import DisplayStatus, normalize_status


class DispatchEngine:
    def __init__(self, ctx: DispatchContext):
        self.ctx = ctx
        self.lifecycle = MissionLifecycle(ctx)
        self.offers = OffersService(ctx)

    # ----- authoring -----

    async def create_mission(self, *, title: str, **fields: Any) -> m.missions:
        return await missions_service.create_mission(self.ctx, title=title, **fields)

    async def update_mission(self, mission_id: int, **fields: Any) -> m.missions:
        return await missions_service.update_mission(self.ctx, mission_id, **fields)

    async def delete_mission(self, mission_id: int) -> None:
        await missions_service.delete_mission(self.ctx, mission_id)

    async def get_mission(self, mission_id: int) -> m.missions:
        return await missions_service.get_mission(self.ctx.session, mission_id)

    async def display_status(self, mission_id: int) -> DisplayStatus:
        mission = await self.get_mission(mission_id)
        return normalize_status(mission.status)

    # ----- offers -----

    async def publish(
        self,
        mission_id: int,
        ttl_minutes: Optional[float] = None,
        include_employees: bool = False,
        *,
        actor_id: Optional[int] = None,
    ) -> PublishResult:
        return await publish_mission(
            self.ctx,
            mission_id,
            ttl_minutes=ttl_minutes,
            include_employees=include_employees,
            actor_id=actor_id,
        )

    async def accept(self, mission_id: int, candidate_id: int) -> AcceptResult:
        return await self.offers.accept(mission_id, candidate_id)

    async def refuse(self, mission_id: int, candidate_id: int) -> int:
        return await self.offers.refuse(mission_id, candidate_id)

    async def list_live_offers(self, candidate_id: int) -> list[LiveOffer]:
        return await self.offers.list_live_offers(candidate_id)

    async def expire_stale_offers(self) -> int:
        return await self.offers.expire_stale_offers()

    # ----- assignment -----

    async def assign(
        self,
        mission_id: int,
        candidate_id: int,
        override_radius: bool = False,
        *,
        staff_id: Optional[int] = None,
    ) -> m.missions:
        return await manual_assign.assign(
            self.ctx, mission_id, candidate_id, override_radius=override_radius, staff_id=staff_id
        )

    async def unassign(self, mission_id: int, *, staff_id: Optional[int] = None) -> m.missions:
        return await manual_assign.unassign(self.ctx, mission_id, staff_id=staff_id)

    async def reassign(
        self,
        mission_id: int,
        candidate_id: int,
        override_radius: bool = False,
        *,
        staff_id: Optional[int] = None,
    ) -> m.missions:
        return await manual_assign.reassign(
            self.ctx, mission_id, candidate_id, override_radius=override_radius, staff_id=staff_id
        )

    # ----- lifecycle -----

    async def schedule(
        self, mission_id: int, start: datetime, end: Optional[datetime] = None
    ) -> m.missions:
        return await self.lifecycle.schedule(mission_id, start, end)

    async def start_travel(self, mission_id: int) -> m.missions:
        return await self.lifecycle.start_travel(mission_id)

    async def start_work(self, mission_id: int) -> m.missions:
        return await self.lifecycle.start_work(mission_id)

    async def pause(self, mission_id: int, reason: Any, note: Optional[str] = None) -> m.missions:
        return await self.lifecycle.pause(mission_id, reason, note)

    async def resume(self, mission_id: int) -> m.missions:
        return await self.lifecycle.resume(mission_id)

    async def complete(self, mission_id: int) -> m.missions:
        return await self.lifecycle.complete(mission_id)

    async def validate_report(self, mission_id: int) -> m.missions:
        return await self.lifecycle.validate_report(mission_id)

    async def reject_report(
        self, mission_id: int, reason: str, details: Optional[str] = None
    ) -> m.missions:
        return await self.lifecycle.reject_report(mission_id, reason, details)

    async def close(self, mission_id: int) -> m.missions:
        return await self.lifecycle.close(mission_id)

    async def cancel(self, mission_id: int) -> m.missions:
        return await self.lifecycle.cancel(mission_id)

    # ----- billing -----

    async def issue_invoice(
        self,
        mission_id: int,
        lines: Iterable[InvoiceLine | Mapping[str, Any]],
        *,
        notes: Optional[str] = None,
    ) -> m.invoices:
        return await billing_service.issue_invoice(self.ctx, mission_id, lines, notes=notes)

    async def mark_paid(
        self, mission_id: int, method: str, reference: Optional[str] = None
    ) -> m.invoices:
        return await billing_service.mark_paid(self.ctx, mission_id, method, reference)

    # ----- positions -----

    async def record_position(self, user_id: int, lat: float, lng: float) -> bool:
        return await record_position(self.ctx, user_id, lat, lng)

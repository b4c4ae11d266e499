"""
Invoice issuance and payment recording.

Amounts are integer minor units. Subtotal, VAT and grand total are each
rounded exactly once, half up, from the exact line sums. The grand total is
not rebuilt from the rounded parts, so it can differ from ``subtotal + vat``
by one minor unit.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from mission_dispatch.db import models as m
from mission_dispatch.errors import (
    DispatchError,
    InvoiceAlreadyExists,
    NoUnpaidInvoice,
    NotFound,
    ValidationFailed,
)
from mission_dispatch.infra.structured_logging import DispatchEvent, log_dispatch_event
from mission_dispatch.services.context import DispatchContext
from mission_dispatch.services.lifecycle import TRANSITIONS, apply_transition
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.time_service import utcnow

logger = logging.getLogger(__name__)

_HUNDRED = Decimal(100)
_ONE = Decimal(1)


@dataclass(frozen=True, slots=True)
class InvoiceLine:
    description: str
    quantity: Decimal
    unit_price_minor: int
    vat_rate: Decimal  # percent

    @classmethod
    def parse(cls, raw: Union["InvoiceLine", Mapping[str, Any]]) -> "InvoiceLine":
        if isinstance(raw, InvoiceLine):
            line = raw
        else:
            try:
                line = cls(
                    description=str(raw.get("description") or "").strip(),
                    quantity=Decimal(str(raw.get("quantity", 1))),
                    unit_price_minor=int(raw["unit_price_minor"]),
                    vat_rate=Decimal(str(raw.get("vat_rate", 0))),
                )
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                raise ValidationFailed(f"Malformed invoice line {raw!r}: {exc}") from None
        line.validate()
        return line

    def validate(self) -> None:
        if not self.description:
            raise ValidationFailed("Invoice line description is required")
        if self.quantity <= 0:
            raise ValidationFailed(f"Quantity must be positive: {self.description}")
        if self.unit_price_minor < 0:
            raise ValidationFailed(f"Unit price cannot be negative: {self.description}")
        if not (0 <= self.vat_rate <= 100):
            raise ValidationFailed(f"VAT rate must be between 0 and 100: {self.description}")

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["quantity"] = str(self.quantity)
        data["vat_rate"] = str(self.vat_rate)
        return data


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    subtotal_minor: int
    vat_minor: int
    total_minor: int


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def compute_totals(lines: Sequence[InvoiceLine]) -> InvoiceTotals:
    if not lines:
        raise ValidationFailed("An invoice needs at least one line")
    exact_subtotal = sum((line.quantity * line.unit_price_minor for line in lines), Decimal(0))
    exact_vat = sum(
        (line.quantity * line.unit_price_minor * line.vat_rate / _HUNDRED for line in lines),
        Decimal(0),
    )
    return InvoiceTotals(
        subtotal_minor=_round_minor(exact_subtotal),
        vat_minor=_round_minor(exact_vat),
        total_minor=_round_minor(exact_subtotal + exact_vat),
    )


async def issue_invoice(
    ctx: DispatchContext,
    mission_id: int,
    lines: Iterable[Union[InvoiceLine, Mapping[str, Any]]],
    *,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> m.invoices:
    """Create the mission's invoice and move it to INVOICED."""
    session = ctx.session
    parsed = [InvoiceLine.parse(line) for line in lines]
    totals = compute_totals(parsed)
    now = utcnow()
    logger.info("issue_invoice START: mission=%s lines=%s", mission_id, len(parsed))
    try:
        mission = (
            await session.execute(
                select(m.missions.status, m.missions.currency).where(m.missions.id == mission_id)
            )
        ).first()
        if mission is None:
            raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
        existing = (
            await session.execute(select(m.invoices.id).where(m.invoices.mission_id == mission_id))
        ).scalar_one_or_none()
        if existing is not None:
            raise InvoiceAlreadyExists(
                f"Mission {mission_id} already has invoice {existing}",
                mission_id=mission_id,
                invoice_id=existing,
            )
        await apply_transition(
            session,
            mission_id,
            "invoice",
            values={"billing_status": m.BillingStatus.INVOICED},
            actor_type=m.ActorType.ADMIN,
            actor_id=actor_id,
            context={"total_minor": totals.total_minor},
        )
        invoice_id = await session.scalar(
            insert(m.invoices)
            .values(
                mission_id=mission_id,
                lines=[line.to_json() for line in parsed],
                subtotal_minor=totals.subtotal_minor,
                vat_minor=totals.vat_minor,
                total_minor=totals.total_minor,
                currency=mission.currency,
                notes=notes,
                issued_at=now,
            )
            .returning(m.invoices.id)
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvoiceAlreadyExists(
            f"Mission {mission_id} already has an invoice", mission_id=mission_id
        ) from None
    except DispatchError:
        await session.rollback()
        raise

    log_dispatch_event(
        DispatchEvent.INVOICE_ISSUED,
        mission_id=mission_id,
        details={"invoice_id": invoice_id, "total_minor": totals.total_minor},
    )
    await ctx.changed("invoices", invoice_id, mission_id=mission_id)
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    await ctx.emit(
        NotificationEvent.INVOICE_ISSUED,
        mission_id=mission_id,
        invoice_id=invoice_id,
        total=format_minor(totals.total_minor),
        currency=mission.currency,
    )
    return await session.get(m.invoices, invoice_id, populate_existing=True)


async def mark_paid(
    ctx: DispatchContext,
    mission_id: int,
    method: str,
    reference: Optional[str] = None,
    *,
    actor_id: Optional[int] = None,
) -> m.invoices:
    """Record payment of the mission's unpaid invoice; mission moves to PAID."""
    session = ctx.session
    method = (method or "").strip().lower()
    if not method:
        raise ValidationFailed("Payment method is required")
    now = utcnow()
    logger.info("mark_paid START: mission=%s method=%s", mission_id, method)
    try:
        status = (
            await session.execute(select(m.missions.status).where(m.missions.id == mission_id))
        ).scalar_one_or_none()
        if status is None:
            raise NotFound(f"Mission {mission_id} not found", mission_id=mission_id)
        paid = await session.execute(
            update(m.invoices)
            .where(m.invoices.mission_id == mission_id, m.invoices.paid_at.is_(None))
            .values(paid_at=now, payment_method=method, payment_reference=reference)
            .returning(m.invoices.id)
            .execution_options(synchronize_session=False)
        )
        invoice_id = paid.scalar_one_or_none()
        if invoice_id is None:
            raise NoUnpaidInvoice(
                f"Mission {mission_id} has no unpaid invoice", mission_id=mission_id
            )
        if status not in TRANSITIONS["mark_paid"].sources:
            raise NoUnpaidInvoice(
                f"Mission {mission_id} is {status.value}, not awaiting payment",
                mission_id=mission_id,
            )
        await apply_transition(
            session,
            mission_id,
            "mark_paid",
            values={"billing_status": m.BillingStatus.PAID},
            actor_type=m.ActorType.ADMIN,
            actor_id=actor_id,
            context={"invoice_id": invoice_id, "method": method, "reference": reference},
        )
        await session.commit()
    except DispatchError:
        await session.rollback()
        raise

    log_dispatch_event(
        DispatchEvent.PAYMENT_RECEIVED,
        mission_id=mission_id,
        details={"invoice_id": invoice_id, "method": method},
    )
    await ctx.changed("invoices", invoice_id, mission_id=mission_id)
    await ctx.changed("missions", mission_id, mission_id=mission_id)
    await ctx.emit(
        NotificationEvent.PAYMENT_RECEIVED,
        mission_id=mission_id,
        invoice_id=invoice_id,
        method=method,
    )
    return await session.get(m.invoices, invoice_id, populate_existing=True)


def format_minor(amount_minor: int) -> str:
    """1234 -> '12.34'"""
    sign = "-" if amount_minor < 0 else ""
    whole, cents = divmod(abs(amount_minor), 100)
    return f"{sign}{whole}.{cents:02d}"

"""Invoice totals, issuance and payment."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from mission_dispatch.db import models as m
from mission_dispatch.errors import (
    InvalidTransition,
    InvoiceAlreadyExists,
    NoUnpaidInvoice,
    NotFound,
    ValidationFailed,
)
from mission_dispatch.services import billing_service, manual_assign
from mission_dispatch.services.billing_service import InvoiceLine, compute_totals, format_minor
from mission_dispatch.services.lifecycle import MissionLifecycle
from mission_dispatch.services.push_notifications import NotificationEvent
from mission_dispatch.services.time_service import utcnow

LINES = [
    {"description": "Déplacement", "quantity": 1, "unit_price_minor": 4500, "vat_rate": 20},
    {"description": "Main d'oeuvre", "quantity": "1.5", "unit_price_minor": 6000, "vat_rate": 20},
    {"description": "Joint", "quantity": 3, "unit_price_minor": 199, "vat_rate": "5.5"},
]


async def _completed_mission(ctx, make_profile, make_mission):
    tech = await make_profile()
    mission = await make_mission()
    await manual_assign.assign(ctx, mission.id, tech.id)
    lifecycle = MissionLifecycle(ctx)
    await lifecycle.schedule(mission.id, utcnow() + timedelta(hours=2))
    await lifecycle.start_work(mission.id)
    await lifecycle.complete(mission.id)
    return mission


def test_compute_totals_rounds_each_total_once():
    lines = [InvoiceLine.parse(raw) for raw in LINES]

    totals = compute_totals(lines)

    # 4500 + 9000 + 597
    assert totals.subtotal_minor == 14097
    # 900 + 1800 + 32.835 -> 2732.835 -> 2733
    assert totals.vat_minor == 2733
    # 14097 + 2732.835 -> 16829.835 -> 16830
    assert totals.total_minor == 16830


def test_compute_totals_grand_total_rounds_exact_sum():
    line = InvoiceLine("Pose", Decimal("1.5"), 333, Decimal("20"))

    totals = compute_totals([line])

    # 499.5 -> 500, 99.9 -> 100, but 599.4 -> 599
    assert (totals.subtotal_minor, totals.vat_minor) == (500, 100)
    assert totals.total_minor == 599


def test_compute_totals_half_up():
    line = InvoiceLine.parse({"description": "x", "unit_price_minor": 5, "vat_rate": 10})

    assert compute_totals([line]).vat_minor == 1  # 0.5 rounds up


def test_compute_totals_needs_lines():
    with pytest.raises(ValidationFailed):
        compute_totals([])


@pytest.mark.parametrize(
    "raw",
    [
        {"description": "", "unit_price_minor": 100},
        {"description": "x", "quantity": 0, "unit_price_minor": 100},
        {"description": "x", "unit_price_minor": -1},
        {"description": "x", "unit_price_minor": 100, "vat_rate": 120},
        {"description": "x", "unit_price_minor": 100, "vat_rate": -1},
        {"description": "x"},
        {"description": "x", "unit_price_minor": "abc"},
        {"description": "x", "quantity": "deux", "unit_price_minor": 100},
    ],
)
def test_malformed_lines_are_rejected(raw):
    with pytest.raises(ValidationFailed):
        InvoiceLine.parse(raw)


def test_line_defaults_and_json():
    line = InvoiceLine.parse({"description": "Forfait", "unit_price_minor": 8000})

    assert line.quantity == Decimal(1)
    assert line.vat_rate == Decimal(0)
    assert line.to_json() == {
        "description": "Forfait",
        "quantity": "1",
        "unit_price_minor": 8000,
        "vat_rate": "0",
    }


@pytest.mark.parametrize(
    "amount, expected",
    [(0, "0.00"), (5, "0.05"), (1234, "12.34"), (-250, "-2.50")],
)
def test_format_minor(amount, expected):
    assert format_minor(amount) == expected


@pytest.mark.asyncio
async def test_issue_invoice_from_completed(ctx, async_session, notifier, make_profile, make_mission):
    mission = await _completed_mission(ctx, make_profile, make_mission)

    invoice = await billing_service.issue_invoice(ctx, mission.id, LINES, notes="Merci")

    assert invoice.mission_id == mission.id
    assert invoice.total_minor == 16830
    assert invoice.currency == "EUR"
    assert invoice.paid_at is None
    assert len(invoice.lines) == 3
    refreshed = await async_session.get(m.missions, mission.id, populate_existing=True)
    assert refreshed.status == m.MissionStatus.INVOICED
    assert refreshed.billing_status == m.BillingStatus.INVOICED
    sent = notifier.of(NotificationEvent.INVOICE_ISSUED)
    assert sent[0][3]["total"] == "168.30"


@pytest.mark.asyncio
async def test_second_invoice_is_refused(ctx, make_profile, make_mission):
    mission = await _completed_mission(ctx, make_profile, make_mission)
    await billing_service.issue_invoice(ctx, mission.id, LINES)

    with pytest.raises(InvoiceAlreadyExists):
        await billing_service.issue_invoice(ctx, mission.id, LINES)


@pytest.mark.asyncio
async def test_invoice_before_completion_is_invalid(ctx, make_profile, make_mission):
    tech = await make_profile()
    mission = await make_mission()
    await manual_assign.assign(ctx, mission.id, tech.id)

    with pytest.raises(InvalidTransition):
        await billing_service.issue_invoice(ctx, mission.id, LINES)


@pytest.mark.asyncio
async def test_invoice_unknown_mission(ctx):
    with pytest.raises(NotFound):
        await billing_service.issue_invoice(ctx, 424242, LINES)


@pytest.mark.asyncio
async def test_mark_paid_without_invoice(ctx, make_profile, make_mission):
    mission = await _completed_mission(ctx, make_profile, make_mission)

    with pytest.raises(NoUnpaidInvoice):
        await billing_service.mark_paid(ctx, mission.id, "cheque")


@pytest.mark.asyncio
async def test_mark_paid_once(ctx, async_session, notifier, make_profile, make_mission):
    mission = await _completed_mission(ctx, make_profile, make_mission)
    await billing_service.issue_invoice(ctx, mission.id, LINES)

    invoice = await billing_service.mark_paid(ctx, mission.id, " Virement ", "VIR-77")

    assert invoice.paid_at is not None
    assert invoice.payment_method == "virement"
    assert invoice.payment_reference == "VIR-77"
    refreshed = await async_session.get(m.missions, mission.id, populate_existing=True)
    assert refreshed.status == m.MissionStatus.PAID
    assert refreshed.billing_status == m.BillingStatus.PAID
    assert notifier.of(NotificationEvent.PAYMENT_RECEIVED)[0][3]["method"] == "virement"

    with pytest.raises(NoUnpaidInvoice):
        await billing_service.mark_paid(ctx, mission.id, "virement")


@pytest.mark.asyncio
async def test_mark_paid_requires_method(ctx, make_profile, make_mission):
    mission = await _completed_mission(ctx, make_profile, make_mission)

    with pytest.raises(ValidationFailed):
        await billing_service.mark_paid(ctx, mission.id, "  ")

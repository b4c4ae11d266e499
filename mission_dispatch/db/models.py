from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    false,
    func,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, metadata

__all__ = [
    "metadata",
    "UserRole",
    "LocationMode",
    "MissionStatus",
    "BillingStatus",
    "ReportStatus",
    "PauseReason",
    "OfferState",
    "ActorType",
    "profiles",
    "person_locations",
    "user_skills",
    "user_city_blackouts",
    "missions",
    "mission_offers",
    "mission_status_history",
    "invoices",
    "notifications_outbox",
]


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ===== Enums =====


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    SUBCONTRACTOR = "st"
    EMPLOYEE = "sal"
    TECHNICIAN = "tech"
    CLIENT = "client"


class LocationMode(str, enum.Enum):
    GPS_REALTIME = "gps_realtime"
    FIXED_ADDRESS = "fixed_address"


class MissionStatus(str, enum.Enum):
    """Fine-grained work lifecycle used by the state machine."""

    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ASSIGNED = "ASSIGNED"
    SCHEDULED = "SCHEDULED"
    EN_ROUTE = "EN_ROUTE"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    BILLABLE = "BILLABLE"
    INVOICED = "INVOICED"
    PAID = "PAID"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class BillingStatus(str, enum.Enum):
    NOT_BILLABLE = "NOT_BILLABLE"
    BILLABLE = "BILLABLE"
    INVOICED = "INVOICED"
    PAID = "PAID"


class ReportStatus(str, enum.Enum):
    NONE = "NONE"
    PENDING_REVIEW = "PENDING_REVIEW"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"


class PauseReason(str, enum.Enum):
    CLIENT_ABSENT = "client_absent"
    NO_ACCESS = "no_access"
    MISSING_PARTS = "missing_parts"
    SAFETY = "safety"
    COUNTER_ORDER = "counter_order"


class OfferState(str, enum.Enum):
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REFUSED = "REFUSED"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class ActorType(str, enum.Enum):
    """Who triggered a status change."""

    SYSTEM = "SYSTEM"
    ADMIN = "ADMIN"
    CANDIDATE = "CANDIDATE"


# ===== People =====


class profiles(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(160))
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=_values),
        nullable=False,
        index=True,
    )
    city: Mapped[Optional[str]] = mapped_column(String(120))
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    tg_chat_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_available: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    location_mode: Mapped[LocationMode] = mapped_column(
        Enum(LocationMode, name="location_mode", values_callable=_values),
        nullable=False,
        default=LocationMode.FIXED_ADDRESS,
        server_default=LocationMode.FIXED_ADDRESS.value,
    )
    lat: Mapped[Optional[float]] = mapped_column(Float(asdecimal=False))
    lng: Mapped[Optional[float]] = mapped_column(Float(asdecimal=False))
    radius_km: Mapped[Optional[float]] = mapped_column(Float(asdecimal=False))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_profiles__role_available", "role", "is_available"),
    )


class person_locations(Base):
    """Latest live GPS fix per user; high-frequency, eventually consistent."""

    user_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    lat: Mapped[float] = mapped_column(Float(asdecimal=False), nullable=False)
    lng: Mapped[float] = mapped_column(Float(asdecimal=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class user_skills(Base):
    user_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    mission_type: Mapped[str] = mapped_column(String(32), primary_key=True)


class user_city_blackouts(Base):
    user_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    city: Mapped[str] = mapped_column(String(120), primary_key=True)


# ===== Missions =====


class missions(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(String(120))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    lat: Mapped[Optional[float]] = mapped_column(Float(asdecimal=False))
    lng: Mapped[Optional[float]] = mapped_column(Float(asdecimal=False))

    status: Mapped[MissionStatus] = mapped_column(
        Enum(MissionStatus, name="mission_status"),
        nullable=False,
        default=MissionStatus.DRAFT,
        server_default=MissionStatus.DRAFT.value,
        index=True,
    )
    billing_status: Mapped[BillingStatus] = mapped_column(
        Enum(BillingStatus, name="billing_status"),
        nullable=False,
        default=BillingStatus.NOT_BILLABLE,
        server_default=BillingStatus.NOT_BILLABLE.value,
    )
    report_status: Mapped[ReportStatus] = mapped_column(
        Enum(ReportStatus, name="report_status"),
        nullable=False,
        default=ReportStatus.NONE,
        server_default=ReportStatus.NONE.value,
    )

    assigned_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    scheduled_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scheduled_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    estimated_duration_min: Mapped[Optional[int]] = mapped_column(Integer)

    # Money is kept in minor currency units (cents)
    price_total: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    price_subcontractor: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="EUR", server_default="EUR"
    )

    pause_reason: Mapped[Optional[PauseReason]] = mapped_column(
        Enum(PauseReason, name="pause_reason", values_callable=_values)
    )
    pause_note: Mapped[Optional[str]] = mapped_column(Text)
    report_rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    report_rejection_details: Mapped[Optional[str]] = mapped_column(Text)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )  # optimistic lock

    __table_args__ = (
        CheckConstraint("price_total >= 0", name="price_total_non_negative"),
        CheckConstraint("price_subcontractor >= 0", name="price_subcontractor_non_negative"),
        Index("ix_missions__status_assigned", "status", "assigned_user_id"),
    )


class mission_status_history(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mission_id: Mapped[int] = mapped_column(
        ForeignKey("missions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[Optional[MissionStatus]] = mapped_column(
        Enum(MissionStatus, name="mission_status"), nullable=True
    )
    to_status: Mapped[MissionStatus] = mapped_column(
        Enum(MissionStatus, name="mission_status"), nullable=False
    )
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    actor_type: Mapped[ActorType] = mapped_column(
        Enum(ActorType, name="actor_type"),
        nullable=False,
        default=ActorType.SYSTEM,
        index=True,
    )
    actor_id: Mapped[Optional[int]] = mapped_column(Integer)
    context: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    __table_args__ = (
        Index("ix_mission_status_history__mission_created_at", "mission_id", "created_at"),
    )


# ===== Offers =====


class mission_offers(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mission_id: Mapped[int] = mapped_column(
        ForeignKey("missions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    candidate_user_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    state: Mapped[OfferState] = mapped_column(
        Enum(OfferState, name="offer_state"),
        nullable=False,
        default=OfferState.SENT,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    distance_km: Mapped[Optional[float]] = mapped_column(Float(asdecimal=False))
    position_source: Mapped[Optional[str]] = mapped_column(String(16))

    mission: Mapped["missions"] = relationship(lazy="raise_on_sql")
    candidate: Mapped["profiles"] = relationship(lazy="raise_on_sql")

    __table_args__ = (
        CheckConstraint(
            "NOT (accepted_at IS NOT NULL AND refused_at IS NOT NULL)",
            name="accepted_xor_refused",
        ),
        Index("ix_mission_offers__mission_candidate", "mission_id", "candidate_user_id"),
        Index("ix_mission_offers__mission_state", "mission_id", "state"),
        # Only one accepted offer per mission
        Index(
            "uix_mission_offers__mission_accepted_once",
            "mission_id",
            unique=True,
            postgresql_where=text("accepted_at IS NOT NULL"),
            sqlite_where=text("accepted_at IS NOT NULL"),
        ),
    )


# ===== Billing =====


class invoices(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mission_id: Mapped[int] = mapped_column(
        ForeignKey("missions.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    lines: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    subtotal_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    vat_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    total_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="EUR", server_default="EUR"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[Optional[str]] = mapped_column(String(32))
    payment_reference: Mapped[Optional[str]] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("total_minor >= 0", name="total_non_negative"),
    )


# ===== Notifications =====


class notifications_outbox(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    mission_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("missions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    recipient_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), nullable=True, index=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    is_dead: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    __table_args__ = (
        Index("ix_notifications_outbox__pending", "processed_at", "is_dead"),
    )

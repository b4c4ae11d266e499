"""initial schema: profiles, missions, offers, history, invoices, outbox

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

user_role = postgresql.ENUM("admin", "st", "sal", "tech", "client", name="user_role", create_type=False)
location_mode = postgresql.ENUM("gps_realtime", "fixed_address", name="location_mode", create_type=False)
mission_status = postgresql.ENUM(
    "DRAFT", "PUBLISHED", "ASSIGNED", "SCHEDULED", "EN_ROUTE", "IN_PROGRESS", "PAUSED",
    "COMPLETED", "BILLABLE", "INVOICED", "PAID", "CLOSED", "CANCELLED",
    name="mission_status", create_type=False,
)
billing_status = postgresql.ENUM(
    "NOT_BILLABLE", "BILLABLE", "INVOICED", "PAID", name="billing_status", create_type=False
)
report_status = postgresql.ENUM(
    "NONE", "PENDING_REVIEW", "VALIDATED", "REJECTED", name="report_status", create_type=False
)
pause_reason = postgresql.ENUM(
    "client_absent", "no_access", "missing_parts", "safety", "counter_order",
    name="pause_reason", create_type=False,
)
offer_state = postgresql.ENUM(
    "SENT", "ACCEPTED", "REFUSED", "EXPIRED", "CANCELED", name="offer_state", create_type=False
)
actor_type = postgresql.ENUM("SYSTEM", "ADMIN", "CANDIDATE", name="actor_type", create_type=False)

ALL_ENUMS = (
    user_role, location_mode, mission_status, billing_status,
    report_status, pause_reason, offer_state, actor_type,
)

JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def _now(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("full_name", sa.String(160)),
        sa.Column("role", user_role, nullable=False),
        sa.Column("city", sa.String(120)),
        sa.Column("phone", sa.String(32)),
        sa.Column("tg_chat_id", sa.Integer()),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("location_mode", location_mode, nullable=False, server_default="fixed_address"),
        sa.Column("lat", sa.Float()),
        sa.Column("lng", sa.Float()),
        sa.Column("radius_km", sa.Float()),
        _now("created_at"),
        _now("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_profiles"),
    )
    op.create_index("ix_profiles__role", "profiles", ["role"])
    op.create_index("ix_profiles__role_available", "profiles", ["role", "is_available"])

    op.create_table(
        "person_locations",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        _ts("updated_at", nullable=False),
        sa.ForeignKeyConstraint(
            ["user_id"], ["profiles.id"], ondelete="CASCADE",
            name="fk_person_locations__user_id__profiles",
        ),
        sa.PrimaryKeyConstraint("user_id", name="pk_person_locations"),
    )

    op.create_table(
        "user_skills",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("mission_type", sa.String(32), nullable=False),
        sa.ForeignKeyConstraint(
            ["user_id"], ["profiles.id"], ondelete="CASCADE",
            name="fk_user_skills__user_id__profiles",
        ),
        sa.PrimaryKeyConstraint("user_id", "mission_type", name="pk_user_skills"),
    )

    op.create_table(
        "user_city_blackouts",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("city", sa.String(120), nullable=False),
        sa.ForeignKeyConstraint(
            ["user_id"], ["profiles.id"], ondelete="CASCADE",
            name="fk_user_city_blackouts__user_id__profiles",
        ),
        sa.PrimaryKeyConstraint("user_id", "city", name="pk_user_city_blackouts"),
    )

    op.create_table(
        "missions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("type", sa.String(32)),
        sa.Column("description", sa.Text()),
        sa.Column("city", sa.String(120)),
        sa.Column("address", sa.String(255)),
        sa.Column("lat", sa.Float()),
        sa.Column("lng", sa.Float()),
        sa.Column("status", mission_status, nullable=False, server_default="DRAFT"),
        sa.Column("billing_status", billing_status, nullable=False, server_default="NOT_BILLABLE"),
        sa.Column("report_status", report_status, nullable=False, server_default="NONE"),
        sa.Column("assigned_user_id", sa.Integer()),
        _ts("accepted_at"),
        _ts("published_at"),
        _ts("scheduled_start"),
        _ts("scheduled_end"),
        sa.Column("estimated_duration_min", sa.Integer()),
        sa.Column("price_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_subcontractor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("pause_reason", pause_reason),
        sa.Column("pause_note", sa.Text()),
        sa.Column("report_rejection_reason", sa.Text()),
        sa.Column("report_rejection_details", sa.Text()),
        _ts("completed_at"),
        _now("created_at"),
        _now("updated_at"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(
            ["assigned_user_id"], ["profiles.id"], ondelete="RESTRICT",
            name="fk_missions__assigned_user_id__profiles",
        ),
        sa.CheckConstraint("price_total >= 0", name="ck_missions__price_total_non_negative"),
        sa.CheckConstraint(
            "price_subcontractor >= 0", name="ck_missions__price_subcontractor_non_negative"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_missions"),
    )
    op.create_index("ix_missions__type", "missions", ["type"])
    op.create_index("ix_missions__status", "missions", ["status"])
    op.create_index("ix_missions__assigned_user_id", "missions", ["assigned_user_id"])
    op.create_index("ix_missions__created_at", "missions", ["created_at"])
    op.create_index("ix_missions__status_assigned", "missions", ["status", "assigned_user_id"])

    op.create_table(
        "mission_status_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("mission_id", sa.Integer(), nullable=False),
        sa.Column("from_status", mission_status),
        sa.Column("to_status", mission_status, nullable=False),
        sa.Column("operation", sa.String(32), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("actor_type", actor_type, nullable=False),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("context", JSONB, nullable=False),
        _now("created_at"),
        sa.ForeignKeyConstraint(
            ["mission_id"], ["missions.id"], ondelete="CASCADE",
            name="fk_mission_status_history__mission_id__missions",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_mission_status_history"),
    )
    op.create_index("ix_mission_status_history__mission_id", "mission_status_history", ["mission_id"])
    op.create_index("ix_mission_status_history__actor_type", "mission_status_history", ["actor_type"])
    op.create_index("ix_mission_status_history__created_at", "mission_status_history", ["created_at"])
    op.create_index(
        "ix_mission_status_history__mission_created_at",
        "mission_status_history",
        ["mission_id", "created_at"],
    )

    op.create_table(
        "mission_offers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("mission_id", sa.Integer(), nullable=False),
        sa.Column("candidate_user_id", sa.Integer(), nullable=False),
        sa.Column("state", offer_state, nullable=False),
        _ts("created_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("accepted_at"),
        _ts("refused_at"),
        _ts("voided_at"),
        sa.Column("distance_km", sa.Float()),
        sa.Column("position_source", sa.String(16)),
        sa.ForeignKeyConstraint(
            ["mission_id"], ["missions.id"], ondelete="CASCADE",
            name="fk_mission_offers__mission_id__missions",
        ),
        sa.ForeignKeyConstraint(
            ["candidate_user_id"], ["profiles.id"], ondelete="CASCADE",
            name="fk_mission_offers__candidate_user_id__profiles",
        ),
        sa.CheckConstraint(
            "NOT (accepted_at IS NOT NULL AND refused_at IS NOT NULL)",
            name="ck_mission_offers__accepted_xor_refused",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_mission_offers"),
    )
    op.create_index("ix_mission_offers__mission_id", "mission_offers", ["mission_id"])
    op.create_index("ix_mission_offers__candidate_user_id", "mission_offers", ["candidate_user_id"])
    op.create_index("ix_mission_offers__state", "mission_offers", ["state"])
    op.create_index("ix_mission_offers__expires_at", "mission_offers", ["expires_at"])
    op.create_index(
        "ix_mission_offers__mission_candidate", "mission_offers", ["mission_id", "candidate_user_id"]
    )
    op.create_index("ix_mission_offers__mission_state", "mission_offers", ["mission_id", "state"])
    op.create_index(
        "uix_mission_offers__mission_accepted_once",
        "mission_offers",
        ["mission_id"],
        unique=True,
        postgresql_where=sa.text("accepted_at IS NOT NULL"),
        sqlite_where=sa.text("accepted_at IS NOT NULL"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("mission_id", sa.Integer(), nullable=False),
        sa.Column("lines", JSONB, nullable=False),
        sa.Column("subtotal_minor", sa.Integer(), nullable=False),
        sa.Column("vat_minor", sa.Integer(), nullable=False),
        sa.Column("total_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("notes", sa.Text()),
        _ts("issued_at", nullable=False),
        _ts("paid_at"),
        sa.Column("payment_method", sa.String(32)),
        sa.Column("payment_reference", sa.String(120)),
        _now("created_at"),
        sa.ForeignKeyConstraint(
            ["mission_id"], ["missions.id"], ondelete="RESTRICT",
            name="fk_invoices__mission_id__missions",
        ),
        sa.UniqueConstraint("mission_id", name="uq_invoices__mission_id"),
        sa.CheckConstraint("total_minor >= 0", name="ck_invoices__total_non_negative"),
        sa.PrimaryKeyConstraint("id", name="pk_invoices"),
    )

    op.create_table(
        "notifications_outbox",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("mission_id", sa.Integer()),
        sa.Column("recipient_user_id", sa.Integer()),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("is_dead", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("processed_at"),
        _now("created_at"),
        sa.ForeignKeyConstraint(
            ["mission_id"], ["missions.id"], ondelete="CASCADE",
            name="fk_notifications_outbox__mission_id__missions",
        ),
        sa.ForeignKeyConstraint(
            ["recipient_user_id"], ["profiles.id"], ondelete="CASCADE",
            name="fk_notifications_outbox__recipient_user_id__profiles",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_notifications_outbox"),
    )
    op.create_index("ix_notifications_outbox__mission_id", "notifications_outbox", ["mission_id"])
    op.create_index(
        "ix_notifications_outbox__recipient_user_id", "notifications_outbox", ["recipient_user_id"]
    )
    op.create_index("ix_notifications_outbox__created_at", "notifications_outbox", ["created_at"])
    op.create_index(
        "ix_notifications_outbox__pending", "notifications_outbox", ["processed_at", "is_dead"]
    )


def downgrade() -> None:
    op.drop_table("notifications_outbox")
    op.drop_table("invoices")
    op.drop_index("uix_mission_offers__mission_accepted_once", table_name="mission_offers")
    op.drop_table("mission_offers")
    op.drop_table("mission_status_history")
    op.drop_table("missions")
    op.drop_table("user_city_blackouts")
    op.drop_table("user_skills")
    op.drop_table("person_locations")
    op.drop_table("profiles")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)

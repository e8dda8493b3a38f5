"""Initial shift monitoring schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-16 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

shift_status = postgresql.ENUM(
    "scheduled",
    "in_progress",
    "completed",
    "missed",
    name="shift_status",
    create_type=False,
)
check_in_status = postgresql.ENUM("on_time", "late", "missed", name="check_in_status", create_type=False)
attendance_status = postgresql.ENUM("on_time", "late", "absent", name="attendance_status", create_type=False)
alert_reason = postgresql.ENUM("missed_attendance", "missed_checkin", name="alert_reason", create_type=False)
alert_severity = postgresql.ENUM("warning", "critical", name="alert_severity", create_type=False)
alert_resolution = postgresql.ENUM("standard", "forgiven", name="alert_resolution", create_type=False)
audit_actor_type = postgresql.ENUM("ADMIN", "GUARD", "SYSTEM", name="audit_actor_type", create_type=False)

_ENUMS = (
    shift_status,
    check_in_status,
    attendance_status,
    alert_reason,
    alert_severity,
    alert_resolution,
    audit_actor_type,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=1000), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "shift_types",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("name", name="uq_shift_types_name"),
    )

    op.create_table(
        "guards",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "admins",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_index("ix_admins_email", "admins", ["email"], unique=True)

    op.create_table(
        "shifts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("shift_type_id", sa.Integer(), nullable=False),
        sa.Column("guard_id", sa.Integer(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("required_checkin_interval_mins", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("grace_minutes", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("status", shift_status, nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("check_in_status", check_in_status, nullable=True),
        sa.Column("missed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["shift_type_id"], ["shift_types.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["guard_id"], ["guards.id"], ondelete="SET NULL"),
        sa.CheckConstraint("ends_at > starts_at", name="ck_shifts_ends_after_starts"),
        sa.CheckConstraint("missed_count >= 0", name="ck_shifts_missed_count_non_negative"),
        sa.CheckConstraint("required_checkin_interval_mins > 0", name="ck_shifts_interval_positive"),
        sa.CheckConstraint("grace_minutes >= 0", name="ck_shifts_grace_non_negative"),
    )
    op.create_index("ix_shifts_site_id", "shifts", ["site_id"], unique=False)
    op.create_index("ix_shifts_guard_id", "shifts", ["guard_id"], unique=False)
    op.create_index("ix_shifts_starts_at", "shifts", ["starts_at"], unique=False)
    op.create_index("ix_shifts_ends_at", "shifts", ["ends_at"], unique=False)
    op.create_index("ix_shifts_status", "shifts", ["status"], unique=False)

    op.create_table(
        "attendances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("shift_id", sa.Integer(), nullable=False),
        sa.Column("guard_id", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", attendance_status, nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["guard_id"], ["guards.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("shift_id", name="uq_attendances_shift_id"),
    )
    op.create_index("ix_attendances_guard_id", "attendances", ["guard_id"], unique=False)

    op.create_table(
        "checkins",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("shift_id", sa.Integer(), nullable=False),
        sa.Column("guard_id", sa.Integer(), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", check_in_status, nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False, server_default=sa.text("'api'")),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["guard_id"], ["guards.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_checkins_shift_id", "checkins", ["shift_id"], unique=False)
    op.create_index("ix_checkins_guard_id", "checkins", ["guard_id"], unique=False)
    op.create_index("ix_checkins_at", "checkins", ["at"], unique=False)

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("shift_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("reason", alert_reason, nullable=False),
        sa.Column("severity", alert_severity, nullable=False, server_default=sa.text("'warning'")),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by_id", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by_id", sa.Integer(), nullable=True),
        sa.Column("resolution_type", alert_resolution, nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["acknowledged_by_id"], ["admins.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["resolved_by_id"], ["admins.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("shift_id", "reason", "window_start", name="uq_alerts_shift_reason_window"),
    )
    op.create_index("ix_alerts_shift_id", "alerts", ["shift_id"], unique=False)
    op.create_index("ix_alerts_site_id", "alerts", ["site_id"], unique=False)
    op.create_index("ix_alerts_created_at", "alerts", ["created_at"], unique=False)
    op.create_index("ix_alerts_resolved_at", "alerts", ["resolved_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("alerts")
    op.drop_table("checkins")
    op.drop_table("attendances")
    op.drop_table("shifts")
    op.drop_index("ix_admins_email", table_name="admins")
    op.drop_table("admins")
    op.drop_table("guards")
    op.drop_table("shift_types")
    op.drop_table("sites")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)

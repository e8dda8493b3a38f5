from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shiftwatch.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ShiftStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MISSED = "missed"


class CheckInStatus(str, enum.Enum):
    ON_TIME = "on_time"
    LATE = "late"
    MISSED = "missed"


class AttendanceStatus(str, enum.Enum):
    ON_TIME = "on_time"
    LATE = "late"
    ABSENT = "absent"


class AlertReason(str, enum.Enum):
    MISSED_ATTENDANCE = "missed_attendance"
    MISSED_CHECKIN = "missed_checkin"


class AlertSeverity(str, enum.Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertResolution(str, enum.Enum):
    STANDARD = "standard"
    FORGIVEN = "forgiven"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    GUARD = "GUARD"
    SYSTEM = "SYSTEM"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    shifts: Mapped[list[Shift]] = relationship(back_populates="site")
    alerts: Mapped[list[Alert]] = relationship(back_populates="site")


class ShiftType(Base):
    __tablename__ = "shift_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    shifts: Mapped[list[Shift]] = relationship(back_populates="shift_type")


class Guard(Base):
    __tablename__ = "guards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    token_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    shifts: Mapped[list[Shift]] = relationship(back_populates="guard")


class Admin(Base):
    __tablename__ = "admins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    token_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="ck_shifts_ends_after_starts"),
        CheckConstraint("missed_count >= 0", name="ck_shifts_missed_count_non_negative"),
        CheckConstraint("required_checkin_interval_mins > 0", name="ck_shifts_interval_positive"),
        CheckConstraint("grace_minutes >= 0", name="ck_shifts_grace_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_type_id: Mapped[int] = mapped_column(
        ForeignKey("shift_types.id", ondelete="RESTRICT"),
        nullable=False,
    )
    guard_id: Mapped[int | None] = mapped_column(
        ForeignKey("guards.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    shift_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    required_checkin_interval_mins: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    grace_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[ShiftStatus] = mapped_column(
        Enum(ShiftStatus, name="shift_status", values_callable=_enum_values),
        nullable=False,
        default=ShiftStatus.SCHEDULED,
        index=True,
    )
    check_in_status: Mapped[CheckInStatus | None] = mapped_column(
        Enum(CheckInStatus, name="check_in_status", values_callable=_enum_values),
        nullable=True,
    )
    missed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    site: Mapped[Site] = relationship(back_populates="shifts")
    shift_type: Mapped[ShiftType] = relationship(back_populates="shifts")
    guard: Mapped[Guard | None] = relationship(back_populates="shifts")
    attendance: Mapped[Attendance | None] = relationship(back_populates="shift", uselist=False)
    checkins: Mapped[list[Checkin]] = relationship(back_populates="shift", order_by="Checkin.at")
    alerts: Mapped[list[Alert]] = relationship(back_populates="shift")


class Attendance(Base):
    __tablename__ = "attendances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int] = mapped_column(
        ForeignKey("shifts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    guard_id: Mapped[int | None] = mapped_column(
        ForeignKey("guards.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status", values_callable=_enum_values),
        nullable=False,
    )
    # "metadata" is reserved on declarative classes.
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    shift: Mapped[Shift] = relationship(back_populates="attendance")
    guard: Mapped[Guard | None] = relationship()


class Checkin(Base):
    __tablename__ = "checkins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int] = mapped_column(ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    guard_id: Mapped[int | None] = mapped_column(
        ForeignKey("guards.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[CheckInStatus] = mapped_column(
        Enum(CheckInStatus, name="check_in_status", values_callable=_enum_values),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="api", server_default=text("'api'"))
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    shift: Mapped[Shift] = relationship(back_populates="checkins")
    guard: Mapped[Guard | None] = relationship()


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        UniqueConstraint("shift_id", "reason", "window_start", name="uq_alerts_shift_reason_window"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int] = mapped_column(ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    reason: Mapped[AlertReason] = mapped_column(
        Enum(AlertReason, name="alert_reason", values_callable=_enum_values),
        nullable=False,
    )
    severity: Mapped[AlertSeverity] = mapped_column(
        Enum(AlertSeverity, name="alert_severity", values_callable=_enum_values),
        nullable=False,
        default=AlertSeverity.WARNING,
    )
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("admins.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    resolved_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("admins.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolution_type: Mapped[AlertResolution | None] = mapped_column(
        Enum(AlertResolution, name="alert_resolution", values_callable=_enum_values),
        nullable=True,
    )
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    shift: Mapped[Shift] = relationship(back_populates="alerts")
    site: Mapped[Site] = relationship(back_populates="alerts")
    ack_admin: Mapped[Admin | None] = relationship(foreign_keys=[acknowledged_by_id])
    resolver_admin: Mapped[Admin | None] = relationship(foreign_keys=[resolved_by_id])


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

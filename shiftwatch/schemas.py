from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from shiftwatch.models import (
    AlertReason,
    AlertResolution,
    AlertSeverity,
    AttendanceStatus,
    CheckInStatus,
    ShiftStatus,
)


class LocationMetadata(BaseModel):
    kind: Literal["location"] = "location"
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)


class OtherMetadata(BaseModel):
    kind: Literal["other"] = "other"
    data: dict[str, Any] = Field(default_factory=dict)


EventMetadata = Annotated[Union[LocationMetadata, OtherMetadata], Field(discriminator="kind")]


class AttendanceCreateRequest(BaseModel):
    metadata: EventMetadata | None = None


class CheckinCreateRequest(BaseModel):
    source: str = Field(default="api", min_length=1, max_length=64)
    metadata: EventMetadata | None = None


class AttendanceRead(BaseModel):
    id: int
    shift_id: int
    guard_id: int | None
    recorded_at: datetime
    status: AttendanceStatus
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="meta")

    model_config = ConfigDict(from_attributes=True)


class CheckinRead(BaseModel):
    id: int
    shift_id: int
    guard_id: int | None
    at: datetime
    status: CheckInStatus
    source: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="meta")

    model_config = ConfigDict(from_attributes=True)


class SiteRead(BaseModel):
    id: int
    name: str
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    model_config = ConfigDict(from_attributes=True)


class ShiftTypeRead(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class GuardRead(BaseModel):
    id: int
    name: str
    phone: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AdminRead(BaseModel):
    id: int
    name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class ShiftRead(BaseModel):
    id: int
    site_id: int
    shift_type_id: int
    guard_id: int | None
    shift_date: date
    starts_at: datetime
    ends_at: datetime
    required_checkin_interval_mins: int
    grace_minutes: int
    status: ShiftStatus
    check_in_status: CheckInStatus | None = None
    missed_count: int
    last_heartbeat_at: datetime | None = None
    guard: GuardRead | None = None
    shift_type: ShiftTypeRead | None = None

    model_config = ConfigDict(from_attributes=True)


class AlertRead(BaseModel):
    id: int
    shift_id: int
    site_id: int
    reason: AlertReason
    severity: AlertSeverity
    window_start: datetime
    created_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by_id: int | None = None
    resolved_at: datetime | None = None
    resolved_by_id: int | None = None
    resolution_type: AlertResolution | None = None
    resolution_note: str | None = None
    site: SiteRead | None = None
    shift: ShiftRead | None = None
    ack_admin: AdminRead | None = None
    resolver_admin: AdminRead | None = None

    model_config = ConfigDict(from_attributes=True)


class AlertResolveRequest(BaseModel):
    outcome: Literal["resolve", "forgive"]
    note: str = Field(default="", max_length=2000)


class AlertEvent(BaseModel):
    type: Literal["alert_created", "alert_updated"]
    alert: dict[str, Any]


class SessionRevokedEvent(BaseModel):
    type: Literal["session_revoked"] = "session_revoked"
    newTokenVersion: int


class CheckinWindowRead(BaseModel):
    status: Literal["early", "open", "late", "completed", "ended"]
    slot_start: datetime | None = None
    slot_deadline: datetime | None = None
    next_due_at: datetime | None = None
    is_last_slot: bool = False


class CheckinActionResponse(BaseModel):
    checkin: CheckinRead
    shift_status: ShiftStatus
    check_in_status: CheckInStatus | None
    next_due_at: datetime | None = None


class ActiveShiftResponse(BaseModel):
    active_shift: ShiftRead | None = None
    attendance: AttendanceRead | None = None
    checkin_window: CheckinWindowRead | None = None
    next_shift: ShiftRead | None = None


class GuardLoginRequest(BaseModel):
    guard_id: int = Field(ge=1)
    password: str = Field(min_length=1, max_length=256)


class AdminLoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int
    token_version: int


class LogoutResponse(BaseModel):
    ok: bool = True

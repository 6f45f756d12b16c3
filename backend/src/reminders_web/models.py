from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ExecutionStatus = Literal["sent", "replied", "completed", "failed"]
FollowUpStatus = Literal["pending", "sent", "skipped", "cancelled_by_user"]
DailyStatus = Literal["pending", "sent", "replied", "completed", "missed", "failed"]
MessageDirection = Literal["inbound", "outbound"]
MessageType = Literal["reminder", "followup", "reply", "confirmation"]
InputKind = Literal["text", "button", "list"]
LogStatus = Literal["sent", "failed", "received"]
DriverResultType = Literal["reminder", "followup"]
DriverResultStatus = Literal["sent", "failed", "skipped", "error"]

_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _normalize_clock(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if not _CLOCK_RE.match(normalized):
        raise ValueError("time must use 24h HH:MM format")
    return normalized


class ReminderCreateRequest(BaseModel):
    phone: str = Field(min_length=5, max_length=32)
    title: str = Field(min_length=1, max_length=256)
    message: str = Field(min_length=1, max_length=4096)
    reminder_time: str
    follow_up_message: str = Field(default="", max_length=4096)
    follow_up_time: str | None = None
    active: bool = True

    @field_validator("reminder_time")
    @classmethod
    def _validate_reminder_time(cls, value: str) -> str:
        normalized = _normalize_clock(value)
        if normalized is None:
            raise ValueError("reminder_time is required")
        return normalized

    @field_validator("follow_up_time")
    @classmethod
    def _validate_follow_up_time(cls, value: str | None) -> str | None:
        return _normalize_clock(value)

    @model_validator(mode="after")
    def _follow_up_after_reminder(self) -> "ReminderCreateRequest":
        if self.follow_up_time is not None and self.follow_up_time <= self.reminder_time:
            raise ValueError("follow_up_time must be after reminder_time")
        return self


class ReminderUpdateRequest(BaseModel):
    phone: str | None = Field(default=None, min_length=5, max_length=32)
    title: str | None = Field(default=None, min_length=1, max_length=256)
    message: str | None = Field(default=None, min_length=1, max_length=4096)
    reminder_time: str | None = None
    follow_up_message: str | None = Field(default=None, max_length=4096)
    follow_up_time: str | None = None
    active: bool | None = None
    daily_status: Literal["completed", "replied"] | None = None

    @field_validator("reminder_time", "follow_up_time")
    @classmethod
    def _validate_clock(cls, value: str | None) -> str | None:
        return _normalize_clock(value)


class ReminderItem(BaseModel):
    reminder_id: str
    phone: str
    title: str
    message: str
    reminder_time: str
    follow_up_message: str
    follow_up_time: str | None = None
    active: bool
    daily_status: DailyStatus
    last_sent_at: datetime | None = None
    last_replied_at: datetime | None = None
    reply_text: str | None = None
    follow_up_sent: bool = False
    created_at: datetime
    updated_at: datetime


class ReminderListResponse(BaseModel):
    date: str
    items: list[ReminderItem]


class ExecutionItem(BaseModel):
    execution_id: str
    reminder_id: str
    phone_masked: str
    date: str
    status: ExecutionStatus
    sent_at: datetime
    reply_received_at: datetime | None = None
    follow_up_status: FollowUpStatus
    follow_up_sent_at: datetime | None = None


class ExecutionLookupResponse(BaseModel):
    date: str
    items: list[ExecutionItem]


class BlockFollowUpRequest(BaseModel):
    phone: str = Field(min_length=5, max_length=32)
    reminder_id: str | None = None


class BlockFollowUpResponse(BaseModel):
    blocked: int
    executions: list[ExecutionItem]


class DriverRunRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DriverResult(BaseModel):
    id: str
    type: DriverResultType
    status: DriverResultStatus
    reason: str | None = None
    phone_masked: str | None = None
    error: str | None = None


class DriverRunResponse(BaseModel):
    processed_count: int
    results: list[DriverResult]
    server_local_time: str


class InboundMessage(BaseModel):
    phone: str
    kind: InputKind = "text"
    text: str = ""
    provider_message_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_button_payload(self) -> bool:
        return self.kind in {"button", "list"}


class InboundAck(BaseModel):
    accepted: bool = True
    matched: bool = False
    applied: int = 0
    completion: bool = False
    log_id: str | None = None
    error: str | None = None

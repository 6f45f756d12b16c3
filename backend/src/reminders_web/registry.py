from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import Boolean, DateTime, String, Text, case, create_engine, delete, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    DailyStatus,
    ReminderCreateRequest,
    ReminderItem,
    ReminderListResponse,
    ReminderUpdateRequest,
)
from .phones import format_for_storage, mask_phone

if TYPE_CHECKING:
    from .executions import ExecutionRecord, ExecutionRepository
    from .local_clock import LocalClock

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "phone",
    "title",
    "message",
    "reminder_time",
    "follow_up_message",
    "follow_up_time",
    "active",
}
# A late "missed" write never replaces a reply outcome.
_REPLY_STATUSES = ("completed", "replied")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    phone: str
    title: str
    message: str
    reminder_time: str
    follow_up_message: str
    follow_up_time: str | None
    active: bool
    daily_status: DailyStatus
    last_sent_at: datetime | None
    last_replied_at: datetime | None
    reply_text: str | None
    follow_up_sent: bool
    created_at: datetime
    updated_at: datetime


class ReminderRepository(Protocol):
    def reset(self) -> None: ...

    def create_reminder(
        self,
        *,
        phone: str,
        title: str,
        message: str,
        reminder_time: str,
        follow_up_message: str,
        follow_up_time: str | None,
        active: bool,
    ) -> ReminderRecord: ...

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None: ...

    def list_reminders(self) -> list[ReminderRecord]: ...

    def list_active(self) -> list[ReminderRecord]: ...

    def update_reminder(self, reminder_id: str, changes: dict[str, Any]) -> ReminderRecord: ...

    def delete_reminder(self, reminder_id: str) -> bool: ...

    def record_sent(self, reminder_id: str, *, sent_at: datetime) -> None: ...

    def record_outcome(
        self,
        reminder_id: str,
        *,
        daily_status: DailyStatus,
        deactivate: bool,
        replied_at: datetime | None = None,
        reply_text: str | None = None,
        follow_up_sent: bool | None = None,
    ) -> None: ...


class InMemoryReminderRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._reminders: dict[str, ReminderRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._reminders.clear()

    def create_reminder(
        self,
        *,
        phone: str,
        title: str,
        message: str,
        reminder_time: str,
        follow_up_message: str,
        follow_up_time: str | None,
        active: bool,
    ) -> ReminderRecord:
        with self._lock:
            now = _now_utc()
            record = ReminderRecord(
                reminder_id=f"rem_{next(self._counter):06d}",
                phone=phone,
                title=title,
                message=message,
                reminder_time=reminder_time,
                follow_up_message=follow_up_message,
                follow_up_time=follow_up_time,
                active=active,
                daily_status="pending",
                last_sent_at=None,
                last_replied_at=None,
                reply_text=None,
                follow_up_sent=False,
                created_at=now,
                updated_at=now,
            )
            self._reminders[record.reminder_id] = record
            return record

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        return self._reminders.get(reminder_id)

    def list_reminders(self) -> list[ReminderRecord]:
        with self._lock:
            values = list(self._reminders.values())
        return sorted(values, key=lambda value: value.created_at, reverse=True)

    def list_active(self) -> list[ReminderRecord]:
        with self._lock:
            return [value for value in self._reminders.values() if value.active]

    def update_reminder(self, reminder_id: str, changes: dict[str, Any]) -> ReminderRecord:
        with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None:
                raise ReminderNotFoundError(reminder_id)
            values = {key: value for key, value in changes.items() if key in _UPDATABLE_FIELDS}
            updated = ReminderRecord(**{**current.__dict__, **values, "updated_at": _now_utc()})
            self._reminders[reminder_id] = updated
            return updated

    def delete_reminder(self, reminder_id: str) -> bool:
        with self._lock:
            return self._reminders.pop(reminder_id, None) is not None

    def record_sent(self, reminder_id: str, *, sent_at: datetime) -> None:
        with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None:
                return
            values: dict[str, Any] = {"last_sent_at": sent_at, "updated_at": _now_utc()}
            if current.active:
                values.update({"daily_status": "sent", "follow_up_sent": False, "reply_text": None})
            self._reminders[reminder_id] = ReminderRecord(**{**current.__dict__, **values})

    def record_outcome(
        self,
        reminder_id: str,
        *,
        daily_status: DailyStatus,
        deactivate: bool,
        replied_at: datetime | None = None,
        reply_text: str | None = None,
        follow_up_sent: bool | None = None,
    ) -> None:
        with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None:
                return
            if daily_status == "missed" and current.daily_status in _REPLY_STATUSES:
                daily_status = current.daily_status
            values: dict[str, Any] = {"daily_status": daily_status, "updated_at": _now_utc()}
            if deactivate:
                values["active"] = False
            if replied_at is not None:
                values["last_replied_at"] = replied_at
            if reply_text is not None:
                values["reply_text"] = reply_text
            if follow_up_sent is not None:
                values["follow_up_sent"] = follow_up_sent
            self._reminders[reminder_id] = ReminderRecord(**{**current.__dict__, **values})


class RegistryBase(DeclarativeBase):
    pass


class _ReminderRow(RegistryBase):
    __tablename__ = "reminders"

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    reminder_time: Mapped[str] = mapped_column(String(5), nullable=False)
    follow_up_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    follow_up_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    daily_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    last_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_replied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reply_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    follow_up_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyReminderRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RegistryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ReminderRow))

    def create_reminder(
        self,
        *,
        phone: str,
        title: str,
        message: str,
        reminder_time: str,
        follow_up_message: str,
        follow_up_time: str | None,
        active: bool,
    ) -> ReminderRecord:
        now = _now_utc()
        row = _ReminderRow(
            reminder_id=f"rem_{secrets.token_hex(8)}",
            phone=phone,
            title=title,
            message=message,
            reminder_time=reminder_time,
            follow_up_message=follow_up_message,
            follow_up_time=follow_up_time,
            active=active,
            daily_status="pending",
            follow_up_sent=False,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
                session.flush()
                return self._record(row)

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRow, reminder_id)
            return self._record(row) if row is not None else None

    def list_reminders(self) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.scalars(select(_ReminderRow).order_by(_ReminderRow.created_at.desc())).all()
            return [self._record(row) for row in rows]

    def list_active(self) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ReminderRow)
                .where(_ReminderRow.active.is_(True))
                .order_by(_ReminderRow.created_at.asc())
            ).all()
            return [self._record(row) for row in rows]

    def update_reminder(self, reminder_id: str, changes: dict[str, Any]) -> ReminderRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id)
                if row is None:
                    raise ReminderNotFoundError(reminder_id)
                for key, value in changes.items():
                    if key in _UPDATABLE_FIELDS:
                        setattr(row, key, value)
                row.updated_at = _now_utc()
                session.flush()
                return self._record(row)

    def delete_reminder(self, reminder_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(delete(_ReminderRow).where(_ReminderRow.reminder_id == reminder_id))
                return result.rowcount > 0

    def record_sent(self, reminder_id: str, *, sent_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(
                    update(_ReminderRow)
                    .where(_ReminderRow.reminder_id == reminder_id)
                    .values(last_sent_at=sent_at, updated_at=_now_utc())
                )
                session.execute(
                    update(_ReminderRow)
                    .where(_ReminderRow.reminder_id == reminder_id)
                    .where(_ReminderRow.active.is_(True))
                    .values(daily_status="sent", follow_up_sent=False, reply_text=None)
                )

    def record_outcome(
        self,
        reminder_id: str,
        *,
        daily_status: DailyStatus,
        deactivate: bool,
        replied_at: datetime | None = None,
        reply_text: str | None = None,
        follow_up_sent: bool | None = None,
    ) -> None:
        values: dict[str, Any] = {"daily_status": daily_status, "updated_at": _now_utc()}
        if daily_status == "missed":
            values["daily_status"] = case(
                (_ReminderRow.daily_status.in_(_REPLY_STATUSES), _ReminderRow.daily_status),
                else_=daily_status,
            )
        if deactivate:
            values["active"] = False
        if replied_at is not None:
            values["last_replied_at"] = replied_at
        if reply_text is not None:
            values["reply_text"] = reply_text
        if follow_up_sent is not None:
            values["follow_up_sent"] = follow_up_sent
        with self._session() as session:
            with session.begin():
                session.execute(
                    update(_ReminderRow).where(_ReminderRow.reminder_id == reminder_id).values(**values)
                )

    @staticmethod
    def _record(row: _ReminderRow) -> ReminderRecord:
        return ReminderRecord(
            reminder_id=row.reminder_id,
            phone=row.phone,
            title=row.title,
            message=row.message,
            reminder_time=row.reminder_time,
            follow_up_message=row.follow_up_message or "",
            follow_up_time=row.follow_up_time,
            active=row.active,
            daily_status=row.daily_status,  # type: ignore[arg-type]
            last_sent_at=_coerce_utc(row.last_sent_at),
            last_replied_at=_coerce_utc(row.last_replied_at),
            reply_text=row.reply_text,
            follow_up_sent=row.follow_up_sent,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )


def create_reminder_repository(*, backend: str, database_url: str) -> ReminderRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRepository(database_url)
    return InMemoryReminderRepository()


def derive_daily_status(execution: ExecutionRecord | None) -> DailyStatus:
    """Dashboard status for one reminder on one day, read from its execution."""
    if execution is None:
        return "pending"
    if execution.status in {"completed", "replied", "failed"}:
        return execution.status
    if execution.follow_up_status == "sent":
        return "missed"
    return "sent"


class ReminderRegistryService:
    def __init__(
        self,
        *,
        repository: ReminderRepository,
        executions: ExecutionRepository,
        clock: LocalClock,
        default_country_code: str,
    ) -> None:
        self._repository = repository
        self._executions = executions
        self._clock = clock
        self._default_country_code = default_country_code

    def create(self, payload: ReminderCreateRequest) -> ReminderItem:
        record = self._repository.create_reminder(
            phone=format_for_storage(payload.phone, default_country_code=self._default_country_code),
            title=payload.title.strip(),
            message=payload.message,
            reminder_time=payload.reminder_time,
            follow_up_message=payload.follow_up_message,
            follow_up_time=payload.follow_up_time,
            active=payload.active,
        )
        logger.info(
            "reminder %s created for %s at %s",
            record.reminder_id,
            mask_phone(record.phone),
            record.reminder_time,
        )
        return self._to_item(record, execution=None, today=None)

    def update(self, reminder_id: str, payload: ReminderUpdateRequest) -> ReminderItem:
        current = self._repository.get_reminder(reminder_id)
        if current is None:
            raise ReminderNotFoundError(reminder_id)

        changes = payload.model_dump(exclude_unset=True, exclude={"daily_status"})
        changes = {key: value for key, value in changes.items() if value is not None or key == "follow_up_time"}
        if "phone" in changes:
            changes["phone"] = format_for_storage(changes["phone"], default_country_code=self._default_country_code)
        reminder_time = changes.get("reminder_time") or current.reminder_time
        follow_up_time = changes["follow_up_time"] if "follow_up_time" in changes else current.follow_up_time
        if follow_up_time is not None and follow_up_time <= reminder_time:
            raise ValueError("follow_up_time must be after reminder_time")
        record = self._repository.update_reminder(reminder_id, changes) if changes else current

        today = self._clock.today()
        if payload.daily_status is not None:
            self._apply_manual_status(record, payload.daily_status, today=today)
            record = self._repository.get_reminder(reminder_id) or record
        execution = self._executions.get_execution_for(reminder_id, today)
        return self._to_item(record, execution=execution, today=today)

    def delete(self, reminder_id: str) -> None:
        if not self._repository.delete_reminder(reminder_id):
            raise ReminderNotFoundError(reminder_id)

    def list_for_today(self) -> ReminderListResponse:
        today = self._clock.today()
        executions = {value.reminder_id: value for value in self._executions.list_executions_for_date(today)}
        items = [
            self._to_item(record, execution=executions.get(record.reminder_id), today=today)
            for record in self._repository.list_reminders()
        ]
        return ReminderListResponse(date=today, items=items)

    def _apply_manual_status(self, record: ReminderRecord, status: str, *, today: str) -> None:
        execution = self._executions.get_execution_for(record.reminder_id, today)
        now = self._clock.now_utc()
        if execution is not None:
            applied = self._executions.apply_reply(
                execution.execution_id,
                status=status,  # type: ignore[arg-type]
                replied_at=now,
            )
            if applied is None:
                logger.info(
                    "manual status %s ignored for execution %s (already %s)",
                    status,
                    execution.execution_id,
                    execution.status,
                )
        self._repository.record_outcome(
            record.reminder_id,
            daily_status=status,  # type: ignore[arg-type]
            deactivate=True,
            replied_at=now,
        )

    def _to_item(self, record: ReminderRecord, *, execution: ExecutionRecord | None, today: str | None) -> ReminderItem:
        daily_status: DailyStatus = record.daily_status
        last_sent_at = record.last_sent_at
        reply_text = record.reply_text
        follow_up_sent = record.follow_up_sent
        if today is not None:
            daily_status = derive_daily_status(execution)
            if execution is None:
                # Manual overrides without a send today still show on the dashboard.
                if record.last_replied_at is not None and self._clock.today(record.last_replied_at) == today:
                    daily_status = record.daily_status
                last_sent_at = None
                reply_text = None
                follow_up_sent = False
            else:
                follow_up_sent = execution.follow_up_status == "sent"
        return ReminderItem(
            reminder_id=record.reminder_id,
            phone=record.phone,
            title=record.title,
            message=record.message,
            reminder_time=record.reminder_time,
            follow_up_message=record.follow_up_message,
            follow_up_time=record.follow_up_time,
            active=record.active,
            daily_status=daily_status,
            last_sent_at=last_sent_at,
            last_replied_at=record.last_replied_at,
            reply_text=reply_text,
            follow_up_sent=follow_up_sent,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Literal, Protocol

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    ExecutionItem,
    ExecutionStatus,
    FollowUpStatus,
    InputKind,
    LogStatus,
    MessageDirection,
    MessageType,
)
from .phones import mask_phone, matches

ReplyStatus = Literal["replied", "completed"]
FollowUpResolution = Literal["sent", "skipped"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    reminder_id: str
    phone: str
    date: str
    status: ExecutionStatus
    sent_at: datetime
    reply_received_at: datetime | None
    follow_up_status: FollowUpStatus
    follow_up_sent_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    def to_item(self) -> ExecutionItem:
        return ExecutionItem(
            execution_id=self.execution_id,
            reminder_id=self.reminder_id,
            phone_masked=mask_phone(self.phone),
            date=self.date,
            status=self.status,
            sent_at=self.sent_at,
            reply_received_at=self.reply_received_at,
            follow_up_status=self.follow_up_status,
            follow_up_sent_at=self.follow_up_sent_at,
        )


@dataclass(frozen=True)
class MessageLogRecord:
    log_id: str
    reminder_id: str | None
    phone: str
    direction: MessageDirection
    message_type: MessageType
    content: str
    input_kind: InputKind | None
    status: LogStatus
    provider_message_id: str | None
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


class ExecutionRepository(Protocol):
    def reset(self) -> None: ...

    def insert_execution(
        self,
        *,
        reminder_id: str,
        phone: str,
        date: str,
        sent_at: datetime,
    ) -> tuple[ExecutionRecord, bool]: ...

    def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    def get_execution_for(self, reminder_id: str, date: str) -> ExecutionRecord | None: ...

    def get_latest_execution(self, reminder_id: str) -> ExecutionRecord | None: ...

    def list_executions_for_date(self, date: str) -> list[ExecutionRecord]: ...

    def list_pending_followups(self, date: str) -> list[ExecutionRecord]: ...

    def list_executions_for_phone(self, phone: str, date: str) -> list[ExecutionRecord]: ...

    def apply_reply(
        self,
        execution_id: str,
        *,
        status: ReplyStatus,
        replied_at: datetime,
    ) -> ExecutionRecord | None: ...

    def resolve_followup(
        self,
        execution_id: str,
        *,
        resolution: FollowUpResolution,
        resolved_at: datetime,
    ) -> ExecutionRecord | None: ...

    def append_log(
        self,
        *,
        reminder_id: str | None,
        phone: str,
        direction: MessageDirection,
        message_type: MessageType,
        content: str,
        status: LogStatus,
        input_kind: InputKind | None = None,
        provider_message_id: str | None = None,
        raw_response: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> MessageLogRecord: ...

    def list_inbound_logs_since(self, since: datetime) -> list[MessageLogRecord]: ...

    def list_logs(self, *, reminder_id: str | None = None) -> list[MessageLogRecord]: ...


class InMemoryExecutionRepository:
    """Dict-backed store; every read-modify-write runs under one lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._execution_counter = count(1)
        self._log_counter = count(1)
        self._executions: dict[str, ExecutionRecord] = {}
        self._by_reminder_date: dict[tuple[str, str], str] = {}
        self._logs: list[MessageLogRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._execution_counter = count(1)
            self._log_counter = count(1)
            self._executions.clear()
            self._by_reminder_date.clear()
            self._logs.clear()

    def insert_execution(
        self,
        *,
        reminder_id: str,
        phone: str,
        date: str,
        sent_at: datetime,
    ) -> tuple[ExecutionRecord, bool]:
        with self._lock:
            existing_id = self._by_reminder_date.get((reminder_id, date))
            if existing_id is not None:
                return self._executions[existing_id], False
            now = _now_utc()
            record = ExecutionRecord(
                execution_id=f"exe_{next(self._execution_counter):06d}",
                reminder_id=reminder_id,
                phone=phone,
                date=date,
                status="sent",
                sent_at=sent_at,
                reply_received_at=None,
                follow_up_status="pending",
                follow_up_sent_at=None,
                version=1,
                created_at=now,
                updated_at=now,
            )
            self._executions[record.execution_id] = record
            self._by_reminder_date[(reminder_id, date)] = record.execution_id
            return record, True

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return self._executions.get(execution_id)

    def get_execution_for(self, reminder_id: str, date: str) -> ExecutionRecord | None:
        execution_id = self._by_reminder_date.get((reminder_id, date))
        if execution_id is None:
            return None
        return self._executions.get(execution_id)

    def get_latest_execution(self, reminder_id: str) -> ExecutionRecord | None:
        with self._lock:
            candidates = [value for value in self._executions.values() if value.reminder_id == reminder_id]
        if not candidates:
            return None
        return max(candidates, key=lambda value: value.date)

    def list_executions_for_date(self, date: str) -> list[ExecutionRecord]:
        with self._lock:
            values = [value for value in self._executions.values() if value.date == date]
        return sorted(values, key=lambda value: value.sent_at)

    def list_pending_followups(self, date: str) -> list[ExecutionRecord]:
        return [
            value
            for value in self.list_executions_for_date(date)
            if value.status == "sent" and value.follow_up_status == "pending"
        ]

    def list_executions_for_phone(self, phone: str, date: str) -> list[ExecutionRecord]:
        return [value for value in self.list_executions_for_date(date) if matches(value.phone, phone)]

    def apply_reply(
        self,
        execution_id: str,
        *,
        status: ReplyStatus,
        replied_at: datetime,
    ) -> ExecutionRecord | None:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None or current.status != "sent":
                return None
            follow_up_status = "cancelled_by_user" if current.follow_up_status == "pending" else current.follow_up_status
            updated = ExecutionRecord(
                **{
                    **current.__dict__,
                    "status": status,
                    "reply_received_at": replied_at,
                    "follow_up_status": follow_up_status,
                    "version": current.version + 1,
                    "updated_at": _now_utc(),
                }
            )
            self._executions[execution_id] = updated
            return updated

    def resolve_followup(
        self,
        execution_id: str,
        *,
        resolution: FollowUpResolution,
        resolved_at: datetime,
    ) -> ExecutionRecord | None:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None or current.follow_up_status != "pending":
                return None
            updated = ExecutionRecord(
                **{
                    **current.__dict__,
                    "follow_up_status": resolution,
                    "follow_up_sent_at": resolved_at if resolution == "sent" else None,
                    "version": current.version + 1,
                    "updated_at": _now_utc(),
                }
            )
            self._executions[execution_id] = updated
            return updated

    def append_log(
        self,
        *,
        reminder_id: str | None,
        phone: str,
        direction: MessageDirection,
        message_type: MessageType,
        content: str,
        status: LogStatus,
        input_kind: InputKind | None = None,
        provider_message_id: str | None = None,
        raw_response: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> MessageLogRecord:
        with self._lock:
            record = MessageLogRecord(
                log_id=f"log_{next(self._log_counter):06d}",
                reminder_id=reminder_id,
                phone=phone,
                direction=direction,
                message_type=message_type,
                content=content,
                input_kind=input_kind,
                status=status,
                provider_message_id=provider_message_id,
                created_at=_coerce_utc(created_at) or _now_utc(),
                raw_response=dict(raw_response or {}),
            )
            self._logs.append(record)
            return record

    def list_inbound_logs_since(self, since: datetime) -> list[MessageLogRecord]:
        normalized = _coerce_utc(since)
        with self._lock:
            logs = list(self._logs)
        return [
            value
            for value in logs
            if value.direction == "inbound" and value.created_at > normalized
        ]

    def list_logs(self, *, reminder_id: str | None = None) -> list[MessageLogRecord]:
        if reminder_id is None:
            return list(self._logs)
        return [value for value in self._logs if value.reminder_id == reminder_id]


class ExecutionsBase(DeclarativeBase):
    pass


class _ExecutionRow(ExecutionsBase):
    __tablename__ = "reminder_executions"
    __table_args__ = (
        UniqueConstraint("reminder_id", "date", name="uq_reminder_executions_reminder_date"),
        Index("ix_reminder_executions_phone_date", "phone", "date"),
    )

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reminder_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reply_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    follow_up_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    follow_up_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageLogRow(ExecutionsBase):
    __tablename__ = "message_logs"

    log_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reminder_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    input_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    raw_response_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyExecutionRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ExecutionsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageLogRow))
                session.execute(delete(_ExecutionRow))

    def insert_execution(
        self,
        *,
        reminder_id: str,
        phone: str,
        date: str,
        sent_at: datetime,
    ) -> tuple[ExecutionRecord, bool]:
        now = _now_utc()
        row = _ExecutionRow(
            execution_id=f"exe_{secrets.token_hex(8)}",
            reminder_id=reminder_id,
            phone=phone,
            date=date,
            status="sent",
            sent_at=_coerce_utc(sent_at),
            follow_up_status="pending",
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError:
            existing = self.get_execution_for(reminder_id, date)
            if existing is None:
                raise
            return existing, False
        return self._execution(row), True

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._session() as session:
            row = session.get(_ExecutionRow, execution_id)
            return self._execution(row) if row is not None else None

    def get_execution_for(self, reminder_id: str, date: str) -> ExecutionRecord | None:
        with self._session() as session:
            row = session.scalars(
                select(_ExecutionRow)
                .where(_ExecutionRow.reminder_id == reminder_id)
                .where(_ExecutionRow.date == date)
            ).first()
            return self._execution(row) if row is not None else None

    def get_latest_execution(self, reminder_id: str) -> ExecutionRecord | None:
        with self._session() as session:
            row = session.scalars(
                select(_ExecutionRow)
                .where(_ExecutionRow.reminder_id == reminder_id)
                .order_by(_ExecutionRow.date.desc())
                .limit(1)
            ).first()
            return self._execution(row) if row is not None else None

    def list_executions_for_date(self, date: str) -> list[ExecutionRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ExecutionRow).where(_ExecutionRow.date == date).order_by(_ExecutionRow.sent_at.asc())
            ).all()
            return [self._execution(row) for row in rows]

    def list_pending_followups(self, date: str) -> list[ExecutionRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ExecutionRow)
                .where(_ExecutionRow.date == date)
                .where(_ExecutionRow.status == "sent")
                .where(_ExecutionRow.follow_up_status == "pending")
                .order_by(_ExecutionRow.sent_at.asc())
            ).all()
            return [self._execution(row) for row in rows]

    def list_executions_for_phone(self, phone: str, date: str) -> list[ExecutionRecord]:
        # Suffix matching happens in Python; the date filter keeps the scan small.
        return [value for value in self.list_executions_for_date(date) if matches(value.phone, phone)]

    def apply_reply(
        self,
        execution_id: str,
        *,
        status: ReplyStatus,
        replied_at: datetime,
    ) -> ExecutionRecord | None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ExecutionRow)
                    .where(_ExecutionRow.execution_id == execution_id)
                    .where(_ExecutionRow.status == "sent")
                    .values(
                        status=status,
                        reply_received_at=_coerce_utc(replied_at),
                        follow_up_status=case(
                            (_ExecutionRow.follow_up_status == "pending", "cancelled_by_user"),
                            else_=_ExecutionRow.follow_up_status,
                        ),
                        version=_ExecutionRow.version + 1,
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                row = session.get(_ExecutionRow, execution_id, populate_existing=True)
                return self._execution(row) if row is not None else None

    def resolve_followup(
        self,
        execution_id: str,
        *,
        resolution: FollowUpResolution,
        resolved_at: datetime,
    ) -> ExecutionRecord | None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ExecutionRow)
                    .where(_ExecutionRow.execution_id == execution_id)
                    .where(_ExecutionRow.follow_up_status == "pending")
                    .values(
                        follow_up_status=resolution,
                        follow_up_sent_at=_coerce_utc(resolved_at) if resolution == "sent" else None,
                        version=_ExecutionRow.version + 1,
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                row = session.get(_ExecutionRow, execution_id, populate_existing=True)
                return self._execution(row) if row is not None else None

    def append_log(
        self,
        *,
        reminder_id: str | None,
        phone: str,
        direction: MessageDirection,
        message_type: MessageType,
        content: str,
        status: LogStatus,
        input_kind: InputKind | None = None,
        provider_message_id: str | None = None,
        raw_response: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> MessageLogRecord:
        row = _MessageLogRow(
            log_id=f"log_{secrets.token_hex(8)}",
            reminder_id=reminder_id,
            phone=phone,
            direction=direction,
            message_type=message_type,
            content=content,
            input_kind=input_kind,
            status=status,
            provider_message_id=provider_message_id,
            raw_response_json=json.dumps(raw_response or {}, sort_keys=True, default=str),
            created_at=_coerce_utc(created_at) or _now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return self._log(row)

    def list_inbound_logs_since(self, since: datetime) -> list[MessageLogRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageLogRow)
                .where(_MessageLogRow.direction == "inbound")
                .where(_MessageLogRow.created_at > _coerce_utc(since))
                .order_by(_MessageLogRow.created_at.asc())
            ).all()
            return [self._log(row) for row in rows]

    def list_logs(self, *, reminder_id: str | None = None) -> list[MessageLogRecord]:
        query = select(_MessageLogRow).order_by(_MessageLogRow.created_at.asc())
        if reminder_id is not None:
            query = query.where(_MessageLogRow.reminder_id == reminder_id)
        with self._session() as session:
            return [self._log(row) for row in session.scalars(query).all()]

    @staticmethod
    def _execution(row: _ExecutionRow) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=row.execution_id,
            reminder_id=row.reminder_id,
            phone=row.phone,
            date=row.date,
            status=row.status,  # type: ignore[arg-type]
            sent_at=_coerce_utc(row.sent_at),  # type: ignore[arg-type]
            reply_received_at=_coerce_utc(row.reply_received_at),
            follow_up_status=row.follow_up_status,  # type: ignore[arg-type]
            follow_up_sent_at=_coerce_utc(row.follow_up_sent_at),
            version=row.version,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _log(row: _MessageLogRow) -> MessageLogRecord:
        try:
            raw = json.loads(row.raw_response_json or "{}")
        except ValueError:
            raw = {}
        return MessageLogRecord(
            log_id=row.log_id,
            reminder_id=row.reminder_id,
            phone=row.phone,
            direction=row.direction,  # type: ignore[arg-type]
            message_type=row.message_type,  # type: ignore[arg-type]
            content=row.content,
            input_kind=row.input_kind,  # type: ignore[arg-type]
            status=row.status,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            raw_response=raw if isinstance(raw, dict) else {"value": raw},
        )


def create_execution_repository(*, backend: str, database_url: str) -> ExecutionRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyExecutionRepository(database_url)
    return InMemoryExecutionRepository()

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from reminders_web.executions import SqlAlchemyExecutionRepository, create_execution_repository
from reminders_web.registry import (
    InMemoryReminderRepository,
    ReminderNotFoundError,
    SqlAlchemyReminderRepository,
    create_reminder_repository,
)

SENT_AT = datetime(2026, 3, 2, 2, 30, tzinfo=timezone.utc)
PHONE = "919876543210"


def _database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'reminders.sqlite'}"


def test_factories_pick_backend(tmp_path: Path) -> None:
    url = _database_url(tmp_path)
    assert isinstance(create_reminder_repository(backend="postgres", database_url=url), SqlAlchemyReminderRepository)
    assert isinstance(create_execution_repository(backend="postgres", database_url=url), SqlAlchemyExecutionRepository)
    assert isinstance(create_reminder_repository(backend="inmemory", database_url=""), InMemoryReminderRepository)
    with pytest.raises(RuntimeError):
        create_reminder_repository(backend="postgres", database_url="")


def test_reminder_repository_roundtrip(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderRepository(_database_url(tmp_path))
    created = repo.create_reminder(
        phone=PHONE,
        title="Walk",
        message="Evening walk",
        reminder_time="08:00",
        follow_up_message="",
        follow_up_time="09:00",
        active=True,
    )

    repo.record_sent(created.reminder_id, sent_at=SENT_AT)
    sent = repo.get_reminder(created.reminder_id)
    assert sent is not None
    assert sent.daily_status == "sent"
    assert sent.last_sent_at == SENT_AT

    repo.record_outcome(
        created.reminder_id,
        daily_status="completed",
        deactivate=True,
        replied_at=SENT_AT + timedelta(minutes=5),
        reply_text="done",
    )
    finished = repo.get_reminder(created.reminder_id)
    assert finished is not None
    assert finished.active is False
    assert finished.reply_text == "done"
    assert repo.list_active() == []

    updated = repo.update_reminder(created.reminder_id, {"title": "Long walk", "created_at": None})
    assert updated.title == "Long walk"
    assert updated.created_at == created.created_at

    with pytest.raises(ReminderNotFoundError):
        repo.update_reminder("rem_missing", {"title": "x"})
    assert repo.delete_reminder(created.reminder_id) is True
    assert repo.delete_reminder(created.reminder_id) is False


def test_insert_execution_is_unique_per_reminder_and_date(tmp_path: Path) -> None:
    repo = SqlAlchemyExecutionRepository(_database_url(tmp_path))

    first, created = repo.insert_execution(reminder_id="rem_1", phone=PHONE, date="2026-03-02", sent_at=SENT_AT)
    second, created_again = repo.insert_execution(
        reminder_id="rem_1", phone=PHONE, date="2026-03-02", sent_at=SENT_AT + timedelta(minutes=1)
    )

    assert created is True
    assert created_again is False
    assert second.execution_id == first.execution_id
    assert second.sent_at == SENT_AT
    assert [value.execution_id for value in repo.list_pending_followups("2026-03-02")] == [first.execution_id]
    assert repo.list_executions_for_phone("9876543210", "2026-03-02")[0].execution_id == first.execution_id


def test_reply_and_follow_up_transitions_are_compare_and_set(tmp_path: Path) -> None:
    repo = SqlAlchemyExecutionRepository(_database_url(tmp_path))
    execution, _ = repo.insert_execution(reminder_id="rem_1", phone=PHONE, date="2026-03-02", sent_at=SENT_AT)

    replied = repo.apply_reply(execution.execution_id, status="completed", replied_at=SENT_AT + timedelta(minutes=3))
    assert replied is not None
    assert replied.status == "completed"
    assert replied.follow_up_status == "cancelled_by_user"
    assert replied.version == 2

    assert repo.apply_reply(execution.execution_id, status="replied", replied_at=SENT_AT) is None
    assert repo.resolve_followup(execution.execution_id, resolution="sent", resolved_at=SENT_AT) is None
    assert repo.list_pending_followups("2026-03-02") == []

    other, _ = repo.insert_execution(reminder_id="rem_2", phone=PHONE, date="2026-03-02", sent_at=SENT_AT)
    resolved = repo.resolve_followup(other.execution_id, resolution="sent", resolved_at=SENT_AT + timedelta(hours=1))
    assert resolved is not None
    assert resolved.follow_up_status == "sent"
    assert resolved.follow_up_sent_at == SENT_AT + timedelta(hours=1)
    late = repo.apply_reply(other.execution_id, status="replied", replied_at=SENT_AT + timedelta(hours=2))
    assert late is not None
    assert late.status == "replied"
    assert late.follow_up_status == "sent"


def test_message_logs_keep_raw_response_and_order(tmp_path: Path) -> None:
    repo = SqlAlchemyExecutionRepository(_database_url(tmp_path))
    repo.append_log(
        reminder_id="rem_1",
        phone=PHONE,
        direction="outbound",
        message_type="reminder",
        content="Evening walk",
        status="sent",
        provider_message_id="wamid.1",
        raw_response={"messages": [{"id": "wamid.1"}]},
        created_at=SENT_AT,
    )
    repo.append_log(
        reminder_id=None,
        phone=PHONE,
        direction="inbound",
        message_type="reply",
        content="done",
        status="received",
        input_kind="text",
        created_at=SENT_AT + timedelta(minutes=2),
    )

    logs = repo.list_logs()
    assert [value.direction for value in logs] == ["outbound", "inbound"]
    assert logs[0].raw_response == {"messages": [{"id": "wamid.1"}]}
    assert [value.content for value in repo.list_inbound_logs_since(SENT_AT)] == ["done"]
    assert repo.list_inbound_logs_since(SENT_AT + timedelta(minutes=2)) == []
    assert len(repo.list_logs(reminder_id="rem_1")) == 1


def test_missed_outcome_does_not_replace_reply_status(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderRepository(_database_url(tmp_path))
    replied = repo.create_reminder(
        phone=PHONE,
        title="Walk",
        message="Evening walk",
        reminder_time="08:00",
        follow_up_message="",
        follow_up_time="09:00",
        active=True,
    )
    silent = repo.create_reminder(
        phone="919876500000",
        title="Read",
        message="Read ten pages",
        reminder_time="08:00",
        follow_up_message="",
        follow_up_time="09:00",
        active=True,
    )

    repo.record_outcome(replied.reminder_id, daily_status="replied", deactivate=True, reply_text="later")
    repo.record_outcome(replied.reminder_id, daily_status="missed", deactivate=True, follow_up_sent=True)
    repo.record_sent(silent.reminder_id, sent_at=SENT_AT)
    repo.record_outcome(silent.reminder_id, daily_status="missed", deactivate=True, follow_up_sent=True)

    kept = repo.get_reminder(replied.reminder_id)
    missed = repo.get_reminder(silent.reminder_id)
    assert kept is not None and missed is not None
    assert kept.daily_status == "replied"
    assert kept.follow_up_sent is True
    assert missed.daily_status == "missed"

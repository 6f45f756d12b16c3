from __future__ import annotations

import logging
from datetime import datetime, timezone

from .executions import ExecutionRecord, ExecutionRepository
from .local_clock import LocalClock, scheduled_minutes
from .models import DriverResult, DriverRunResponse
from .notifier import DeliveryButton, DeliveryResult, DeliverySender
from .phones import mask_phone, matches
from .registry import ReminderRecord, ReminderRepository
from .replies import apply_reply_transition
from .reply_classifier import COMPLETION_PAYLOAD_ID, classify

logger = logging.getLogger(__name__)

DEFAULT_FOLLOW_UP_MESSAGE = "Did you complete your habit?"
DEFAULT_FOLLOW_UP_MIN_GAP_SECONDS = 120


def _coerce_utc(value: datetime) -> datetime:
    # Naive overrides are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SchedulingDriver:
    """One pass over reminders and open executions per call to :meth:`run_once`.

    The driver keeps no state between ticks. Every state change goes through a
    compare-and-set on the execution store, so overlapping ticks and a
    concurrent reply handler converge on the same final rows.
    """

    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        executions: ExecutionRepository,
        sender: DeliverySender,
        clock: LocalClock,
        follow_up_min_gap_seconds: int = DEFAULT_FOLLOW_UP_MIN_GAP_SECONDS,
        default_follow_up_message: str = DEFAULT_FOLLOW_UP_MESSAGE,
        completion_button: DeliveryButton | None = None,
    ) -> None:
        self._reminders = reminders
        self._executions = executions
        self._sender = sender
        self._clock = clock
        self._follow_up_min_gap_seconds = follow_up_min_gap_seconds
        self._default_follow_up_message = default_follow_up_message
        self._completion_button = completion_button or DeliveryButton(id=COMPLETION_PAYLOAD_ID, title="Completed")

    def run_once(self, now_override: datetime | None = None) -> DriverRunResponse:
        now = _coerce_utc(now_override or self._clock.now_utc())
        today = self._clock.today(now)
        now_minutes = self._clock.minutes_since_midnight(now)
        results: list[DriverResult] = []

        try:
            active = self._reminders.list_active()
        except Exception as exc:  # noqa: BLE001
            logger.exception("listing active reminders failed")
            active = []
            results.append(DriverResult(id="*", type="reminder", status="error", error=str(exc)))

        for reminder in active:
            try:
                result = self._process_initial(reminder, today=today, now=now, now_minutes=now_minutes)
            except Exception as exc:  # noqa: BLE001
                logger.exception("initial send for reminder %s failed", reminder.reminder_id)
                result = DriverResult(
                    id=reminder.reminder_id,
                    type="reminder",
                    status="error",
                    phone_masked=mask_phone(reminder.phone),
                    error=str(exc),
                )
            if result is not None:
                results.append(result)

        try:
            pending = self._executions.list_pending_followups(today)
        except Exception as exc:  # noqa: BLE001
            logger.exception("listing pending follow-ups failed")
            pending = []
            results.append(DriverResult(id="*", type="followup", status="error", error=str(exc)))

        for execution in pending:
            try:
                result = self._process_followup(execution.execution_id, now=now, now_minutes=now_minutes)
            except Exception as exc:  # noqa: BLE001
                logger.exception("follow-up for execution %s failed", execution.execution_id)
                result = DriverResult(
                    id=execution.execution_id,
                    type="followup",
                    status="error",
                    phone_masked=mask_phone(execution.phone),
                    error=str(exc),
                )
            if result is not None:
                results.append(result)

        logger.info("scheduler tick for %s processed %s items", today, len(results))
        return DriverRunResponse(
            processed_count=len(results),
            results=results,
            server_local_time=self._clock.localize(now).isoformat(),
        )

    def _process_initial(
        self,
        reminder: ReminderRecord,
        *,
        today: str,
        now: datetime,
        now_minutes: int,
    ) -> DriverResult | None:
        if self._executions.get_execution_for(reminder.reminder_id, today) is not None:
            return None

        previous = self._executions.get_latest_execution(reminder.reminder_id)
        if previous is not None and previous.date == today:
            # Inserted by a concurrent tick since the lookup above.
            return None
        if previous is not None:
            # One-shot: an execution on any other day means this reminder already ran.
            self._executions.resolve_followup(previous.execution_id, resolution="skipped", resolved_at=now)
            self._reminders.record_outcome(
                reminder.reminder_id,
                daily_status=reminder.daily_status,
                deactivate=True,
            )
            return self._reminder_result(reminder, "skipped", reason="already_executed")

        try:
            due_minutes = scheduled_minutes(reminder.reminder_time)
        except ValueError:
            logger.warning("reminder %s has invalid reminder_time %r", reminder.reminder_id, reminder.reminder_time)
            return self._reminder_result(reminder, "skipped", reason="invalid_reminder_time")
        if now_minutes < due_minutes:
            return None

        delivery = self._sender.send(reminder.phone, reminder.message, [self._completion_button])
        self._log_outbound(reminder.reminder_id, reminder.phone, "reminder", reminder.message, delivery, now)
        if not delivery.success:
            logger.warning(
                "reminder %s to %s failed: %s",
                reminder.reminder_id,
                mask_phone(reminder.phone),
                delivery.error_code,
            )
            return self._reminder_result(reminder, "failed", error=delivery.error_message or delivery.error_code)

        _, created = self._executions.insert_execution(
            reminder_id=reminder.reminder_id,
            phone=reminder.phone,
            date=today,
            sent_at=now,
        )
        if not created:
            logger.info("reminder %s already has an execution for %s", reminder.reminder_id, today)
            return self._reminder_result(reminder, "skipped", reason="duplicate_execution")

        self._reminders.record_sent(reminder.reminder_id, sent_at=now)
        logger.info("reminder %s sent to %s", reminder.reminder_id, mask_phone(reminder.phone))
        return self._reminder_result(reminder, "sent")

    def _process_followup(self, execution_id: str, *, now: datetime, now_minutes: int) -> DriverResult | None:
        execution = self._executions.get_execution(execution_id)
        if execution is None or execution.status != "sent" or execution.follow_up_status != "pending":
            return None

        recovered = self._recover_missed_reply(execution)
        if recovered is not None:
            return recovered

        reminder = self._reminders.get_reminder(execution.reminder_id)
        if reminder is None or not reminder.follow_up_time:
            self._skip_followup(execution, reminder, now)
            return self._followup_result(execution, "skipped", reason="no_follow_up")

        try:
            follow_up_minutes = scheduled_minutes(reminder.follow_up_time)
            reminder_minutes = scheduled_minutes(reminder.reminder_time)
        except ValueError:
            follow_up_minutes = reminder_minutes = -1
        if follow_up_minutes <= reminder_minutes:
            logger.warning(
                "reminder %s follow_up_time %r is not after reminder_time %r; skipping follow-up",
                reminder.reminder_id,
                reminder.follow_up_time,
                reminder.reminder_time,
            )
            self._skip_followup(execution, reminder, now)
            return self._followup_result(execution, "skipped", reason="invalid_follow_up_time")

        if now_minutes < follow_up_minutes:
            return None
        if (now - execution.sent_at).total_seconds() < self._follow_up_min_gap_seconds:
            return None

        body = reminder.follow_up_message.strip() or self._default_follow_up_message
        delivery = self._sender.send(execution.phone, body, [self._completion_button])
        self._log_outbound(reminder.reminder_id, execution.phone, "followup", body, delivery, now)
        if not delivery.success:
            logger.warning(
                "follow-up for execution %s to %s failed: %s",
                execution.execution_id,
                mask_phone(execution.phone),
                delivery.error_code,
            )
            return self._followup_result(execution, "failed", error=delivery.error_message or delivery.error_code)

        resolved = self._executions.resolve_followup(execution.execution_id, resolution="sent", resolved_at=now)
        if resolved is None:
            # The message already went out; the reply keeps the execution.
            logger.info("reply won the race for execution %s after follow-up send", execution.execution_id)
            return self._followup_result(execution, "skipped", reason="reply_won_race")

        self._reminders.record_outcome(
            reminder.reminder_id,
            daily_status="missed",
            deactivate=True,
            follow_up_sent=True,
        )
        logger.info("follow-up for execution %s sent to %s", execution.execution_id, mask_phone(execution.phone))
        return self._followup_result(execution, "sent")

    def _recover_missed_reply(self, execution: ExecutionRecord) -> DriverResult | None:
        logs = [
            value
            for value in self._executions.list_inbound_logs_since(execution.sent_at)
            if matches(value.phone, execution.phone)
        ]
        if not logs:
            return None

        classified = [
            (
                value,
                classify(
                    value.content,
                    value.input_kind in {"button", "list"},
                    completion_payload_id=self._completion_button.id,
                ),
            )
            for value in logs
        ]
        completions = [value for value, classification in classified if classification.completion]
        chosen = completions[0] if completions else logs[0]
        logger.warning(
            "recovering reply logged at %s for execution %s",
            chosen.created_at.isoformat(),
            execution.execution_id,
        )
        apply_reply_transition(
            reminders=self._reminders,
            executions=self._executions,
            execution=execution,
            status="completed" if completions else "replied",
            replied_at=chosen.created_at,
            reply_text=chosen.content,
        )
        return self._followup_result(execution, "skipped", reason="reply_recovered")

    def _skip_followup(self, execution: ExecutionRecord, reminder: ReminderRecord | None, now: datetime) -> None:
        self._executions.resolve_followup(execution.execution_id, resolution="skipped", resolved_at=now)
        if reminder is not None:
            self._reminders.record_outcome(reminder.reminder_id, daily_status="sent", deactivate=True)

    def _log_outbound(
        self,
        reminder_id: str,
        phone: str,
        message_type: str,
        content: str,
        delivery: DeliveryResult,
        now: datetime,
    ) -> None:
        self._executions.append_log(
            reminder_id=reminder_id,
            phone=phone,
            direction="outbound",
            message_type=message_type,  # type: ignore[arg-type]
            content=content,
            status="sent" if delivery.success else "failed",
            provider_message_id=delivery.provider_message_id,
            raw_response=delivery.raw_payload(),
            created_at=now,
        )

    @staticmethod
    def _reminder_result(
        reminder: ReminderRecord,
        status: str,
        *,
        reason: str | None = None,
        error: str | None = None,
    ) -> DriverResult:
        return DriverResult(
            id=reminder.reminder_id,
            type="reminder",
            status=status,  # type: ignore[arg-type]
            reason=reason,
            phone_masked=mask_phone(reminder.phone),
            error=error,
        )

    @staticmethod
    def _followup_result(
        execution: ExecutionRecord,
        status: str,
        *,
        reason: str | None = None,
        error: str | None = None,
    ) -> DriverResult:
        return DriverResult(
            id=execution.execution_id,
            type="followup",
            status=status,  # type: ignore[arg-type]
            reason=reason,
            phone_masked=mask_phone(execution.phone),
            error=error,
        )

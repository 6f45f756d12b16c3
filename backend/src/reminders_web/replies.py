from __future__ import annotations

import logging
from datetime import datetime

from .executions import ExecutionRecord, ExecutionRepository, ReplyStatus
from .local_clock import LocalClock, scheduled_minutes
from .models import ExecutionLookupResponse, InboundAck, InboundMessage
from .notifier import DeliverySender
from .phones import mask_phone, matches, normalize
from .registry import ReminderRepository
from .reply_classifier import COMPLETION_PAYLOAD_ID, classify

logger = logging.getLogger(__name__)


def apply_reply_transition(
    *,
    reminders: ReminderRepository,
    executions: ExecutionRepository,
    execution: ExecutionRecord,
    status: ReplyStatus,
    replied_at: datetime,
    reply_text: str | None,
) -> ExecutionRecord | None:
    """Move one execution out of ``sent`` and mirror the outcome onto its reminder.

    Returns the updated execution, or ``None`` when another writer already
    moved it (a repeated delivery or a concurrent driver tick).
    """
    updated = executions.apply_reply(execution.execution_id, status=status, replied_at=replied_at)
    if updated is None:
        return None
    reminders.record_outcome(
        execution.reminder_id,
        daily_status=status,
        deactivate=True,
        replied_at=replied_at,
        reply_text=reply_text,
    )
    return updated


class ReplyHandler:
    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        executions: ExecutionRepository,
        sender: DeliverySender,
        clock: LocalClock,
        confirmation_message: str,
        completion_payload_id: str = COMPLETION_PAYLOAD_ID,
    ) -> None:
        self._reminders = reminders
        self._executions = executions
        self._sender = sender
        self._clock = clock
        self._confirmation_message = confirmation_message
        self._completion_payload_id = completion_payload_id

    def handle_inbound(self, message: InboundMessage) -> InboundAck:
        try:
            return self._handle(message)
        except Exception as exc:  # noqa: BLE001
            # Always acknowledge; providers redeliver on non-2xx.
            logger.exception("inbound reply from %s failed", mask_phone(message.phone))
            return InboundAck(accepted=True, error=exc.__class__.__name__)

    def _handle(self, message: InboundMessage) -> InboundAck:
        now = self._clock.now_utc()
        phone = normalize(message.phone)
        log = self._executions.append_log(
            reminder_id=None,
            phone=phone,
            direction="inbound",
            message_type="reply",
            content=message.text,
            status="received",
            input_kind=message.kind,
            provider_message_id=message.provider_message_id,
            raw_response=message.raw,
            created_at=now,
        )

        classification = classify(
            message.text,
            message.is_button_payload,
            completion_payload_id=self._completion_payload_id,
        )
        candidates = self._match_executions(phone, now)
        if not candidates:
            logger.info("inbound reply from %s matched no reminder", mask_phone(phone))
            return InboundAck(matched=False, completion=classification.completion, log_id=log.log_id)

        status: ReplyStatus = "completed" if classification.completion else "replied"
        applied: list[ExecutionRecord] = []
        for execution in candidates:
            updated = apply_reply_transition(
                reminders=self._reminders,
                executions=self._executions,
                execution=execution,
                status=status,
                replied_at=now,
                reply_text=message.text,
            )
            if updated is None:
                logger.info(
                    "reply for execution %s ignored (already %s)",
                    execution.execution_id,
                    execution.status,
                )
                continue
            applied.append(updated)

        logger.info(
            "inbound reply from %s applied to %s of %s executions (%s)",
            mask_phone(phone),
            len(applied),
            len(candidates),
            classification.reason,
        )
        if classification.completion and applied:
            self._send_confirmation(applied[0])
        return InboundAck(
            matched=True,
            applied=len(applied),
            completion=classification.completion,
            log_id=log.log_id,
        )

    def _match_executions(self, phone: str, now: datetime) -> list[ExecutionRecord]:
        today = self._clock.today(now)
        existing = self._executions.list_executions_for_phone(phone, today)
        if existing:
            return existing

        # No send recorded today: accept replies to reminders already due.
        now_minutes = self._clock.minutes_since_midnight(now)
        upserted: list[ExecutionRecord] = []
        for reminder in self._reminders.list_active():
            if not matches(reminder.phone, phone):
                continue
            try:
                due_minutes = scheduled_minutes(reminder.reminder_time)
            except ValueError:
                logger.warning("reminder %s has invalid reminder_time %r", reminder.reminder_id, reminder.reminder_time)
                continue
            if due_minutes > now_minutes:
                continue
            execution, _ = self._executions.insert_execution(
                reminder_id=reminder.reminder_id,
                phone=reminder.phone,
                date=today,
                sent_at=now,
            )
            upserted.append(execution)
        return upserted

    def _send_confirmation(self, execution: ExecutionRecord) -> None:
        try:
            result = self._sender.send(execution.phone, self._confirmation_message)
            self._executions.append_log(
                reminder_id=execution.reminder_id,
                phone=execution.phone,
                direction="outbound",
                message_type="confirmation",
                content=self._confirmation_message,
                status="sent" if result.success else "failed",
                provider_message_id=result.provider_message_id,
                raw_response=result.raw_payload(),
            )
        except Exception:  # noqa: BLE001
            logger.exception("confirmation for execution %s failed", execution.execution_id)
            return
        if not result.success:
            logger.warning(
                "confirmation to %s failed: %s",
                mask_phone(execution.phone),
                result.error_code,
            )

    def block_followup(self, phone: str, reminder_id: str | None = None) -> list[ExecutionRecord]:
        """Manually complete today's open executions for a phone so no follow-up goes out."""
        now = self._clock.now_utc()
        blocked: list[ExecutionRecord] = []
        for execution in self._executions.list_executions_for_phone(phone, self._clock.today(now)):
            if reminder_id is not None and execution.reminder_id != reminder_id:
                continue
            updated = apply_reply_transition(
                reminders=self._reminders,
                executions=self._executions,
                execution=execution,
                status="completed",
                replied_at=now,
                reply_text=None,
            )
            if updated is not None:
                blocked.append(updated)
        logger.info("blocked %s follow-ups for %s", len(blocked), mask_phone(phone))
        return blocked

    def inspect_today(self, phone: str) -> ExecutionLookupResponse:
        today = self._clock.today()
        items = [value.to_item() for value in self._executions.list_executions_for_phone(phone, today)]
        return ExecutionLookupResponse(date=today, items=items)

from __future__ import annotations

import hmac
import json
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from .config import Settings, get_settings
from .executions import ExecutionRepository, create_execution_repository
from .inbound import (
    WHATSAPP_OBJECT,
    parse_twilio_form,
    parse_whatsapp_payload,
    signature_rejected,
    verify_hub_challenge,
    verify_twilio_signature,
    verify_whatsapp_signature,
)
from .local_clock import LocalClock
from .models import (
    BlockFollowUpRequest,
    BlockFollowUpResponse,
    DriverRunRequest,
    DriverRunResponse,
    ExecutionLookupResponse,
    ReminderCreateRequest,
    ReminderItem,
    ReminderListResponse,
    ReminderUpdateRequest,
)
from .notifier import DeliveryButton, DeliverySender, create_sender
from .registry import (
    ReminderNotFoundError,
    ReminderRegistryService,
    ReminderRepository,
    create_reminder_repository,
)
from .replies import ReplyHandler
from .scheduler import SchedulingDriver

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])

clock = LocalClock(_settings.local_timezone)
reminder_repo: ReminderRepository = create_reminder_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
execution_repo: ExecutionRepository = create_execution_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
delivery_sender: DeliverySender = create_sender(_settings)


def reset_runtime_state_for_tests() -> None:
    reminder_repo.reset()
    execution_repo.reset()


def _completion_button(settings: Settings) -> DeliveryButton:
    return DeliveryButton(id=settings.completion_button_id, title=settings.completion_button_title)


def _driver() -> SchedulingDriver:
    return SchedulingDriver(
        reminders=reminder_repo,
        executions=execution_repo,
        sender=delivery_sender,
        clock=clock,
        follow_up_min_gap_seconds=_settings.follow_up_min_gap_seconds,
        default_follow_up_message=_settings.default_follow_up_message,
        completion_button=_completion_button(_settings),
    )


def _reply_handler() -> ReplyHandler:
    return ReplyHandler(
        reminders=reminder_repo,
        executions=execution_repo,
        sender=delivery_sender,
        clock=clock,
        confirmation_message=_settings.completion_confirmation_message,
        completion_payload_id=_settings.completion_button_id,
    )


def _registry() -> ReminderRegistryService:
    return ReminderRegistryService(
        repository=reminder_repo,
        executions=execution_repo,
        clock=clock,
        default_country_code=_settings.default_country_code,
    )


def _require_cron_secret(request: Request) -> None:
    configured = _settings.cron_secret.strip()
    if not configured:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(configured, token):
        raise HTTPException(401, "cron secret required")


def _run_scheduler(request: Request, now_override: datetime | None) -> DriverRunResponse:
    _require_cron_secret(request)
    if now_override is not None and not _settings.scheduler_allow_now_override:
        logger.warning("ignoring now_override; SCHEDULER_ALLOW_NOW_OVERRIDE is disabled")
        now_override = None
    return _driver().run_once(now_override=now_override)


@router.get("/cron", response_model=DriverRunResponse)
def run_scheduler_tick(request: Request, now_override: datetime | None = None) -> DriverRunResponse:
    override = DriverRunRequest(now_override=now_override).now_override
    return _run_scheduler(request, override)


@router.post("/cron", response_model=DriverRunResponse)
def trigger_scheduler_tick(request: Request, payload: DriverRunRequest | None = None) -> DriverRunResponse:
    return _run_scheduler(request, payload.now_override if payload else None)


def _handle_whatsapp_payload(payload: dict[str, Any]) -> None:
    try:
        messages = parse_whatsapp_payload(payload)
    except Exception:  # noqa: BLE001
        logger.exception("whatsapp webhook payload could not be parsed")
        return
    handler = _reply_handler()
    for message in messages:
        handler.handle_inbound(message)


def _handle_twilio_form(form_data: dict[str, str]) -> None:
    message = parse_twilio_form(form_data)
    if message is not None:
        _reply_handler().handle_inbound(message)


@router.get("/webhooks/whatsapp")
def verify_whatsapp_webhook(request: Request) -> Response:
    params = request.query_params
    challenge = verify_hub_challenge(
        settings=_settings,
        mode=params.get("hub.mode"),
        token=params.get("hub.verify_token"),
        challenge=params.get("hub.challenge"),
    )
    if challenge is None:
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)
    return PlainTextResponse(challenge, status_code=status.HTTP_200_OK)


@router.post("/webhooks/whatsapp")
async def ingest_whatsapp_webhook(request: Request) -> Response:
    body = await request.body()
    verification = verify_whatsapp_signature(settings=_settings, body=body, headers=request.headers)
    if signature_rejected(
        mode=_settings.whatsapp_webhook_signature_mode,
        verification=verification,
        provider="whatsapp",
    ):
        raise HTTPException(401, "invalid webhook signature")

    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except ValueError:
        logger.warning("whatsapp webhook body is not valid JSON")
        return PlainTextResponse("EVENT_RECEIVED", status_code=status.HTTP_200_OK)
    if not isinstance(payload, dict) or payload.get("object") != WHATSAPP_OBJECT:
        return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)

    await run_in_threadpool(_handle_whatsapp_payload, payload)
    return PlainTextResponse("EVENT_RECEIVED", status_code=status.HTTP_200_OK)


@router.post("/webhooks/twilio")
async def ingest_twilio_webhook(request: Request) -> Response:
    form = await request.form()
    form_data = {key: str(value) for key, value in form.items()}
    verification = verify_twilio_signature(
        settings=_settings,
        url=str(request.url),
        form_data=form_data,
        headers=request.headers,
    )
    if signature_rejected(
        mode=_settings.twilio_webhook_signature_mode,
        verification=verification,
        provider="twilio",
    ):
        raise HTTPException(401, "invalid webhook signature")

    await run_in_threadpool(_handle_twilio_form, form_data)
    # Empty TwiML: no auto-reply.
    return Response(content="<Response></Response>", media_type="application/xml")


@router.post("/block-followup", response_model=BlockFollowUpResponse)
def block_followup(payload: BlockFollowUpRequest) -> BlockFollowUpResponse:
    blocked = _reply_handler().block_followup(payload.phone, payload.reminder_id)
    if not blocked:
        raise HTTPException(status_code=404, detail="no open execution found for today")
    return BlockFollowUpResponse(blocked=len(blocked), executions=[value.to_item() for value in blocked])


@router.get("/executions/today", response_model=ExecutionLookupResponse)
def lookup_today_executions(phone: str) -> ExecutionLookupResponse:
    return _reply_handler().inspect_today(phone)


@router.get("", response_model=ReminderListResponse)
def list_reminders() -> ReminderListResponse:
    return _registry().list_for_today()


@router.post("", response_model=ReminderItem, status_code=status.HTTP_201_CREATED)
def create_reminder(payload: ReminderCreateRequest) -> ReminderItem:
    return _registry().create(payload)


@router.patch("/{reminder_id}", response_model=ReminderItem)
def update_reminder(reminder_id: str, payload: ReminderUpdateRequest) -> ReminderItem:
    try:
        return _registry().update(reminder_id, payload)
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.delete("/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reminder(reminder_id: str) -> Response:
    try:
        _registry().delete(reminder_id)
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)

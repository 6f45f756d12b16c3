from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from .config import Settings
from .phones import mask_phone, normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryButton:
    id: str
    title: str


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    attempted_at: datetime
    provider_message_id: str | None = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None

    def raw_payload(self) -> dict[str, Any]:
        if self.success:
            return self.provider_response
        return {
            "error_code": self.error_code,
            "error_message": self.error_message,
            **({"provider_response": self.provider_response} if self.provider_response else {}),
        }


class DeliverySender(Protocol):
    def send(
        self,
        phone: str,
        body: str,
        buttons: list[DeliveryButton] | None = None,
    ) -> DeliveryResult: ...


@dataclass(frozen=True)
class StubDelivery:
    phone: str
    body: str
    buttons: tuple[DeliveryButton, ...]
    provider_message_id: str


class StubDeliverySender:
    """Records deliveries in memory; used in development and tests."""

    def __init__(self, *, enabled: bool, fail_phones: set[str] | None = None) -> None:
        self._enabled = enabled
        self._fail_phones = {normalize(value) for value in (fail_phones or set())}
        self._counter = 0
        self.deliveries: list[StubDelivery] = []

    def fail_for(self, phone: str) -> None:
        self._fail_phones.add(normalize(phone))

    def recover(self, phone: str) -> None:
        self._fail_phones.discard(normalize(phone))

    def send(
        self,
        phone: str,
        body: str,
        buttons: list[DeliveryButton] | None = None,
    ) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live delivery is disabled",
            )

        if normalize(phone) in self._fail_phones:
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for phone",
            )

        self._counter += 1
        message_id = f"stub-{self._counter:06d}"
        self.deliveries.append(
            StubDelivery(
                phone=phone,
                body=body,
                buttons=tuple(buttons or ()),
                provider_message_id=message_id,
            )
        )
        return DeliveryResult(
            success=True,
            attempted_at=attempted_at,
            provider_message_id=message_id,
            provider_response={"messages": [{"id": message_id}]},
        )


class _DeliveryError(Exception):
    """Internal error raised when a provider request fails."""

    def __init__(self, error_code: str, message: str, response: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.response = response or {}


class HttpWhatsAppSender:
    """WhatsApp Cloud API sender (``POST /{phone_number_id}/messages``)."""

    def __init__(
        self,
        *,
        base_url: str,
        phone_number_id: str,
        access_token: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not phone_number_id.strip():
            raise ValueError("phone_number_id must not be empty")
        if not access_token.strip():
            raise ValueError("access_token must not be empty")
        self._base_url = stripped_url
        self._phone_number_id = phone_number_id.strip()
        self._access_token = access_token.strip()
        self._timeout_seconds = timeout_seconds

    def send(
        self,
        phone: str,
        body: str,
        buttons: list[DeliveryButton] | None = None,
    ) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        payload = self._build_payload(normalize(phone), body, buttons or [])
        try:
            response_data = self._post(payload)
        except _DeliveryError as exc:
            logger.warning(
                "whatsapp delivery failed for %s: %s (%s)",
                mask_phone(phone),
                exc.message,
                exc.error_code,
            )
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                provider_response=exc.response,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_phone(phone)})",
            )

        messages = response_data.get("messages")
        message_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        return DeliveryResult(
            success=True,
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
            provider_response=response_data,
        )

    @staticmethod
    def _build_payload(to: str, body: str, buttons: list[DeliveryButton]) -> dict[str, Any]:
        if not buttons:
            return {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": body},
            }
        # The Cloud API accepts at most three reply buttons, titles up to 20 chars.
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": body},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": button.id, "title": button.title[:20]}}
                        for button in buttons[:3]
                    ]
                },
            },
        }

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/{self._phone_number_id}/messages"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _DeliveryError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                response=_read_error_body(exc),
            ) from exc
        except urllib.error.URLError as exc:
            raise _DeliveryError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _DeliveryError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def _read_error_body(exc: urllib.error.HTTPError) -> dict[str, Any]:
    try:
        raw = exc.read()
    except OSError:
        return {}
    if not raw:
        return {}
    try:
        parsed = json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError:
        return {"body": raw.decode("utf-8", errors="replace")}
    return parsed if isinstance(parsed, dict) else {"body": parsed}


class TwilioWhatsAppSender:
    """WhatsApp delivery through the Twilio Messaging API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: TwilioClient | None = None,
    ) -> None:
        if not from_number.strip():
            raise ValueError("from_number must not be empty")
        if client is None:
            if not account_sid.strip() or not auth_token.strip():
                raise ValueError("account_sid and auth_token must not be empty")
            client = TwilioClient(account_sid.strip(), auth_token.strip())
        self._client = client
        self._from = _whatsapp_address(from_number)

    def send(
        self,
        phone: str,
        body: str,
        buttons: list[DeliveryButton] | None = None,
    ) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        text = body
        if buttons:
            # Free-form Twilio messages carry no interactive buttons.
            hints = " / ".join(f'"{button.title}"' for button in buttons)
            text = f"{body}\n\nReply {hints} when done."
        try:
            message = self._client.messages.create(
                from_=self._from,
                to=_whatsapp_address(phone),
                body=text,
            )
        except TwilioRestException as exc:
            logger.warning("twilio delivery failed for %s: %s", mask_phone(phone), exc.msg)
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                provider_response={"status": exc.status, "code": exc.code},
                error_code=f"twilio_{exc.code or exc.status}",
                error_message=f"{exc.msg} (recipient: {mask_phone(phone)})",
            )
        return DeliveryResult(
            success=True,
            attempted_at=attempted_at,
            provider_message_id=message.sid,
            provider_response={"sid": message.sid, "status": message.status},
        )


def _whatsapp_address(phone: str) -> str:
    stripped = phone.strip()
    if stripped.startswith("whatsapp:"):
        return stripped
    return f"whatsapp:+{normalize(stripped)}"


def create_sender(settings: Settings) -> DeliverySender:
    if not settings.notifier_enabled:
        return StubDeliverySender(enabled=False)
    sender_type = settings.notifier_sender_type.strip().lower()
    if sender_type == "whatsapp":
        return HttpWhatsAppSender(
            base_url=settings.whatsapp_api_base_url,
            phone_number_id=settings.whatsapp_phone_number_id,
            access_token=settings.whatsapp_access_token,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    if sender_type == "twilio":
        return TwilioWhatsAppSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_from,
        )
    return StubDeliverySender(enabled=True)

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from twilio.request_validator import RequestValidator

from .config import Settings
from .models import InboundMessage
from .phones import normalize

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"


@dataclass(frozen=True)
class InboundVerification:
    verified: bool
    reason: str | None = None


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> InboundVerification:
    if settings.whatsapp_webhook_signature_mode == "off":
        return InboundVerification(verified=True)

    secret = settings.whatsapp_app_secret.strip()
    if not secret:
        return InboundVerification(verified=False, reason="whatsapp_app_secret_missing")

    provided = _normalize_header_value(headers, "X-Hub-Signature-256")
    if provided is None:
        return InboundVerification(verified=False, reason="signature_missing")
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided.lower()):
        return InboundVerification(verified=False, reason="signature_mismatch")
    return InboundVerification(verified=True)


def verify_twilio_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> InboundVerification:
    if settings.twilio_webhook_signature_mode == "off":
        return InboundVerification(verified=True)

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        return InboundVerification(verified=False, reason="twilio_auth_token_missing")

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        return InboundVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return InboundVerification(verified=False, reason="signature_mismatch")
    return InboundVerification(verified=True)


def signature_rejected(*, mode: str, verification: InboundVerification, provider: str) -> bool:
    """Whether an unverified request must be refused under ``mode``."""
    if verification.verified:
        return False
    if mode == "enforce":
        logger.warning("%s webhook rejected: %s", provider, verification.reason)
        return True
    logger.warning("%s webhook signature not verified (%s); accepting in %s mode", provider, verification.reason, mode)
    return False


def verify_hub_challenge(
    *,
    settings: Settings,
    mode: str | None,
    token: str | None,
    challenge: str | None,
) -> str | None:
    """Return the challenge to echo for a valid subscription handshake."""
    configured = settings.whatsapp_verify_token.strip()
    if mode != "subscribe" or not configured or challenge is None:
        return None
    if token is None or not hmac.compare_digest(configured, token):
        return None
    return challenge


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _items(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _message_from_whatsapp(raw: Mapping[str, Any]) -> InboundMessage | None:
    phone = normalize(str(raw.get("from") or ""))
    if not phone:
        return None
    message_type = raw.get("type")
    kind = "text"
    text = ""
    if message_type == "text":
        text = str(_mapping(raw.get("text")).get("body") or "")
    elif message_type == "interactive":
        interactive = _mapping(raw.get("interactive"))
        if interactive.get("type") == "button_reply":
            kind = "button"
            text = str(_mapping(interactive.get("button_reply")).get("id") or "")
        elif interactive.get("type") == "list_reply":
            kind = "list"
            text = str(_mapping(interactive.get("list_reply")).get("id") or "")
    elif message_type == "button":
        # Quick-reply buttons on template messages.
        kind = "button"
        text = str(_mapping(raw.get("button")).get("payload") or "")
    else:
        logger.info("ignoring whatsapp message of type %s", message_type)
        return None

    message_id = raw.get("id")
    return InboundMessage(
        phone=phone,
        kind=kind,  # type: ignore[arg-type]
        text=text,
        provider_message_id=message_id if isinstance(message_id, str) else None,
        raw=dict(raw),
    )


def parse_whatsapp_payload(payload: Mapping[str, Any]) -> list[InboundMessage]:
    """Extract user messages from a WhatsApp Cloud API webhook body.

    Status callbacks (``statuses``), unsupported message types and malformed
    parts yield no messages.
    """
    messages: list[InboundMessage] = []
    for entry in _items(payload.get("entry")):
        for change in _items(_mapping(entry).get("changes")):
            value = _mapping(_mapping(change).get("value"))
            for raw in _items(value.get("messages")):
                if not isinstance(raw, Mapping):
                    continue
                message = _message_from_whatsapp(raw)
                if message is not None:
                    messages.append(message)
    return messages


def parse_twilio_form(form_data: Mapping[str, str]) -> InboundMessage | None:
    phone = normalize(str(form_data.get("From") or "").removeprefix("whatsapp:"))
    if not phone:
        return None
    button_payload = str(form_data.get("ButtonPayload") or "").strip()
    message_sid = str(form_data.get("MessageSid") or "").strip()
    if button_payload:
        kind = "button"
        text = button_payload
    else:
        kind = "text"
        text = str(form_data.get("Body") or "")
    return InboundMessage(
        phone=phone,
        kind=kind,  # type: ignore[arg-type]
        text=text,
        provider_message_id=message_sid or None,
        raw=dict(form_data),
    )

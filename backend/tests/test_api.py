from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterator
from unittest.mock import patch
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from reminders_web import api as api_module
from reminders_web.config import Settings, get_settings
from reminders_web.local_clock import LocalClock
from reminders_web.main import create_app
from reminders_web.models import InboundAck, InboundMessage
from reminders_web.notifier import StubDeliverySender
from reminders_web.replies import ReplyHandler

IST = ZoneInfo("Asia/Kolkata")
BASE = "/api/v1/reminders"

_TEST_SETTINGS = replace(
    get_settings(),
    cron_secret="test-cron-secret",
    scheduler_allow_now_override=True,
    whatsapp_verify_token="verify-token-001",
    whatsapp_app_secret="whatsapp-app-secret",
    whatsapp_webhook_signature_mode="enforce",
    twilio_auth_token="twilio-auth-token",
    twilio_webhook_signature_mode="enforce",
    completion_confirmation_message="Great job! Marked as completed.",
)
_AUTH = {"Authorization": "Bearer test-cron-secret"}


def _ist(hour: int, minute: int) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=IST).astimezone(timezone.utc)


class _Now:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@contextmanager
def _runtime(settings: Settings = _TEST_SETTINGS) -> Iterator[tuple[TestClient, StubDeliverySender, _Now]]:
    now = _Now(_ist(7, 0))
    sender = StubDeliverySender(enabled=True)
    api_module.reset_runtime_state_for_tests()
    with patch.object(api_module, "_settings", settings):
        with patch.object(api_module, "clock", LocalClock("Asia/Kolkata", now=now)):
            with patch.object(api_module, "delivery_sender", sender):
                yield TestClient(create_app()), sender, now
    api_module.reset_runtime_state_for_tests()


def _create_reminder(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "phone": "9876543210",
        "title": "Water",
        "message": "Drink a glass of water",
        "reminder_time": "08:00",
        "follow_up_time": "09:00",
    }
    payload.update(overrides)
    response = client.post(BASE, json=payload)
    assert response.status_code == 201
    return response.json()


def _whatsapp_body(text: str, *, phone: str = "919876543210") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "1234",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "messages": [
                                {
                                    "from": phone,
                                    "id": "wamid.abc",
                                    "timestamp": "1772417400",
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def _signed(body: bytes, secret: str = "whatsapp-app-secret") -> dict[str, str]:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return {"X-Hub-Signature-256": f"sha256={digest}", "Content-Type": "application/json"}


def test_cron_requires_bearer_secret() -> None:
    with _runtime() as (client, _, _):
        assert client.get(f"{BASE}/cron").status_code == 401
        assert client.get(f"{BASE}/cron", headers={"Authorization": "Bearer wrong"}).status_code == 401

        response = client.get(f"{BASE}/cron", headers=_AUTH)
        assert response.status_code == 200
        body = response.json()
        assert body["processed_count"] == 0
        assert body["results"] == []
        assert body["server_local_time"].startswith("2026-03-02T07:00")


def test_cron_without_configured_secret_is_open() -> None:
    with _runtime(replace(_TEST_SETTINGS, cron_secret="")) as (client, _, _):
        assert client.post(f"{BASE}/cron").status_code == 200


def test_cron_sends_due_reminder_with_now_override() -> None:
    with _runtime() as (client, sender, _):
        created = _create_reminder(client)

        response = client.post(f"{BASE}/cron", json={"now_override": "2026-03-02T08:00:00+05:30"}, headers=_AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["processed_count"] == 1
        assert body["results"][0]["id"] == created["reminder_id"]
        assert body["results"][0]["type"] == "reminder"
        assert body["results"][0]["status"] == "sent"
        assert body["results"][0]["phone_masked"] == "***3210"
        assert sender.deliveries[0].phone == "919876543210"


def test_cron_get_accepts_now_override_query() -> None:
    with _runtime() as (client, sender, _):
        _create_reminder(client)
        response = client.get(
            f"{BASE}/cron",
            params={"now_override": "2026-03-02T02:30:00Z"},
            headers=_AUTH,
        )
        assert response.status_code == 200
        assert [item["status"] for item in response.json()["results"]] == ["sent"]


def test_cron_ignores_now_override_when_disabled() -> None:
    with _runtime(replace(_TEST_SETTINGS, scheduler_allow_now_override=False)) as (client, sender, _):
        _create_reminder(client)
        response = client.post(f"{BASE}/cron", json={"now_override": "2026-03-02T08:00:00+05:30"}, headers=_AUTH)
        assert response.status_code == 200
        assert response.json()["results"] == []
        assert sender.deliveries == []


def test_whatsapp_hub_verification() -> None:
    with _runtime() as (client, _, _):
        response = client.get(
            f"{BASE}/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-token-001", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

        rejected = client.get(
            f"{BASE}/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )
        assert rejected.status_code == 403


def test_whatsapp_reply_completes_execution() -> None:
    with _runtime() as (client, sender, now):
        created = _create_reminder(client)
        now.value = _ist(8, 0)
        client.get(f"{BASE}/cron", headers=_AUTH)

        now.value = _ist(8, 30)
        body = json.dumps(_whatsapp_body("Done!")).encode("utf-8")
        response = client.post(f"{BASE}/webhooks/whatsapp", content=body, headers=_signed(body))

        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"
        lookup = client.get(f"{BASE}/executions/today", params={"phone": "9876543210"}).json()
        assert lookup["items"][0]["status"] == "completed"
        assert lookup["items"][0]["follow_up_status"] == "cancelled_by_user"
        assert sender.deliveries[-1].body == "Great job! Marked as completed."

        listing = client.get(BASE).json()
        item = next(value for value in listing["items"] if value["reminder_id"] == created["reminder_id"])
        assert item["daily_status"] == "completed"
        assert item["active"] is False


def test_whatsapp_button_reply_is_recognised() -> None:
    with _runtime(replace(_TEST_SETTINGS, whatsapp_webhook_signature_mode="off")) as (client, _, now):
        _create_reminder(client)
        now.value = _ist(8, 0)
        client.get(f"{BASE}/cron", headers=_AUTH)

        payload = _whatsapp_body("")
        message = payload["entry"][0]["changes"][0]["value"]["messages"][0]
        message["type"] = "interactive"
        message.pop("text")
        message["interactive"] = {
            "type": "button_reply",
            "button_reply": {"id": "completed_habit", "title": "Completed"},
        }
        response = client.post(f"{BASE}/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        lookup = client.get(f"{BASE}/executions/today", params={"phone": "919876543210"}).json()
        assert lookup["items"][0]["status"] == "completed"


def test_whatsapp_signature_enforced() -> None:
    with _runtime() as (client, _, _):
        body = json.dumps(_whatsapp_body("done")).encode("utf-8")
        response = client.post(
            f"{BASE}/webhooks/whatsapp",
            content=body,
            headers=_signed(body, secret="wrong-secret"),
        )
        assert response.status_code == 401


def test_whatsapp_signature_log_only_accepts_unsigned() -> None:
    with _runtime(replace(_TEST_SETTINGS, whatsapp_webhook_signature_mode="log_only")) as (client, _, _):
        response = client.post(f"{BASE}/webhooks/whatsapp", json=_whatsapp_body("hello"))
        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"


def test_whatsapp_non_whatsapp_object_is_not_found() -> None:
    with _runtime(replace(_TEST_SETTINGS, whatsapp_webhook_signature_mode="off")) as (client, _, _):
        response = client.post(f"{BASE}/webhooks/whatsapp", json={"object": "page", "entry": []})
        assert response.status_code == 404


def test_whatsapp_internal_error_still_acknowledged() -> None:
    with _runtime(replace(_TEST_SETTINGS, whatsapp_webhook_signature_mode="off")) as (client, _, _):
        with patch.object(api_module.execution_repo, "append_log", side_effect=RuntimeError("db down")):
            response = client.post(f"{BASE}/webhooks/whatsapp", json=_whatsapp_body("done"))
        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"


def test_whatsapp_malformed_payloads_are_acknowledged() -> None:
    with _runtime() as (client, _, now):
        _create_reminder(client)
        now.value = _ist(8, 0)
        client.get(f"{BASE}/cron", headers=_AUTH)

        value_as_string = _whatsapp_body("done")
        value_as_string["entry"][0]["changes"][0]["value"] = "x"
        text_as_string = _whatsapp_body("done")
        text_as_string["entry"][0]["changes"][0]["value"]["messages"][0]["text"] = "hi"
        entries_as_number = {"object": "whatsapp_business_account", "entry": 7}

        for payload in (value_as_string, entries_as_number):
            body = json.dumps(payload).encode("utf-8")
            response = client.post(f"{BASE}/webhooks/whatsapp", content=body, headers=_signed(body))
            assert response.status_code == 200
            assert response.text == "EVENT_RECEIVED"
        lookup = client.get(f"{BASE}/executions/today", params={"phone": "9876543210"}).json()
        assert lookup["items"][0]["status"] == "sent"

        body = json.dumps(text_as_string).encode("utf-8")
        response = client.post(f"{BASE}/webhooks/whatsapp", content=body, headers=_signed(body))
        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"
        inbound = [value for value in api_module.execution_repo.list_logs() if value.direction == "inbound"]
        assert [value.content for value in inbound] == [""]


def test_webhook_replies_are_handled_off_the_event_loop() -> None:
    on_event_loop: list[bool] = []
    original = ReplyHandler.handle_inbound

    def _recording(self: ReplyHandler, message: InboundMessage) -> InboundAck:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            on_event_loop.append(False)
        else:
            on_event_loop.append(True)
        return original(self, message)

    settings = replace(_TEST_SETTINGS, whatsapp_webhook_signature_mode="off", twilio_webhook_signature_mode="off")
    with _runtime(settings) as (client, _, _):
        with patch.object(ReplyHandler, "handle_inbound", _recording):
            whatsapp = client.post(f"{BASE}/webhooks/whatsapp", json=_whatsapp_body("done"))
            twilio = client.post(
                f"{BASE}/webhooks/twilio",
                data={"From": "whatsapp:+919876543210", "Body": "done", "MessageSid": "SM1"},
            )

    assert whatsapp.status_code == 200
    assert twilio.status_code == 200
    assert on_event_loop == [False, False]


def test_twilio_webhook_with_valid_signature() -> None:
    with _runtime() as (client, _, now):
        _create_reminder(client)
        now.value = _ist(8, 0)
        client.get(f"{BASE}/cron", headers=_AUTH)

        form = {
            "From": "whatsapp:+919876543210",
            "Body": "Completed",
            "ButtonPayload": "completed_habit",
            "MessageSid": "SM123",
        }
        url = f"http://testserver{BASE}/webhooks/twilio"
        signature = RequestValidator("twilio-auth-token").compute_signature(url, form)
        response = client.post(f"{BASE}/webhooks/twilio", data=form, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200
        assert response.text == "<Response></Response>"
        lookup = client.get(f"{BASE}/executions/today", params={"phone": "9876543210"}).json()
        assert lookup["items"][0]["status"] == "completed"


def test_twilio_webhook_rejects_bad_signature() -> None:
    with _runtime() as (client, _, _):
        response = client.post(
            f"{BASE}/webhooks/twilio",
            data={"From": "whatsapp:+919876543210", "Body": "done"},
            headers={"X-Twilio-Signature": "bogus"},
        )
        assert response.status_code == 401


def test_block_followup_endpoint() -> None:
    with _runtime() as (client, _, now):
        assert client.post(f"{BASE}/block-followup", json={"phone": "9876543210"}).status_code == 404

        _create_reminder(client)
        now.value = _ist(8, 0)
        client.get(f"{BASE}/cron", headers=_AUTH)

        response = client.post(f"{BASE}/block-followup", json={"phone": "9876543210"})
        assert response.status_code == 200
        body = response.json()
        assert body["blocked"] == 1
        assert body["executions"][0]["status"] == "completed"
        assert body["executions"][0]["follow_up_status"] == "cancelled_by_user"

        now.value = _ist(9, 0)
        assert client.get(f"{BASE}/cron", headers=_AUTH).json()["results"] == []


def test_reminder_crud_endpoints() -> None:
    with _runtime() as (client, _, _):
        created = _create_reminder(client, phone="+91 98765 43210")
        assert created["phone"] == "919876543210"
        assert created["daily_status"] == "pending"

        invalid = client.post(
            BASE,
            json={"phone": "9876543210", "title": "x", "message": "y", "reminder_time": "09:00", "follow_up_time": "08:00"},
        )
        assert invalid.status_code == 422

        patched = client.patch(f"{BASE}/{created['reminder_id']}", json={"title": "Hydrate"})
        assert patched.status_code == 200
        assert patched.json()["title"] == "Hydrate"

        conflict = client.patch(f"{BASE}/{created['reminder_id']}", json={"reminder_time": "10:00"})
        assert conflict.status_code == 422

        assert client.patch(f"{BASE}/rem_missing", json={"title": "x"}).status_code == 404

        listing = client.get(BASE).json()
        assert [value["reminder_id"] for value in listing["items"]] == [created["reminder_id"]]

        assert client.delete(f"{BASE}/{created['reminder_id']}").status_code == 204
        assert client.delete(f"{BASE}/{created['reminder_id']}").status_code == 404


def test_manual_status_override_endpoint() -> None:
    with _runtime() as (client, _, now):
        created = _create_reminder(client)
        now.value = _ist(8, 0)
        client.get(f"{BASE}/cron", headers=_AUTH)

        response = client.patch(f"{BASE}/{created['reminder_id']}", json={"daily_status": "completed"})

        assert response.status_code == 200
        assert response.json()["daily_status"] == "completed"
        now.value = _ist(9, 0)
        assert client.get(f"{BASE}/cron", headers=_AUTH).json()["results"] == []

from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Reminders Web"
    api_prefix: str = "/api/v1"
    dashboard_origin: str = "http://localhost:3000"
    local_timezone: str = "Asia/Kolkata"
    default_country_code: str = "91"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    cron_secret: str = ""
    scheduler_allow_now_override: bool = False
    follow_up_min_gap_seconds: int = 120
    default_follow_up_message: str = "Did you complete your habit?"
    completion_confirmation_message: str = "Great job! Marked as completed."
    completion_button_id: str = "completed_habit"
    completion_button_title: str = "Completed"
    # Delivery settings.
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_timeout_seconds: int = 30
    whatsapp_api_base_url: str = "https://graph.facebook.com/v21.0"
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    # Inbound webhook settings.
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_webhook_signature_mode: str = "log_only"
    twilio_webhook_signature_mode: str = "log_only"
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "Reminders Web"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        dashboard_origin=os.getenv("DASHBOARD_ORIGIN", "http://localhost:3000"),
        local_timezone=os.getenv("LOCAL_TIMEZONE", "Asia/Kolkata"),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "91"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        cron_secret=os.getenv("CRON_SECRET", ""),
        scheduler_allow_now_override=_as_bool(os.getenv("SCHEDULER_ALLOW_NOW_OVERRIDE"), False),
        follow_up_min_gap_seconds=_as_int(os.getenv("FOLLOW_UP_MIN_GAP_SECONDS"), 120),
        default_follow_up_message=os.getenv("DEFAULT_FOLLOW_UP_MESSAGE", "Did you complete your habit?"),
        completion_confirmation_message=os.getenv(
            "COMPLETION_CONFIRMATION_MESSAGE", "Great job! Marked as completed."
        ),
        completion_button_id=os.getenv("COMPLETION_BUTTON_ID", "completed_habit"),
        completion_button_title=os.getenv("COMPLETION_BUTTON_TITLE", "Completed"),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=os.getenv("NOTIFIER_SENDER_TYPE", "stub"),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com/v21.0"),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM", ""),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_webhook_signature_mode=_normalize_mode(
            os.getenv("WHATSAPP_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        twilio_webhook_signature_mode=_normalize_mode(
            os.getenv("TWILIO_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a placeholder value")
    if _is_placeholder(settings.whatsapp_verify_token, defaults={"dev-verify-token"}):
        issues.append("WHATSAPP_VERIFY_TOKEN is empty or uses a placeholder value")
    if settings.whatsapp_webhook_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WHATSAPP_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.twilio_webhook_signature_mode == "enforce" and not settings.twilio_auth_token.strip():
        issues.append("TWILIO_AUTH_TOKEN is required when TWILIO_WEBHOOK_SIGNATURE_MODE=enforce")
    sender_type = settings.notifier_sender_type.strip().lower()
    if settings.notifier_enabled and sender_type == "whatsapp":
        if not settings.whatsapp_phone_number_id.strip() or not settings.whatsapp_access_token.strip():
            issues.append(
                "WHATSAPP_PHONE_NUMBER_ID and WHATSAPP_ACCESS_TOKEN are required when NOTIFIER_SENDER_TYPE=whatsapp"
            )
    if settings.notifier_enabled and sender_type == "twilio":
        if (
            not settings.twilio_account_sid.strip()
            or not settings.twilio_auth_token.strip()
            or not settings.twilio_whatsapp_from.strip()
        ):
            issues.append(
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_FROM are required "
                "when NOTIFIER_SENDER_TYPE=twilio"
            )
    return tuple(issues)

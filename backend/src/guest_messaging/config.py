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


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip().lower() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
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


def _is_placeholder(value: str) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    return normalized.lower() in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Guest Messaging Engine"
    store_backend: str = "inmemory"
    database_url: str = ""
    schema_features: tuple[str, ...] = ()
    # Echo suppression heuristics.
    echo_window_minutes: int = 10
    echo_require_unassigned_delivery: bool = True
    # Outbound validation and thread summary.
    message_max_length: int = 1000
    message_max_length_with_image: int = 10000
    thread_preview_length: int = 160
    inapp_delivered_delay_seconds: float = 1.0
    # Unsend policy.
    unsend_window_hours: int = 24
    unsendable_channels: tuple[str, ...] = ("inapp",)
    # Scheduled dispatch.
    scheduler_batch_size: int = 50
    scheduler_poll_seconds: float = 30.0
    scheduler_claim_lease_seconds: float = 3600.0
    # OTA gateway (airbnb, beds24, booking_com all travel through one upstream API).
    gateway_enabled: bool = False
    gateway_api_base_url: str = ""
    gateway_api_key: str = ""
    gateway_channels: tuple[str, ...] = ("airbnb", "beds24", "booking_com")
    gateway_timeout_seconds: int = 30
    # Internal notifier for email and whatsapp.
    notifier_enabled: bool = False
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_channels: tuple[str, ...] = ("email", "whatsapp")
    notifier_timeout_seconds: int = 30
    # SMS via Twilio.
    sms_provider_enabled: bool = False
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    runtime_secret_guard_mode: str = "warn"

    def channel_enabled(self, channel: str) -> bool:
        normalized = channel.strip().lower()
        if normalized == "inapp":
            return True
        if normalized in self.gateway_channels:
            return self.gateway_enabled
        if normalized in self.notifier_channels:
            return self.notifier_enabled
        if normalized == "sms":
            return self.sms_provider_enabled
        return False


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("MESSAGING_APP_NAME", "Guest Messaging Engine"),
        store_backend=_normalize_mode(
            os.getenv("MESSAGING_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        schema_features=_as_csv_tuple(os.getenv("MESSAGING_SCHEMA_FEATURES")),
        echo_window_minutes=_as_int(os.getenv("ECHO_WINDOW_MINUTES"), 10),
        echo_require_unassigned_delivery=_as_bool(os.getenv("ECHO_REQUIRE_UNASSIGNED_DELIVERY"), True),
        message_max_length=_as_int(os.getenv("MESSAGE_MAX_LENGTH"), 1000),
        message_max_length_with_image=_as_int(os.getenv("MESSAGE_MAX_LENGTH_WITH_IMAGE"), 10000),
        thread_preview_length=_as_int(os.getenv("THREAD_PREVIEW_LENGTH"), 160),
        inapp_delivered_delay_seconds=_as_float(os.getenv("INAPP_DELIVERED_DELAY_SECONDS"), 1.0),
        unsend_window_hours=_as_int(os.getenv("UNSEND_WINDOW_HOURS"), 24),
        unsendable_channels=_as_csv_tuple(os.getenv("UNSENDABLE_CHANNELS"), ("inapp",)),
        scheduler_batch_size=_as_int(os.getenv("SCHEDULER_BATCH_SIZE"), 50),
        scheduler_poll_seconds=_as_float(os.getenv("SCHEDULER_POLL_SECONDS"), 30.0),
        scheduler_claim_lease_seconds=_as_float(os.getenv("SCHEDULER_CLAIM_LEASE_SECONDS"), 3600.0),
        gateway_enabled=_as_bool(os.getenv("GATEWAY_ENABLED"), False),
        gateway_api_base_url=os.getenv("GATEWAY_API_BASE_URL", ""),
        gateway_api_key=os.getenv("GATEWAY_API_KEY", ""),
        gateway_channels=_as_csv_tuple(os.getenv("GATEWAY_CHANNELS"), ("airbnb", "beds24", "booking_com")),
        gateway_timeout_seconds=_as_int(os.getenv("GATEWAY_TIMEOUT_SECONDS"), 30),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_channels=_as_csv_tuple(os.getenv("NOTIFIER_CHANNELS"), ("email", "whatsapp")),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        sms_provider_enabled=_as_bool(os.getenv("SMS_PROVIDER_ENABLED"), False),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when MESSAGING_STORE_BACKEND=postgres")
    if settings.gateway_enabled:
        if not settings.gateway_api_base_url.strip():
            issues.append("GATEWAY_API_BASE_URL is required when GATEWAY_ENABLED=true")
        if _is_placeholder(settings.gateway_api_key):
            issues.append("GATEWAY_API_KEY is empty or uses a placeholder value")
    if settings.notifier_enabled:
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_ENABLED=true")
        if _is_placeholder(settings.notifier_api_key):
            issues.append("NOTIFIER_API_KEY is empty or uses a placeholder value")
    if settings.sms_provider_enabled:
        if not settings.twilio_account_sid.strip():
            issues.append("TWILIO_ACCOUNT_SID is required when SMS_PROVIDER_ENABLED=true")
        if _is_placeholder(settings.twilio_auth_token):
            issues.append("TWILIO_AUTH_TOKEN is required when SMS_PROVIDER_ENABLED=true")
        if not settings.twilio_from_number.strip():
            issues.append("TWILIO_FROM_NUMBER is required when SMS_PROVIDER_ENABLED=true")
    return tuple(issues)

from __future__ import annotations

import os

from guest_messaging.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_channels_to_disabled() -> None:
    previous_gateway = _set_env("GATEWAY_ENABLED", None)
    previous_notifier = _set_env("NOTIFIER_ENABLED", None)
    previous_sms = _set_env("SMS_PROVIDER_ENABLED", None)
    try:
        settings = get_settings()
        assert settings.gateway_enabled is False
        assert settings.notifier_enabled is False
        assert settings.sms_provider_enabled is False
        assert settings.channel_enabled("inapp") is True
        assert settings.channel_enabled("airbnb") is False
    finally:
        _restore_env("GATEWAY_ENABLED", previous_gateway)
        _restore_env("NOTIFIER_ENABLED", previous_notifier)
        _restore_env("SMS_PROVIDER_ENABLED", previous_sms)


def test_get_settings_reads_tunables_and_falls_back_on_bad_values() -> None:
    previous = {
        "ECHO_WINDOW_MINUTES": _set_env("ECHO_WINDOW_MINUTES", "15"),
        "UNSENDABLE_CHANNELS": _set_env("UNSENDABLE_CHANNELS", " InApp, whatsapp ,"),
        "MESSAGE_MAX_LENGTH": _set_env("MESSAGE_MAX_LENGTH", "not-a-number"),
        "MESSAGING_STORE_BACKEND": _set_env("MESSAGING_STORE_BACKEND", "mysql"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "ENFORCE"),
        "MESSAGING_SCHEMA_FEATURES": _set_env("MESSAGING_SCHEMA_FEATURES", "unsend"),
        "SCHEDULER_CLAIM_LEASE_SECONDS": _set_env("SCHEDULER_CLAIM_LEASE_SECONDS", "900"),
    }
    try:
        settings = get_settings()
        assert settings.echo_window_minutes == 15
        assert settings.unsendable_channels == ("inapp", "whatsapp")
        assert settings.message_max_length == 1000
        assert settings.store_backend == "inmemory"
        assert settings.runtime_secret_guard_mode == "enforce"
        assert settings.schema_features == ("unsend",)
        assert settings.scheduler_claim_lease_seconds == 900.0
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_disabled_channels_do_not_require_provider_secrets() -> None:
    issues = runtime_secret_issues(Settings(twilio_auth_token="", gateway_api_key="", notifier_api_key=""))

    assert issues == ()


def test_enabled_gateway_with_placeholder_key_is_reported() -> None:
    issues = runtime_secret_issues(
        Settings(gateway_enabled=True, gateway_api_base_url="https://gateway.example.test", gateway_api_key="change-me")
    )

    assert issues == ("GATEWAY_API_KEY is empty or uses a placeholder value",)


def test_enabled_sms_and_postgres_report_every_missing_value() -> None:
    issues = runtime_secret_issues(Settings(store_backend="postgres", sms_provider_enabled=True))

    assert "DATABASE_URL is required when MESSAGING_STORE_BACKEND=postgres" in issues
    assert "TWILIO_ACCOUNT_SID is required when SMS_PROVIDER_ENABLED=true" in issues
    assert "TWILIO_AUTH_TOKEN is required when SMS_PROVIDER_ENABLED=true" in issues
    assert "TWILIO_FROM_NUMBER is required when SMS_PROVIDER_ENABLED=true" in issues


def test_enabled_notifier_without_url_is_reported() -> None:
    issues = runtime_secret_issues(Settings(notifier_enabled=True, notifier_api_key="prod-notifier-key-001"))

    assert issues == ("NOTIFIER_API_BASE_URL is required when NOTIFIER_ENABLED=true",)

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
from twilio.rest import Client

from .collaborators import BookingReferenceLookup
from .config import Settings
from .errors import ChannelError, ChannelErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelSendRequest:
    message_id: str
    thread_id: str
    channel: str
    content: str
    reservation_id: str | None = None
    recipient: str | None = None
    external_thread_id: str | None = None


@dataclass(frozen=True)
class ChannelSendResult:
    sent_at: datetime
    provider_message_id: str | None = None


class ChannelAdapter(Protocol):
    # True when the adapter has no provider acknowledgement and the engine
    # itself advances the delivery to "delivered".
    auto_delivered: bool

    def send(self, request: ChannelSendRequest) -> ChannelSendResult: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def classify_channel_failure(status_code: int | None, text: str, *, channel: str | None = None) -> ChannelError:
    """Map an HTTP status and/or provider error text onto the failure taxonomy."""
    detail = text.strip() or "no error detail"
    kind = _failure_kind(status_code, detail.lower())
    if kind == "system":
        return ChannelError("system", detail, channel=channel)
    return ChannelError(kind, f"{_FAILURE_PREFIXES[kind]}: {detail}", channel=channel)


_FAILURE_PREFIXES = {
    "auth": "Authentication error",
    "not_found": "Booking not found",
    "rate_limited": "Rate limited",
    "server_error": "Gateway server error (temporary)",
    "unknown": "Unknown error",
}


def _failure_kind(status_code: int | None, lowered: str) -> ChannelErrorKind:
    if "message not found" in lowered or "no external booking id" in lowered:
        return "system"
    # Status codes win over text matching.
    if status_code in {401, 403}:
        return "auth"
    if status_code == 404:
        return "not_found"
    if status_code == 429:
        return "rate_limited"
    if status_code is not None and status_code >= 500:
        return "server_error"
    if "not authorized" in lowered or "unauthorized" in lowered or "token" in lowered:
        return "auth"
    if "booking not found" in lowered:
        return "not_found"
    if "rate limit" in lowered:
        return "rate_limited"
    if "timed out" in lowered or "timeout" in lowered:
        return "server_error"
    return "unknown"


def mask_recipient(recipient: str, channel: str) -> str:
    normalized = recipient.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel in {"sms", "whatsapp"}:
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"


class InAppChannelAdapter:
    auto_delivered = True

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        return ChannelSendResult(sent_at=_now_utc())


class StubChannelAdapter:
    """Records every request; optionally fails with a preset error."""

    auto_delivered = False

    def __init__(self, *, failure: ChannelError | None = None, provider_prefix: str = "stub") -> None:
        self.failure = failure
        self._provider_prefix = provider_prefix
        self.sent: list[ChannelSendRequest] = []

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        self.sent.append(request)
        if self.failure is not None:
            raise self.failure
        return ChannelSendResult(
            sent_at=_now_utc(),
            provider_message_id=f"{self._provider_prefix}-{request.message_id}",
        )


class _HttpJsonTransport:
    """Bearer-token JSON POST with a bounded timeout."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def _post(self, path: str, body: dict[str, Any], *, channel: str) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw.strip() else {}
        except urllib.error.HTTPError as exc:
            raise classify_channel_failure(exc.code, _http_error_detail(exc), channel=channel) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise classify_channel_failure(None, f"Request timed out: {exc.reason}", channel=channel) from exc
            raise classify_channel_failure(None, f"Connection error: {exc.reason}", channel=channel) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise classify_channel_failure(None, f"Request timed out: {exc}", channel=channel) from exc


def _http_error_detail(exc: urllib.error.HTTPError) -> str:
    prefix = f"HTTP {exc.code}: {exc.reason}"
    if exc.fp is None:
        return prefix
    try:
        raw = exc.read().decode("utf-8")
    except (OSError, AttributeError):
        return prefix
    if not raw.strip():
        return prefix
    try:
        payload = json.loads(raw)
    except ValueError:
        return f"{prefix} {raw.strip()[:200]}"
    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message")
        if message:
            return f"{prefix} {message}"
    return prefix


class HttpGatewayChannelAdapter(_HttpJsonTransport):
    """OTA channels (airbnb, beds24, booking_com) through the shared booking gateway."""

    auto_delivered = False

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        booking_lookup: BookingReferenceLookup,
        timeout_seconds: int = 30,
    ) -> None:
        super().__init__(base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)
        self._booking_lookup = booking_lookup

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        booking_id = None
        if request.reservation_id:
            booking_id = self._booking_lookup.external_booking_id(request.reservation_id)
        if not booking_id:
            raise ChannelError(
                "system",
                "No external booking id found for this message thread",
                channel=request.channel,
            )
        response = self._post(
            f"/v1/bookings/{booking_id}/messages",
            {
                "channel": request.channel,
                "message": request.content,
                "reference": request.message_id,
            },
            channel=request.channel,
        )
        provider_message_id = response.get("message_id") or response.get("id")
        logger.info("gateway accepted message %s for booking %s", request.message_id, booking_id)
        return ChannelSendResult(
            sent_at=_now_utc(),
            provider_message_id=str(provider_message_id) if provider_message_id else None,
        )


class HttpNotifierChannelAdapter(_HttpJsonTransport):
    """Email and WhatsApp through the internal notifier API."""

    auto_delivered = False

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        if not request.recipient:
            raise ChannelError("system", "No recipient address for this message thread", channel=request.channel)
        try:
            response = self._post(
                "/v1/messages/send",
                {
                    "channel": request.channel,
                    "recipient": request.recipient,
                    "message": request.content,
                    "idempotency_key": request.message_id,
                },
                channel=request.channel,
            )
        except ChannelError as exc:
            masked = mask_recipient(request.recipient, request.channel)
            raise ChannelError(exc.kind, f"{exc.message} (recipient: {masked})", channel=request.channel) from exc
        provider_message_id = response.get("message_id")
        return ChannelSendResult(
            sent_at=_now_utc(),
            provider_message_id=str(provider_message_id) if provider_message_id else None,
        )


class TwilioSmsChannelAdapter:
    auto_delivered = False

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Client | None = None,
    ) -> None:
        if not from_number.strip():
            raise ValueError("from_number must not be empty")
        self._from_number = from_number.strip()
        self._client = client or Client(account_sid, auth_token)

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        if not request.recipient:
            raise ChannelError("system", "No recipient phone number for this message thread", channel=request.channel)
        try:
            message = self._client.messages.create(
                body=request.content,
                from_=self._from_number,
                to=request.recipient,
            )
        except TwilioRestException as exc:
            masked = mask_recipient(request.recipient, "sms")
            error = classify_channel_failure(exc.status, str(exc.msg), channel=request.channel)
            raise ChannelError(error.kind, f"{error.message} (recipient: {masked})", channel=request.channel) from exc
        return ChannelSendResult(sent_at=_now_utc(), provider_message_id=message.sid)


@dataclass
class ChannelRegistry:
    adapters: dict[str, ChannelAdapter] = field(default_factory=dict)

    def register(self, channel: str, adapter: ChannelAdapter) -> None:
        self.adapters[channel.strip().lower()] = adapter

    def get(self, channel: str) -> ChannelAdapter:
        adapter = self.adapters.get(channel.strip().lower())
        if adapter is None:
            raise ChannelError("system", f"Unsupported channel: {channel}", channel=channel)
        return adapter

    def channels(self) -> tuple[str, ...]:
        return tuple(sorted(self.adapters))


def build_channel_registry(
    settings: Settings,
    *,
    booking_lookup: BookingReferenceLookup,
    twilio_client: Client | None = None,
) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register("inapp", InAppChannelAdapter())
    if settings.gateway_enabled:
        gateway = HttpGatewayChannelAdapter(
            base_url=settings.gateway_api_base_url,
            api_key=settings.gateway_api_key,
            booking_lookup=booking_lookup,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
        for channel in settings.gateway_channels:
            registry.register(channel, gateway)
    if settings.notifier_enabled:
        notifier = HttpNotifierChannelAdapter(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
        for channel in settings.notifier_channels:
            registry.register(channel, notifier)
    if settings.sms_provider_enabled:
        registry.register(
            "sms",
            TwilioSmsChannelAdapter(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                client=twilio_client,
            ),
        )
    logger.info("channel registry ready: %s", ", ".join(registry.channels()))
    return registry

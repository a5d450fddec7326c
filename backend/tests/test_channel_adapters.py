from __future__ import annotations

import io
import json
import socket
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from guest_messaging.channels import (
    ChannelRegistry,
    ChannelSendRequest,
    HttpGatewayChannelAdapter,
    HttpNotifierChannelAdapter,
    InAppChannelAdapter,
    TwilioSmsChannelAdapter,
    build_channel_registry,
    classify_channel_failure,
    mask_recipient,
)
from guest_messaging.collaborators import StaticBookingReferenceLookup
from guest_messaging.config import Settings
from guest_messaging.errors import ChannelError
from guest_messaging.models import SendMessageRequest
from guest_messaging.orchestrator import MessageOrchestrator
from guest_messaging.store import InMemoryMessagingRepository


def _make_request(
    *,
    channel: str = "airbnb",
    reservation_id: str | None = "RES-1",
    recipient: str | None = None,
) -> ChannelSendRequest:
    return ChannelSendRequest(
        message_id="msg_000001",
        thread_id="thread_000001",
        channel=channel,
        content="Check-in is from 3pm, door code follows.",
        reservation_id=reservation_id,
        recipient=recipient,
    )


def _make_gateway(booking_ids: dict[str, str] | None = None) -> HttpGatewayChannelAdapter:
    return HttpGatewayChannelAdapter(
        base_url="https://gateway.example.test/",
        api_key="gateway-key-abc123",
        booking_lookup=StaticBookingReferenceLookup({"RES-1": "BK-991"} if booking_ids is None else booking_ids),
    )


def _make_notifier() -> HttpNotifierChannelAdapter:
    return HttpNotifierChannelAdapter(base_url="https://notify.example.test", api_key="notifier-key-xyz")


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _http_error(code: int, msg: str, body: bytes | None = None) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        url="https://gateway.example.test/v1/bookings/BK-991/messages",
        code=code,
        msg=msg,
        hdrs={},  # type: ignore[arg-type]
        fp=io.BytesIO(body) if body is not None else None,
    )


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_gateway_send_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "gw-555"})
    adapter = _make_gateway()

    result = adapter.send(_make_request())

    assert result.provider_message_id == "gw-555"
    assert result.sent_at.tzinfo == timezone.utc
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://gateway.example.test/v1/bookings/BK-991/messages"
    assert request_arg.get_header("Authorization") == "Bearer gateway-key-abc123"
    assert request_arg.get_header("Content-type") == "application/json"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body == {
        "channel": "airbnb",
        "message": "Check-in is from 3pm, door code follows.",
        "reference": "msg_000001",
    }
    assert mock_urlopen.call_args[1]["timeout"] == 30


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_gateway_without_booking_id_is_system_error(mock_urlopen: MagicMock) -> None:
    adapter = _make_gateway(booking_ids={})

    with pytest.raises(ChannelError) as exc_info:
        adapter.send(_make_request())

    assert exc_info.value.kind == "system"
    assert exc_info.value.message == "No external booking id found for this message thread"
    assert exc_info.value.retryable is False
    mock_urlopen.assert_not_called()


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_gateway_http_500_is_server_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(500, "Internal Server Error")

    with pytest.raises(ChannelError) as exc_info:
        _make_gateway().send(_make_request())

    assert exc_info.value.kind == "server_error"
    assert exc_info.value.retryable is True
    assert exc_info.value.message == "Gateway server error (temporary): HTTP 500: Internal Server Error"


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_gateway_http_401_includes_body_detail(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(401, "Unauthorized", b'{"error": "invalid token"}')

    with pytest.raises(ChannelError) as exc_info:
        _make_gateway().send(_make_request())

    assert exc_info.value.kind == "auth"
    assert exc_info.value.message == "Authentication error: HTTP 401: Unauthorized invalid token"


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_gateway_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    with pytest.raises(ChannelError) as exc_info:
        _make_gateway().send(_make_request())

    assert exc_info.value.kind == "unknown"
    assert "Connection error: Connection refused" in exc_info.value.message


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_gateway_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    with pytest.raises(ChannelError) as exc_info:
        _make_gateway().send(_make_request())

    assert exc_info.value.kind == "server_error"
    assert "timed out" in exc_info.value.message


def test_gateway_rejects_empty_configuration() -> None:
    with pytest.raises(ValueError, match="base_url must not be empty"):
        HttpGatewayChannelAdapter(base_url="", api_key="key", booking_lookup=StaticBookingReferenceLookup())
    with pytest.raises(ValueError, match="api_key must not be empty"):
        HttpGatewayChannelAdapter(
            base_url="https://gateway.example.test",
            api_key="  ",
            booking_lookup=StaticBookingReferenceLookup(),
        )


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_airbnb_500_marks_delivery_failed_not_sent(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(502, "Bad Gateway")
    repository = InMemoryMessagingRepository()
    registry = ChannelRegistry()
    registry.register("airbnb", _make_gateway())
    orchestrator = MessageOrchestrator(repository=repository, settings=Settings(), channels=registry)
    thread = orchestrator.resolver.resolve("RES-1")

    with pytest.raises(ChannelError):
        orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="airbnb", content="Hello"))

    message = repository.list_messages(thread.thread_id)[0]
    delivery = repository.get_delivery(message.message_id, "airbnb")
    assert delivery is not None
    assert delivery.status == "failed"
    assert delivery.sent_at is None
    assert delivery.error_message is not None
    assert "server error" in delivery.error_message


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_notifier_send_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "n-1"})

    result = _make_notifier().send(_make_request(channel="email", recipient="guest@example.com"))

    assert result.provider_message_id == "n-1"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://notify.example.test/v1/messages/send"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["recipient"] == "guest@example.com"
    assert sent_body["idempotency_key"] == "msg_000001"


@patch("guest_messaging.channels.urllib.request.urlopen")
def test_notifier_failure_masks_recipient(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(429, "Too Many Requests")

    with pytest.raises(ChannelError) as exc_info:
        _make_notifier().send(_make_request(channel="whatsapp", recipient="+15550001111"))

    assert exc_info.value.kind == "rate_limited"
    assert exc_info.value.message.endswith("(recipient: ***1111)")
    assert "+15550001111" not in exc_info.value.message


def test_notifier_without_recipient_is_system_error() -> None:
    with pytest.raises(ChannelError) as exc_info:
        _make_notifier().send(_make_request(channel="email"))

    assert exc_info.value.kind == "system"


def test_twilio_send_success() -> None:
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM123")
    adapter = TwilioSmsChannelAdapter(account_sid="AC1", auth_token="token", from_number="+15559990000", client=client)

    result = adapter.send(_make_request(channel="sms", recipient="+15550001111"))

    assert result.provider_message_id == "SM123"
    client.messages.create.assert_called_once_with(
        body="Check-in is from 3pm, door code follows.",
        from_="+15559990000",
        to="+15550001111",
    )


def test_twilio_rest_error_is_classified() -> None:
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(429, "/Messages.json", msg="Too many requests")
    adapter = TwilioSmsChannelAdapter(account_sid="AC1", auth_token="token", from_number="+15559990000", client=client)

    with pytest.raises(ChannelError) as exc_info:
        adapter.send(_make_request(channel="sms", recipient="+15550001111"))

    assert exc_info.value.kind == "rate_limited"
    assert exc_info.value.message == "Rate limited: Too many requests (recipient: ***1111)"


@pytest.mark.parametrize(
    ("status_code", "text", "kind"),
    [
        (401, "", "auth"),
        (403, "forbidden", "auth"),
        (404, "", "not_found"),
        (429, "", "rate_limited"),
        (503, "", "server_error"),
        (None, "Access token expired", "auth"),
        (None, "Booking not found for id 12", "not_found"),
        (None, "rate limit exceeded", "rate_limited"),
        (None, "upstream timeout", "server_error"),
        (None, "Message not found", "system"),
        (400, "bad payload", "unknown"),
    ],
)
def test_classify_channel_failure(status_code: int | None, text: str, kind: str) -> None:
    assert classify_channel_failure(status_code, text).kind == kind


def test_classify_channel_failure_prefixes() -> None:
    assert classify_channel_failure(404, "gone").message == "Booking not found: gone"
    assert classify_channel_failure(None, "weird").message == "Unknown error: weird"
    assert classify_channel_failure(None, "Message not found").message == "Message not found"


@pytest.mark.parametrize(
    ("recipient", "channel", "masked"),
    [
        ("guest@example.com", "email", "g***@example.com"),
        ("a@example.com", "email", "*@example.com"),
        ("+1 (555) 000-1111", "sms", "***1111"),
        ("abc", "inapp", "***"),
        ("ab-thread-7781", "airbnb", "ab***81"),
    ],
)
def test_mask_recipient(recipient: str, channel: str, masked: str) -> None:
    assert mask_recipient(recipient, channel) == masked


def test_registry_rejects_unknown_channel() -> None:
    registry = ChannelRegistry()
    registry.register("InApp", InAppChannelAdapter())

    assert registry.channels() == ("inapp",)
    with pytest.raises(ChannelError, match="Unsupported channel: telegram"):
        registry.get("telegram")


def test_build_channel_registry_registers_enabled_channels() -> None:
    settings = Settings(
        gateway_enabled=True,
        gateway_api_base_url="https://gateway.example.test",
        gateway_api_key="gateway-key",
        sms_provider_enabled=True,
        twilio_account_sid="AC1",
        twilio_auth_token="token",
        twilio_from_number="+15559990000",
    )

    registry = build_channel_registry(settings, booking_lookup=StaticBookingReferenceLookup(), twilio_client=MagicMock())

    assert registry.channels() == ("airbnb", "beds24", "booking_com", "inapp", "sms")
    assert registry.get("airbnb") is registry.get("booking_com")
    assert registry.get("inapp").auto_delivered is True


def test_inapp_adapter_returns_no_provider_id() -> None:
    result = InAppChannelAdapter().send(_make_request(channel="inapp"))

    assert result.provider_message_id is None
    assert isinstance(result.sent_at, datetime)

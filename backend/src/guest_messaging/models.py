from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ThreadStatus = Literal["open", "closed", "archived"]
ThreadPriority = Literal["low", "normal", "high", "urgent"]
OriginRole = Literal["guest", "host", "system", "assistant"]
MessageDirection = Literal["incoming", "outgoing"]
DeliveryStatus = Literal["queued", "sent", "delivered", "read", "failed"]
ScheduledStatus = Literal["queued", "processing", "sent", "failed"]
ParticipantType = Literal["guest", "host"]
WebhookHintType = Literal["reservation", "external_thread"]

OUTGOING_ROLES: frozenset[str] = frozenset({"host", "system", "assistant"})


def _normalize_channel(value: str) -> str:
    normalized = str(value).strip().lower()
    if not normalized:
        raise ValueError("channel cannot be blank")
    return normalized


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes from providers are treated as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ChannelMappingSpec(BaseModel):
    channel: str
    external_thread_id: str = Field(min_length=1, max_length=256)

    @field_validator("channel")
    @classmethod
    def _channel(cls, value: str) -> str:
        return _normalize_channel(value)


class ParticipantSpec(BaseModel):
    type: ParticipantType
    user_id: str | None = None
    external_address: str | None = None
    display_name: str | None = None


class ThreadInitialData(BaseModel):
    subject: str | None = Field(default=None, max_length=256)
    priority: ThreadPriority = "normal"
    participants: list[ParticipantSpec] = Field(default_factory=list)
    channels: list[ChannelMappingSpec] = Field(default_factory=list)


class ActorContext(BaseModel):
    """The caller on whose behalf an operation runs.

    Passed explicitly through the call chain; the engine never derives the
    acting user from ambient request state.
    """

    model_config = ConfigDict(frozen=True)

    role: OriginRole
    actor_id: str | None = None
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SendMessageRequest(BaseModel):
    thread_id: str = Field(min_length=1)
    channel: str
    content: str
    origin_role: OriginRole = "host"
    parent_message_id: str | None = None
    author_id: str | None = None

    @field_validator("channel")
    @classmethod
    def _channel(cls, value: str) -> str:
        return _normalize_channel(value)


class ReceiveMessageRequest(BaseModel):
    thread_id: str = Field(min_length=1)
    channel: str
    content: str
    origin_role: OriginRole = "guest"
    provider_message_id: str | None = None
    author_id: str | None = None
    sent_at: datetime | None = None

    @field_validator("channel")
    @classmethod
    def _channel(cls, value: str) -> str:
        return _normalize_channel(value)

    @field_validator("provider_message_id")
    @classmethod
    def _provider_message_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = str(value).strip()
        return normalized or None

    @field_validator("sent_at")
    @classmethod
    def _sent_at_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None


class InboundWebhookPayload(BaseModel):
    """Channel-agnostic inbound event as produced by the webhook route layer."""

    thread_hint: str = Field(min_length=1, max_length=256)
    hint_type: WebhookHintType = "reservation"
    channel: str
    content: str
    sender_role: OriginRole = "guest"
    provider_message_id: str | None = None
    timestamp: datetime | None = None
    external_thread_id: str | None = None
    sender_address: str | None = None
    sender_name: str | None = None

    @field_validator("channel")
    @classmethod
    def _channel(cls, value: str) -> str:
        return _normalize_channel(value)

    @field_validator("provider_message_id", "external_thread_id")
    @classmethod
    def _strip_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = str(value).strip()
        return normalized or None


class ScheduleMessageRequest(BaseModel):
    thread_id: str = Field(min_length=1)
    template_id: str = Field(min_length=1)
    channel: str = "inapp"
    run_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None

    @field_validator("channel")
    @classmethod
    def _channel(cls, value: str) -> str:
        return _normalize_channel(value)

    @field_validator("run_at")
    @classmethod
    def _run_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ReceiveResult(BaseModel):
    duplicate: bool = False
    thread_id: str
    message_id: str | None = None


class WebhookIngestResult(BaseModel):
    thread_id: str
    message_id: str | None = None
    duplicate: bool = False
    echo: bool = False


class ThreadStats(BaseModel):
    total_messages: int
    guest_messages: int
    host_messages: int
    system_messages: int
    assistant_messages: int
    incoming: int
    outgoing: int


class DispatchRunSummary(BaseModel):
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    sent_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)

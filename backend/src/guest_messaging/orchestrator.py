from __future__ import annotations

import logging
import re
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .channels import ChannelRegistry, ChannelSendRequest
from .collaborators import (
    ContentSanitizer,
    DeliveryEventPublisher,
    LoggingDeliveryEventPublisher,
    PassthroughContentSanitizer,
)
from .config import Settings
from .delivery import DeliveryStatusTracker
from .echo import EchoDetector
from .errors import (
    ChannelError,
    ConflictError,
    MessagingError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .models import (
    OUTGOING_ROLES,
    ActorContext,
    ChannelMappingSpec,
    InboundWebhookPayload,
    ParticipantSpec,
    ParticipantType,
    ReceiveMessageRequest,
    ReceiveResult,
    ScheduleMessageRequest,
    SendMessageRequest,
    ThreadInitialData,
    ThreadStats,
    ThreadStatus,
    WebhookIngestResult,
)
from .store import MessageRecord, MessagingRepository, ScheduledMessageRecord, ThreadRecord
from .threads import ThreadResolver

logger = logging.getLogger(__name__)

IMAGE_REFERENCE = re.compile(
    r"!\[[^\]]*\]\([^)]+\)|<img\b|https?://\S+\.(?:png|jpe?g|gif|webp)(?:\?\S*)?",
    re.IGNORECASE,
)

DelayedCall = Callable[[float, Callable[[], None]], None]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _start_daemon_timer(delay_seconds: float, callback: Callable[[], None]) -> None:
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()


def _preview(content: str, *, limit: int = 160) -> str:
    if len(content) <= limit:
        return content
    return f"{content[: limit - 3]}..."


def contains_image_reference(content: str) -> bool:
    return IMAGE_REFERENCE.search(content) is not None


class MessageOrchestrator:
    def __init__(
        self,
        *,
        repository: MessagingRepository,
        settings: Settings,
        channels: ChannelRegistry,
        resolver: ThreadResolver | None = None,
        tracker: DeliveryStatusTracker | None = None,
        echo_detector: EchoDetector | None = None,
        sanitizer: ContentSanitizer | None = None,
        publisher: DeliveryEventPublisher | None = None,
        clock: Callable[[], datetime] = _now_utc,
        delayed_call: DelayedCall = _start_daemon_timer,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._channels = channels
        self._clock = clock
        self._resolver = resolver or ThreadResolver(repository=repository, clock=clock)
        self._tracker = tracker or DeliveryStatusTracker(repository=repository, clock=clock)
        self._echo = echo_detector or EchoDetector(repository=repository, settings=settings, clock=clock)
        self._sanitizer = sanitizer or PassthroughContentSanitizer()
        self._publisher = publisher or LoggingDeliveryEventPublisher()
        self._delayed_call = delayed_call

    @property
    def resolver(self) -> ThreadResolver:
        return self._resolver

    @property
    def tracker(self) -> DeliveryStatusTracker:
        return self._tracker

    # Outbound

    def send_message(self, request: SendMessageRequest) -> MessageRecord:
        self._validate_outbound_content(request.content)
        if request.origin_role not in OUTGOING_ROLES:
            raise ValidationError(f"origin_role {request.origin_role} cannot send outgoing messages")
        thread = self._require_thread(request.thread_id)
        self._reopen_for_activity(thread)

        now = self._clock()
        message, _ = self._repository.insert_message_with_delivery(
            thread_id=thread.thread_id,
            parent_message_id=request.parent_message_id,
            origin_role=request.origin_role,
            direction="outgoing",
            channel=request.channel,
            content=request.content,
            author_id=request.author_id,
            delivery_status="queued",
            provider_message_id=None,
            now=now,
        )
        self._update_summary(thread.thread_id, request.content, now)
        self._publish(thread.thread_id, "new_message", {"message_id": message.message_id, "direction": "outgoing"})

        self._dispatch(message, thread)
        return message

    def resend_message(self, message_id: str) -> MessageRecord:
        message = self._require_message(message_id)
        if message.direction != "outgoing":
            raise ValidationError("only outgoing messages can be resent")
        if message.is_unsent:
            raise ConflictError("message was unsent")
        if not self._tracker.requeue(message.message_id, message.channel):
            raise ConflictError("only failed deliveries can be resent")
        thread = self._require_thread(message.thread_id)
        logger.info("resending message %s on %s", message.message_id, message.channel)
        self._dispatch(message, thread)
        return message

    def _dispatch(self, message: MessageRecord, thread: ThreadRecord) -> None:
        send_request = self._send_request(message, thread)
        try:
            adapter = self._channels.get(message.channel)
            result = adapter.send(send_request)
        except ChannelError as exc:
            self._record_failure(message, exc)
            raise
        except Exception as exc:
            error = ChannelError("unknown", f"Unknown error: {exc}", channel=message.channel)
            self._record_failure(message, error)
            raise error from exc

        self._tracker.mark_sent(message.message_id, message.channel, provider_message_id=result.provider_message_id)
        self._publish(
            message.thread_id,
            "delivery_status_change",
            {"message_id": message.message_id, "channel": message.channel, "status": "sent"},
        )
        if adapter.auto_delivered:
            self._delayed_call(
                self._settings.inapp_delivered_delay_seconds,
                lambda: self._mark_delivered_later(message.message_id, message.thread_id, message.channel),
            )

    def _record_failure(self, message: MessageRecord, error: ChannelError) -> None:
        logger.warning(
            "channel send failed for message %s on %s (%s): %s",
            message.message_id,
            message.channel,
            error.kind,
            error.message,
        )
        self._tracker.mark_failed(message.message_id, message.channel, error.message)
        self._publish(
            message.thread_id,
            "delivery_status_change",
            {
                "message_id": message.message_id,
                "channel": message.channel,
                "status": "failed",
                "error_kind": error.kind,
            },
        )

    def _mark_delivered_later(self, message_id: str, thread_id: str, channel: str) -> None:
        try:
            moved = self._tracker.mark_delivered(message_id, channel)
        except MessagingError as exc:
            logger.warning("deferred delivered update failed for message %s: %s", message_id, exc.message)
            return
        if moved:
            self._publish(
                thread_id,
                "delivery_status_change",
                {"message_id": message_id, "channel": channel, "status": "delivered"},
            )

    def _send_request(self, message: MessageRecord, thread: ThreadRecord) -> ChannelSendRequest:
        recipient = next(
            (
                participant.external_address
                for participant in self._repository.list_participants(thread.thread_id)
                if participant.participant_type == "guest" and participant.external_address
            ),
            None,
        )
        external_thread_id = next(
            (
                mapping.external_thread_id
                for mapping in self._repository.list_thread_channels(thread.thread_id)
                if mapping.channel == message.channel
            ),
            None,
        )
        return ChannelSendRequest(
            message_id=message.message_id,
            thread_id=thread.thread_id,
            channel=message.channel,
            content=message.content,
            reservation_id=thread.reservation_id,
            recipient=recipient,
            external_thread_id=external_thread_id,
        )

    def _validate_outbound_content(self, content: str) -> None:
        if not content or not content.strip():
            raise ValidationError("message content is required")
        if contains_image_reference(content):
            limit = self._settings.message_max_length_with_image
        else:
            limit = self._settings.message_max_length
        if len(content) > limit:
            raise ValidationError(f"message content exceeds {limit} characters")

    # Inbound

    def receive_message(self, request: ReceiveMessageRequest) -> ReceiveResult:
        thread = self._require_thread(request.thread_id)
        if request.provider_message_id:
            existing = self._repository.find_delivery_by_provider_message_id(
                request.provider_message_id,
                channel=request.channel,
            )
            if existing is not None:
                return ReceiveResult(duplicate=True, thread_id=thread.thread_id, message_id=existing.message_id)

        self._reopen_for_activity(thread)
        now = request.sent_at or self._clock()
        try:
            message, _ = self._repository.insert_message_with_delivery(
                thread_id=thread.thread_id,
                parent_message_id=None,
                origin_role=request.origin_role,
                direction="incoming",
                channel=request.channel,
                content=request.content,
                author_id=request.author_id,
                delivery_status="delivered",
                provider_message_id=request.provider_message_id,
                now=now,
            )
        except ConflictError:
            # A concurrent replay of the same provider id won the insert.
            existing = self._repository.find_delivery_by_provider_message_id(
                request.provider_message_id or "",
                channel=request.channel,
            )
            if existing is None:
                raise
            return ReceiveResult(duplicate=True, thread_id=thread.thread_id, message_id=existing.message_id)

        content = self._sanitize(request.content, message.message_id)
        if content != message.content:
            self._repository.update_message_content(message.message_id, content=content)
            message = replace(message, content=content)

        self._update_summary(thread.thread_id, message.content, now)
        self._publish(thread.thread_id, "new_message", {"message_id": message.message_id, "direction": "incoming"})
        return ReceiveResult(duplicate=False, thread_id=thread.thread_id, message_id=message.message_id)

    def ingest_webhook(self, payload: InboundWebhookPayload) -> WebhookIngestResult:
        if payload.provider_message_id:
            # Checked before resolving so a replay never reopens or re-maps the thread.
            # Any channel: an absorbed echo stores the id on the original outbound delivery.
            existing = self._repository.find_delivery_by_provider_message_id(payload.provider_message_id)
            if existing is not None:
                known = self._require_message(existing.message_id)
                return WebhookIngestResult(thread_id=known.thread_id, message_id=existing.message_id, duplicate=True)

        thread = self._thread_for_webhook(payload)

        if payload.sender_role == "host":
            echoed = self._echo.absorb_echo(thread.thread_id, payload.content, payload.provider_message_id)
            if echoed is not None:
                self._publish(
                    thread.thread_id,
                    "delivery_status_change",
                    {"message_id": echoed.message_id, "channel": echoed.channel, "provider_message_id": payload.provider_message_id},
                )
                return WebhookIngestResult(thread_id=thread.thread_id, message_id=echoed.message_id, echo=True)

        result = self.receive_message(
            ReceiveMessageRequest(
                thread_id=thread.thread_id,
                channel=payload.channel,
                content=payload.content,
                origin_role=payload.sender_role,
                provider_message_id=payload.provider_message_id,
                sent_at=payload.timestamp,
            )
        )
        return WebhookIngestResult(thread_id=result.thread_id, message_id=result.message_id, duplicate=result.duplicate)

    def _thread_for_webhook(self, payload: InboundWebhookPayload) -> ThreadRecord:
        participants: list[ParticipantSpec] = []
        if payload.sender_role == "guest" and (payload.sender_address or payload.sender_name):
            participants.append(
                ParticipantSpec(
                    type="guest",
                    external_address=payload.sender_address,
                    display_name=payload.sender_name,
                )
            )
        if payload.hint_type == "external_thread":
            return self._resolver.resolve_by_channel(
                payload.channel,
                payload.thread_hint,
                ThreadInitialData(participants=participants),
            )
        channels: list[ChannelMappingSpec] = []
        if payload.external_thread_id:
            channels.append(ChannelMappingSpec(channel=payload.channel, external_thread_id=payload.external_thread_id))
        return self._resolver.resolve(
            payload.thread_hint,
            ThreadInitialData(participants=participants, channels=channels),
        )

    def _sanitize(self, content: str, message_id: str) -> str:
        try:
            return self._sanitizer.process(content, message_id)
        except Exception:
            logger.warning("content sanitizer failed for message %s; keeping original content", message_id, exc_info=True)
            return content

    # Unsend, read state, thread status

    def unsend_message(self, message_id: str, actor: ActorContext) -> MessageRecord:
        message = self._require_message(message_id)
        if not self._repository.capabilities().supports_unsend:
            raise ConflictError("unsend not supported by store schema")
        if message.is_unsent:
            raise ConflictError("message already unsent")
        if actor.role != message.origin_role:
            raise PermissionDeniedError("only the original sender role can unsend this message")
        if message.author_id is not None and actor.actor_id != message.author_id:
            raise PermissionDeniedError("only the original author can unsend this message")
        if message.channel not in self._settings.unsendable_channels:
            raise PermissionDeniedError(f"messages on channel {message.channel} cannot be unsent")
        now = self._clock()
        if now - message.created_at > timedelta(hours=self._settings.unsend_window_hours):
            raise PermissionDeniedError(f"unsend window of {self._settings.unsend_window_hours} hours has expired")

        updated = self._repository.mark_unsent(message.message_id, unsent_by=actor.actor_id, at=now)
        if updated is None:
            raise ConflictError("message already unsent")
        logger.info("message %s unsent by %s (%s)", message.message_id, actor.actor_id, actor.role)
        self._publish(updated.thread_id, "message_unsent", {"message_id": updated.message_id})
        return updated

    def mark_message_read(self, message_id: str, channel: str | None = None) -> bool:
        message = self._require_message(message_id)
        target_channel = channel or message.channel
        moved = self._tracker.mark_read(message.message_id, target_channel)
        if moved:
            self._publish(
                message.thread_id,
                "delivery_status_change",
                {"message_id": message.message_id, "channel": target_channel, "status": "read"},
            )
        return moved

    def mark_thread_read(
        self,
        thread_id: str,
        participant_type: ParticipantType = "host",
        before_message_id: str | None = None,
    ) -> int:
        thread = self._require_thread(thread_id)
        direction = "incoming" if participant_type == "host" else "outgoing"
        messages = self._repository.list_messages(thread.thread_id)
        if before_message_id is not None:
            cutoff = next((index for index, value in enumerate(messages) if value.message_id == before_message_id), None)
            if cutoff is None:
                raise NotFoundError(f"message not found: {before_message_id}")
            messages = messages[: cutoff + 1]

        statuses = {
            (delivery.message_id, delivery.channel): delivery.status
            for delivery in self._repository.list_deliveries_for_thread(thread.thread_id)
        }
        marked = 0
        for message in messages:
            if message.direction != direction:
                continue
            if statuses.get((message.message_id, message.channel)) in {None, "read", "failed"}:
                continue
            if self._tracker.mark_read(message.message_id, message.channel):
                marked += 1
        self._repository.update_participant_last_read(thread.thread_id, participant_type=participant_type, at=self._clock())
        if marked:
            self._publish(thread.thread_id, "thread_read", {"participant_type": participant_type, "count": marked})
        return marked

    def unread_count(self, thread_id: str, participant_type: ParticipantType = "host") -> int:
        thread = self._require_thread(thread_id)
        direction = "incoming" if participant_type == "host" else "outgoing"
        statuses = {
            (delivery.message_id, delivery.channel): delivery.status
            for delivery in self._repository.list_deliveries_for_thread(thread.thread_id)
        }
        return sum(
            1
            for message in self._repository.list_messages(thread.thread_id)
            if message.direction == direction
            and not message.is_unsent
            and statuses.get((message.message_id, message.channel)) in {"sent", "delivered"}
        )

    def update_thread_status(self, thread_id: str, status: ThreadStatus, reason: str | None = None) -> ThreadRecord:
        thread = self._require_thread(thread_id)
        updated = self._repository.update_thread_status(thread.thread_id, status=status, reason=reason)
        logger.info("thread %s status %s -> %s", thread.thread_id, thread.status, status)
        self._publish(thread.thread_id, "thread_status_change", {"status": status, "reason": reason})
        return updated

    # Scheduling

    def schedule_message(self, request: ScheduleMessageRequest) -> ScheduledMessageRecord:
        thread = self._require_thread(request.thread_id)
        if request.channel not in self._channels.channels():
            raise ValidationError(f"Unsupported channel: {request.channel}")
        record = self._repository.insert_scheduled_message(
            thread_id=thread.thread_id,
            template_id=request.template_id,
            channel=request.channel,
            run_at=request.run_at,
            payload=request.payload,
            created_by=request.created_by,
            now=self._clock(),
        )
        logger.info("scheduled %s for thread %s at %s", record.scheduled_id, thread.thread_id, record.run_at.isoformat())
        return record

    # Queries

    def get_thread(self, thread_id: str) -> ThreadRecord:
        return self._require_thread(thread_id)

    def list_threads(
        self,
        *,
        status: ThreadStatus | None = None,
        reservation_id: str | None = None,
        limit: int = 100,
    ) -> list[ThreadRecord]:
        return self._repository.list_threads(status=status, reservation_id=reservation_id, limit=limit)

    def get_messages(self, thread_id: str, *, limit: int = 50, offset: int = 0) -> list[MessageRecord]:
        thread = self._require_thread(thread_id)
        return self._repository.list_messages(thread.thread_id, limit=limit, offset=offset)

    def get_thread_stats(self, thread_id: str) -> ThreadStats:
        thread = self._require_thread(thread_id)
        messages = self._repository.list_messages(thread.thread_id)
        return ThreadStats(
            total_messages=len(messages),
            guest_messages=sum(1 for value in messages if value.origin_role == "guest"),
            host_messages=sum(1 for value in messages if value.origin_role == "host"),
            system_messages=sum(1 for value in messages if value.origin_role == "system"),
            assistant_messages=sum(1 for value in messages if value.origin_role == "assistant"),
            incoming=sum(1 for value in messages if value.direction == "incoming"),
            outgoing=sum(1 for value in messages if value.direction == "outgoing"),
        )

    # Helpers

    def _require_thread(self, thread_id: str) -> ThreadRecord:
        thread = self._repository.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"thread not found: {thread_id}")
        return thread

    def _require_message(self, message_id: str) -> MessageRecord:
        message = self._repository.get_message(message_id)
        if message is None:
            raise NotFoundError(f"message not found: {message_id}")
        return message

    def _reopen_for_activity(self, thread: ThreadRecord) -> None:
        if thread.status != "closed":
            return
        self._repository.update_thread_status(thread.thread_id, status="open", only_from=frozenset({"closed"}))
        logger.info("auto-reopened closed thread %s on new activity", thread.thread_id)

    def _update_summary(self, thread_id: str, content: str, at: datetime) -> None:
        self._repository.update_thread_summary(
            thread_id,
            last_message_at=at,
            preview=_preview(content, limit=self._settings.thread_preview_length),
        )

    def _publish(self, thread_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self._publisher.publish(thread_id, event, payload)
        except Exception:
            logger.warning("failed to publish %s for thread %s", event, thread_id, exc_info=True)

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Any, Iterable, Protocol

from .errors import ConflictError, NotFoundError
from .models import (
    DeliveryStatus,
    MessageDirection,
    OriginRole,
    ParticipantType,
    ScheduledStatus,
    ThreadPriority,
    ThreadStatus,
)

DELIVERY_TIMESTAMP_FIELDS = ("queued_at", "sent_at", "delivered_at", "read_at")


@dataclass(frozen=True)
class ThreadRecord:
    thread_id: str
    reservation_id: str | None
    subject: str | None
    status: ThreadStatus
    priority: ThreadPriority
    closure_reason: str | None
    last_message_at: datetime | None
    last_message_preview: str | None
    needs_linking: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ThreadChannelRecord:
    thread_id: str
    channel: str
    external_thread_id: str
    created_at: datetime


@dataclass(frozen=True)
class ParticipantRecord:
    participant_id: str
    thread_id: str
    participant_type: ParticipantType
    user_id: str | None
    external_address: str | None
    display_name: str | None
    last_read_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    thread_id: str
    parent_message_id: str | None
    origin_role: OriginRole
    direction: MessageDirection
    channel: str
    content: str
    author_id: str | None
    is_unsent: bool
    unsent_at: datetime | None
    unsent_by: str | None
    created_at: datetime


@dataclass(frozen=True)
class DeliveryRecord:
    delivery_id: str
    message_id: str
    channel: str
    status: DeliveryStatus
    queued_at: datetime | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    provider_message_id: str | None
    error_message: str | None
    updated_at: datetime


@dataclass(frozen=True)
class ScheduledMessageRecord:
    scheduled_id: str
    thread_id: str
    template_id: str
    channel: str
    run_at: datetime
    payload: dict[str, Any]
    status: ScheduledStatus
    last_error: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class StoreCapabilities:
    """Optional schema features, detected once when the repository is built."""

    supports_unsend: bool = True
    extra_features: frozenset[str] = field(default_factory=frozenset)


class MessagingRepository(Protocol):
    def reset(self) -> None: ...

    def capabilities(self) -> StoreCapabilities: ...

    # Threads
    def insert_thread(
        self,
        *,
        reservation_id: str | None,
        subject: str | None,
        priority: ThreadPriority,
        needs_linking: bool,
        now: datetime,
    ) -> ThreadRecord: ...

    def get_thread(self, thread_id: str) -> ThreadRecord | None: ...

    def update_thread_status(
        self,
        thread_id: str,
        *,
        status: ThreadStatus,
        reason: str | None = None,
        only_from: frozenset[str] | None = None,
    ) -> ThreadRecord: ...

    def update_thread_summary(self, thread_id: str, *, last_message_at: datetime, preview: str) -> None: ...

    def update_thread_reservation(self, thread_id: str, *, reservation_id: str) -> ThreadRecord: ...

    def find_threads_by_reservation_ids(self, reservation_ids: Iterable[str]) -> list[ThreadRecord]: ...

    def find_thread_by_channel_mapping(self, *, channel: str, external_thread_id: str) -> ThreadRecord | None: ...

    def list_threads(
        self,
        *,
        status: ThreadStatus | None = None,
        reservation_id: str | None = None,
        limit: int = 100,
    ) -> list[ThreadRecord]: ...

    # Channel mappings and participants
    def add_thread_channel(self, thread_id: str, *, channel: str, external_thread_id: str) -> ThreadChannelRecord: ...

    def list_thread_channels(self, thread_id: str) -> list[ThreadChannelRecord]: ...

    def add_participant(
        self,
        thread_id: str,
        *,
        participant_type: ParticipantType,
        user_id: str | None,
        external_address: str | None,
        display_name: str | None,
    ) -> ParticipantRecord: ...

    def list_participants(self, thread_id: str) -> list[ParticipantRecord]: ...

    def update_participant_last_read(self, thread_id: str, *, participant_type: ParticipantType, at: datetime) -> int: ...

    # Messages
    def insert_message_with_delivery(
        self,
        *,
        thread_id: str,
        parent_message_id: str | None,
        origin_role: OriginRole,
        direction: MessageDirection,
        channel: str,
        content: str,
        author_id: str | None,
        delivery_status: DeliveryStatus,
        provider_message_id: str | None,
        now: datetime,
    ) -> tuple[MessageRecord, DeliveryRecord]: ...

    def update_message_content(self, message_id: str, *, content: str) -> None: ...

    def get_message(self, message_id: str) -> MessageRecord | None: ...

    def list_messages(self, thread_id: str, *, limit: int | None = None, offset: int = 0) -> list[MessageRecord]: ...

    def mark_unsent(self, message_id: str, *, unsent_by: str | None, at: datetime) -> MessageRecord | None: ...

    def find_recent_outbound_by_content_and_window(
        self,
        *,
        thread_id: str,
        content: str,
        since: datetime,
        require_unassigned_delivery: bool,
    ) -> MessageRecord | None: ...

    # Deliveries
    def get_delivery(self, message_id: str, channel: str) -> DeliveryRecord | None: ...

    def list_deliveries(self, message_id: str) -> list[DeliveryRecord]: ...

    def list_deliveries_for_thread(self, thread_id: str) -> list[DeliveryRecord]: ...

    def transition_delivery(
        self,
        *,
        message_id: str,
        channel: str,
        status: DeliveryStatus,
        allowed_from: frozenset[str],
        timestamp_field: str | None,
        at: datetime,
        error_message: str | None = None,
        clear_error: bool = False,
        provider_message_id: str | None = None,
    ) -> DeliveryRecord | None: ...

    def conditional_backfill_provider_id(self, *, message_id: str, channel: str, provider_message_id: str) -> bool: ...

    def find_delivery_by_provider_message_id(
        self,
        provider_message_id: str,
        *,
        channel: str | None = None,
    ) -> DeliveryRecord | None: ...

    # Scheduled messages
    def insert_scheduled_message(
        self,
        *,
        thread_id: str,
        template_id: str,
        channel: str,
        run_at: datetime,
        payload: dict[str, Any],
        created_by: str | None,
        now: datetime,
    ) -> ScheduledMessageRecord: ...

    def get_scheduled_message(self, scheduled_id: str) -> ScheduledMessageRecord | None: ...

    def claim_due_scheduled_messages(
        self,
        *,
        limit: int,
        now: datetime,
        lease_seconds: float | None = None,
    ) -> list[ScheduledMessageRecord]: ...

    def complete_scheduled_message(
        self,
        scheduled_id: str,
        *,
        status: ScheduledStatus,
        last_error: str | None = None,
    ) -> None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _recency_key(created_at: datetime, record_id: str) -> tuple[datetime, str]:
    return (created_at, record_id)


class InMemoryMessagingRepository:
    """Lock-guarded dict store; each public method is one atomic unit."""

    def __init__(self, *, capabilities: StoreCapabilities | None = None) -> None:
        self._lock = Lock()
        self._capabilities = capabilities or StoreCapabilities()
        self._init_state()

    def _init_state(self) -> None:
        self._thread_counter = count(1)
        self._message_counter = count(1)
        self._delivery_counter = count(1)
        self._participant_counter = count(1)
        self._scheduled_counter = count(1)
        self._threads: dict[str, ThreadRecord] = {}
        self._channels_by_thread: dict[str, list[ThreadChannelRecord]] = defaultdict(list)
        self._thread_by_mapping: dict[tuple[str, str], str] = {}
        self._participants_by_thread: dict[str, list[ParticipantRecord]] = defaultdict(list)
        self._messages: dict[str, MessageRecord] = {}
        self._message_ids_by_thread: dict[str, list[str]] = defaultdict(list)
        self._deliveries: dict[tuple[str, str], DeliveryRecord] = {}
        self._scheduled: dict[str, ScheduledMessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._init_state()

    def capabilities(self) -> StoreCapabilities:
        return self._capabilities

    def _require_thread(self, thread_id: str) -> ThreadRecord:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise NotFoundError(f"thread not found: {thread_id}")
        return thread

    def insert_thread(
        self,
        *,
        reservation_id: str | None,
        subject: str | None,
        priority: ThreadPriority,
        needs_linking: bool,
        now: datetime,
    ) -> ThreadRecord:
        with self._lock:
            if reservation_id is not None:
                for existing in self._threads.values():
                    if existing.reservation_id == reservation_id:
                        raise ConflictError(f"thread already exists for reservation {reservation_id}")
            thread = ThreadRecord(
                thread_id=f"thread_{next(self._thread_counter):06d}",
                reservation_id=reservation_id,
                subject=subject,
                status="open",
                priority=priority,
                closure_reason=None,
                last_message_at=None,
                last_message_preview=None,
                needs_linking=needs_linking,
                created_at=now,
                updated_at=now,
            )
            self._threads[thread.thread_id] = thread
            return thread

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        return self._threads.get(thread_id)

    def update_thread_status(
        self,
        thread_id: str,
        *,
        status: ThreadStatus,
        reason: str | None = None,
        only_from: frozenset[str] | None = None,
    ) -> ThreadRecord:
        with self._lock:
            current = self._require_thread(thread_id)
            if only_from is not None and current.status not in only_from:
                return current
            updated = replace(
                current,
                status=status,
                closure_reason=reason if status == "closed" else None,
                updated_at=_now_utc(),
            )
            self._threads[thread_id] = updated
            return updated

    def update_thread_summary(self, thread_id: str, *, last_message_at: datetime, preview: str) -> None:
        with self._lock:
            current = self._require_thread(thread_id)
            self._threads[thread_id] = replace(
                current,
                last_message_at=last_message_at,
                last_message_preview=preview,
                updated_at=_now_utc(),
            )

    def update_thread_reservation(self, thread_id: str, *, reservation_id: str) -> ThreadRecord:
        with self._lock:
            current = self._require_thread(thread_id)
            for other in self._threads.values():
                if other.thread_id != thread_id and other.reservation_id == reservation_id:
                    raise ConflictError(f"thread already exists for reservation {reservation_id}")
            updated = replace(current, reservation_id=reservation_id, needs_linking=False, updated_at=_now_utc())
            self._threads[thread_id] = updated
            return updated

    def find_threads_by_reservation_ids(self, reservation_ids: Iterable[str]) -> list[ThreadRecord]:
        wanted = set(reservation_ids)
        with self._lock:
            matches = [value for value in self._threads.values() if value.reservation_id in wanted]
        return sorted(matches, key=lambda value: _recency_key(value.created_at, value.thread_id), reverse=True)

    def find_thread_by_channel_mapping(self, *, channel: str, external_thread_id: str) -> ThreadRecord | None:
        thread_id = self._thread_by_mapping.get((channel, external_thread_id))
        if thread_id is None:
            return None
        return self._threads.get(thread_id)

    def list_threads(
        self,
        *,
        status: ThreadStatus | None = None,
        reservation_id: str | None = None,
        limit: int = 100,
    ) -> list[ThreadRecord]:
        with self._lock:
            items = list(self._threads.values())
        if status is not None:
            items = [value for value in items if value.status == status]
        if reservation_id is not None:
            items = [value for value in items if value.reservation_id == reservation_id]
        floor = datetime.min.replace(tzinfo=timezone.utc)
        items.sort(key=lambda value: (value.last_message_at or floor, value.thread_id), reverse=True)
        return items[:limit]

    def add_thread_channel(self, thread_id: str, *, channel: str, external_thread_id: str) -> ThreadChannelRecord:
        with self._lock:
            self._require_thread(thread_id)
            key = (channel, external_thread_id)
            if key in self._thread_by_mapping:
                raise ConflictError(f"channel mapping already exists: {channel}:{external_thread_id}")
            record = ThreadChannelRecord(
                thread_id=thread_id,
                channel=channel,
                external_thread_id=external_thread_id,
                created_at=_now_utc(),
            )
            self._thread_by_mapping[key] = thread_id
            self._channels_by_thread[thread_id].append(record)
            return record

    def list_thread_channels(self, thread_id: str) -> list[ThreadChannelRecord]:
        return list(self._channels_by_thread.get(thread_id, []))

    def add_participant(
        self,
        thread_id: str,
        *,
        participant_type: ParticipantType,
        user_id: str | None,
        external_address: str | None,
        display_name: str | None,
    ) -> ParticipantRecord:
        with self._lock:
            self._require_thread(thread_id)
            record = ParticipantRecord(
                participant_id=f"part_{next(self._participant_counter):06d}",
                thread_id=thread_id,
                participant_type=participant_type,
                user_id=user_id,
                external_address=external_address,
                display_name=display_name,
                last_read_at=None,
                created_at=_now_utc(),
            )
            self._participants_by_thread[thread_id].append(record)
            return record

    def list_participants(self, thread_id: str) -> list[ParticipantRecord]:
        return list(self._participants_by_thread.get(thread_id, []))

    def update_participant_last_read(self, thread_id: str, *, participant_type: ParticipantType, at: datetime) -> int:
        with self._lock:
            participants = self._participants_by_thread.get(thread_id, [])
            updated = 0
            for index, participant in enumerate(participants):
                if participant.participant_type != participant_type:
                    continue
                participants[index] = replace(participant, last_read_at=at)
                updated += 1
            return updated

    def insert_message_with_delivery(
        self,
        *,
        thread_id: str,
        parent_message_id: str | None,
        origin_role: OriginRole,
        direction: MessageDirection,
        channel: str,
        content: str,
        author_id: str | None,
        delivery_status: DeliveryStatus,
        provider_message_id: str | None,
        now: datetime,
    ) -> tuple[MessageRecord, DeliveryRecord]:
        with self._lock:
            self._require_thread(thread_id)
            if provider_message_id is not None:
                for delivery in self._deliveries.values():
                    if delivery.channel == channel and delivery.provider_message_id == provider_message_id:
                        raise ConflictError(f"provider message id already recorded: {channel}:{provider_message_id}")
            message = MessageRecord(
                message_id=f"msg_{next(self._message_counter):06d}",
                thread_id=thread_id,
                parent_message_id=parent_message_id,
                origin_role=origin_role,
                direction=direction,
                channel=channel,
                content=content,
                author_id=author_id,
                is_unsent=False,
                unsent_at=None,
                unsent_by=None,
                created_at=now,
            )
            timestamps: dict[str, datetime | None] = {name: None for name in DELIVERY_TIMESTAMP_FIELDS}
            timestamps[f"{delivery_status}_at"] = now
            delivery = DeliveryRecord(
                delivery_id=f"dlv_{next(self._delivery_counter):06d}",
                message_id=message.message_id,
                channel=channel,
                status=delivery_status,
                provider_message_id=provider_message_id,
                error_message=None,
                updated_at=now,
                **timestamps,
            )
            self._messages[message.message_id] = message
            self._message_ids_by_thread[thread_id].append(message.message_id)
            self._deliveries[(message.message_id, channel)] = delivery
            return message, delivery

    def update_message_content(self, message_id: str, *, content: str) -> None:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise NotFoundError(f"message not found: {message_id}")
            self._messages[message_id] = replace(current, content=content)

    def get_message(self, message_id: str) -> MessageRecord | None:
        return self._messages.get(message_id)

    def list_messages(self, thread_id: str, *, limit: int | None = None, offset: int = 0) -> list[MessageRecord]:
        with self._lock:
            messages = [self._messages[value] for value in self._message_ids_by_thread.get(thread_id, [])]
        messages.sort(key=lambda value: _recency_key(value.created_at, value.message_id))
        if limit is None:
            return messages[offset:]
        return messages[offset : offset + limit]

    def mark_unsent(self, message_id: str, *, unsent_by: str | None, at: datetime) -> MessageRecord | None:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise NotFoundError(f"message not found: {message_id}")
            if current.is_unsent:
                return None
            updated = replace(current, is_unsent=True, unsent_at=at, unsent_by=unsent_by)
            self._messages[message_id] = updated
            return updated

    def find_recent_outbound_by_content_and_window(
        self,
        *,
        thread_id: str,
        content: str,
        since: datetime,
        require_unassigned_delivery: bool,
    ) -> MessageRecord | None:
        with self._lock:
            candidates: list[MessageRecord] = []
            for message_id in self._message_ids_by_thread.get(thread_id, []):
                message = self._messages[message_id]
                if message.direction != "outgoing" or message.origin_role != "host":
                    continue
                if message.content != content or message.created_at < since:
                    continue
                if require_unassigned_delivery and not any(
                    delivery.message_id == message_id and delivery.provider_message_id is None
                    for delivery in self._deliveries.values()
                ):
                    continue
                candidates.append(message)
        if not candidates:
            return None
        return max(candidates, key=lambda value: _recency_key(value.created_at, value.message_id))

    def get_delivery(self, message_id: str, channel: str) -> DeliveryRecord | None:
        return self._deliveries.get((message_id, channel))

    def list_deliveries(self, message_id: str) -> list[DeliveryRecord]:
        with self._lock:
            return [value for key, value in self._deliveries.items() if key[0] == message_id]

    def list_deliveries_for_thread(self, thread_id: str) -> list[DeliveryRecord]:
        with self._lock:
            message_ids = set(self._message_ids_by_thread.get(thread_id, []))
            return [value for key, value in self._deliveries.items() if key[0] in message_ids]

    def transition_delivery(
        self,
        *,
        message_id: str,
        channel: str,
        status: DeliveryStatus,
        allowed_from: frozenset[str],
        timestamp_field: str | None,
        at: datetime,
        error_message: str | None = None,
        clear_error: bool = False,
        provider_message_id: str | None = None,
    ) -> DeliveryRecord | None:
        with self._lock:
            current = self._deliveries.get((message_id, channel))
            if current is None or current.status not in allowed_from:
                return None
            values: dict[str, Any] = {"status": status, "updated_at": at}
            if timestamp_field is not None and getattr(current, timestamp_field) is None:
                values[timestamp_field] = at
            if error_message is not None:
                values["error_message"] = error_message
            elif clear_error:
                values["error_message"] = None
            if provider_message_id is not None and current.provider_message_id is None:
                values["provider_message_id"] = provider_message_id
            updated = replace(current, **values)
            self._deliveries[(message_id, channel)] = updated
            return updated

    def conditional_backfill_provider_id(self, *, message_id: str, channel: str, provider_message_id: str) -> bool:
        with self._lock:
            current = self._deliveries.get((message_id, channel))
            if current is None or current.provider_message_id is not None:
                return False
            self._deliveries[(message_id, channel)] = replace(
                current,
                provider_message_id=provider_message_id,
                updated_at=_now_utc(),
            )
            return True

    def find_delivery_by_provider_message_id(
        self,
        provider_message_id: str,
        *,
        channel: str | None = None,
    ) -> DeliveryRecord | None:
        with self._lock:
            for delivery in self._deliveries.values():
                if delivery.provider_message_id != provider_message_id:
                    continue
                if channel is not None and delivery.channel != channel:
                    continue
                return delivery
        return None

    def insert_scheduled_message(
        self,
        *,
        thread_id: str,
        template_id: str,
        channel: str,
        run_at: datetime,
        payload: dict[str, Any],
        created_by: str | None,
        now: datetime,
    ) -> ScheduledMessageRecord:
        with self._lock:
            self._require_thread(thread_id)
            record = ScheduledMessageRecord(
                scheduled_id=f"sched_{next(self._scheduled_counter):06d}",
                thread_id=thread_id,
                template_id=template_id,
                channel=channel,
                run_at=run_at,
                payload=dict(payload),
                status="queued",
                last_error=None,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self._scheduled[record.scheduled_id] = record
            return record

    def get_scheduled_message(self, scheduled_id: str) -> ScheduledMessageRecord | None:
        return self._scheduled.get(scheduled_id)

    def claim_due_scheduled_messages(
        self,
        *,
        limit: int,
        now: datetime,
        lease_seconds: float | None = None,
    ) -> list[ScheduledMessageRecord]:
        # A processing row whose claim is older than the lease belongs to a dead dispatcher.
        stale_before = now - timedelta(seconds=lease_seconds) if lease_seconds is not None else None
        with self._lock:
            due = [
                value
                for value in self._scheduled.values()
                if (value.status == "queued" and value.run_at <= now)
                or (value.status == "processing" and stale_before is not None and value.updated_at <= stale_before)
            ]
            due.sort(key=lambda value: (value.run_at, value.scheduled_id))
            claimed: list[ScheduledMessageRecord] = []
            for record in due[:limit]:
                updated = replace(record, status="processing", updated_at=now)
                self._scheduled[record.scheduled_id] = updated
                claimed.append(updated)
            return claimed

    def complete_scheduled_message(
        self,
        scheduled_id: str,
        *,
        status: ScheduledStatus,
        last_error: str | None = None,
    ) -> None:
        with self._lock:
            current = self._scheduled.get(scheduled_id)
            if current is None:
                raise NotFoundError(f"scheduled message not found: {scheduled_id}")
            self._scheduled[scheduled_id] = replace(
                current,
                status=status,
                last_error=last_error,
                updated_at=_now_utc(),
            )

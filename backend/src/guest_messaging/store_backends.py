from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Iterator
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    and_,
    or_,
    create_engine,
    exists,
    func,
    insert,
    inspect,
    select,
    update,
)
from sqlalchemy.exc import DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import ConflictError, NotFoundError, StoreUnavailableError
from .models import (
    DeliveryStatus,
    MessageDirection,
    OriginRole,
    ParticipantType,
    ScheduledStatus,
    ThreadPriority,
    ThreadStatus,
)
from .store import (
    DeliveryRecord,
    InMemoryMessagingRepository,
    MessageRecord,
    MessagingRepository,
    ParticipantRecord,
    ScheduledMessageRecord,
    StoreCapabilities,
    ThreadChannelRecord,
    ThreadRecord,
)

logger = logging.getLogger(__name__)

UNSEND_COLUMNS = ("is_unsent", "unsent_at", "unsent_by")
UNSEND_FEATURE = "unsend"


class MessagingBase(DeclarativeBase):
    pass


class _ThreadRow(MessagingBase):
    __tablename__ = "message_threads"

    thread_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reservation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    subject: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open", index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    closure_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_message_preview: Mapped[str | None] = mapped_column(String(160), nullable=True)
    needs_linking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ThreadChannelRow(MessagingBase):
    __tablename__ = "thread_channels"
    __table_args__ = (UniqueConstraint("channel", "external_thread_id", name="uq_thread_channels_external"),)

    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("message_threads.thread_id"), primary_key=True)
    channel: Mapped[str] = mapped_column(String(32), primary_key=True)
    external_thread_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ParticipantRow(MessagingBase):
    __tablename__ = "thread_participants"

    participant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("message_threads.thread_id"), nullable=False, index=True)
    participant_type: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_address: Mapped[str | None] = mapped_column(String(256), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(MessagingBase):
    __tablename__ = "messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("message_threads.thread_id"), nullable=False, index=True)
    parent_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    origin_role: Mapped[str] = mapped_column(String(16), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Older schemas lack these columns; they are only read or written when detected.
    is_unsent: Mapped[bool | None] = mapped_column(Boolean, nullable=True, deferred=True)
    unsent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, deferred=True)
    unsent_by: Mapped[str | None] = mapped_column(String(128), nullable=True, deferred=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _DeliveryRow(MessagingBase):
    __tablename__ = "message_deliveries"
    __table_args__ = (
        UniqueConstraint("message_id", "channel", name="uq_message_deliveries_message_channel"),
        UniqueConstraint("channel", "provider_message_id", name="uq_message_deliveries_provider"),
    )

    delivery_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(64), ForeignKey("messages.message_id"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ScheduledMessageRow(MessagingBase):
    __tablename__ = "scheduled_messages"

    scheduled_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("message_threads.thread_id"), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(String(128), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued", index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def detect_capabilities(engine, *, schema_features: tuple[str, ...] = ()) -> StoreCapabilities:
    """Work out which optional columns the live schema carries.

    An explicit feature list wins over introspection so deployments can pin
    behaviour while a migration is rolling out.
    """
    if schema_features:
        return StoreCapabilities(
            supports_unsend=UNSEND_FEATURE in schema_features,
            extra_features=frozenset(schema_features),
        )
    inspector = inspect(engine)
    if not inspector.has_table(_MessageRow.__tablename__):
        return StoreCapabilities(supports_unsend=False)
    columns = {column["name"] for column in inspector.get_columns(_MessageRow.__tablename__)}
    supports_unsend = all(name in columns for name in UNSEND_COLUMNS)
    features = frozenset({UNSEND_FEATURE}) if supports_unsend else frozenset()
    return StoreCapabilities(supports_unsend=supports_unsend, extra_features=features)


class SqlAlchemyMessagingRepository:
    def __init__(self, database_url: str, *, schema_features: tuple[str, ...] = ()) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for MESSAGING_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._supports_skip_locked = not database_url.startswith("sqlite")
        if database_url.startswith("sqlite"):
            MessagingBase.metadata.create_all(self._engine)
        self._capabilities = detect_capabilities(self._engine, schema_features=schema_features)
        logger.info("messaging store capabilities: unsend=%s", self._capabilities.supports_unsend)

    @contextmanager
    def _session(self) -> Iterator[Any]:
        try:
            with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, DisconnectionError) as exc:
            raise StoreUnavailableError(f"messaging store unavailable: {exc.__class__.__name__}") from exc

    def capabilities(self) -> StoreCapabilities:
        return self._capabilities

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ScheduledMessageRow).delete()
                session.query(_DeliveryRow).delete()
                session.query(_MessageRow).delete()
                session.query(_ParticipantRow).delete()
                session.query(_ThreadChannelRow).delete()
                session.query(_ThreadRow).delete()

    # Threads

    def insert_thread(
        self,
        *,
        reservation_id: str | None,
        subject: str | None,
        priority: ThreadPriority,
        needs_linking: bool,
        now: datetime,
    ) -> ThreadRecord:
        row = _ThreadRow(
            thread_id=_new_id("thread"),
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
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                    session.flush()
                    return self._thread_record(row)
        except IntegrityError as exc:
            raise ConflictError(f"thread already exists for reservation {reservation_id}") from exc

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.get(_ThreadRow, thread_id)
            return self._thread_record(row) if row is not None else None

    def update_thread_status(
        self,
        thread_id: str,
        *,
        status: ThreadStatus,
        reason: str | None = None,
        only_from: frozenset[str] | None = None,
    ) -> ThreadRecord:
        with self._session() as session:
            with session.begin():
                statement = (
                    update(_ThreadRow)
                    .where(_ThreadRow.thread_id == thread_id)
                    .values(
                        status=status,
                        closure_reason=reason if status == "closed" else None,
                        updated_at=_now_utc(),
                    )
                )
                if only_from is not None:
                    statement = statement.where(_ThreadRow.status.in_(sorted(only_from)))
                session.execute(statement)
                row = session.get(_ThreadRow, thread_id, populate_existing=True)
                if row is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                return self._thread_record(row)

    def update_thread_summary(self, thread_id: str, *, last_message_at: datetime, preview: str) -> None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ThreadRow)
                    .where(_ThreadRow.thread_id == thread_id)
                    .values(last_message_at=last_message_at, last_message_preview=preview, updated_at=_now_utc())
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"thread not found: {thread_id}")

    def update_thread_reservation(self, thread_id: str, *, reservation_id: str) -> ThreadRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id)
                    if row is None:
                        raise NotFoundError(f"thread not found: {thread_id}")
                    row.reservation_id = reservation_id
                    row.needs_linking = False
                    row.updated_at = _now_utc()
                    session.flush()
                    return self._thread_record(row)
        except IntegrityError as exc:
            raise ConflictError(f"thread already exists for reservation {reservation_id}") from exc

    def find_threads_by_reservation_ids(self, reservation_ids: Iterable[str]) -> list[ThreadRecord]:
        wanted = sorted(set(reservation_ids))
        if not wanted:
            return []
        with self._session() as session:
            rows = session.scalars(
                select(_ThreadRow)
                .where(_ThreadRow.reservation_id.in_(wanted))
                .order_by(_ThreadRow.created_at.desc(), _ThreadRow.thread_id.desc())
            ).all()
            return [self._thread_record(row) for row in rows]

    def find_thread_by_channel_mapping(self, *, channel: str, external_thread_id: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ThreadRow)
                .join(_ThreadChannelRow, _ThreadChannelRow.thread_id == _ThreadRow.thread_id)
                .where(_ThreadChannelRow.channel == channel)
                .where(_ThreadChannelRow.external_thread_id == external_thread_id)
            )
            return self._thread_record(row) if row is not None else None

    def list_threads(
        self,
        *,
        status: ThreadStatus | None = None,
        reservation_id: str | None = None,
        limit: int = 100,
    ) -> list[ThreadRecord]:
        statement = select(_ThreadRow)
        if status is not None:
            statement = statement.where(_ThreadRow.status == status)
        if reservation_id is not None:
            statement = statement.where(_ThreadRow.reservation_id == reservation_id)
        statement = statement.order_by(
            _ThreadRow.last_message_at.desc().nulls_last(),
            _ThreadRow.thread_id.desc(),
        ).limit(limit)
        with self._session() as session:
            return [self._thread_record(row) for row in session.scalars(statement).all()]

    # Channel mappings and participants

    def add_thread_channel(self, thread_id: str, *, channel: str, external_thread_id: str) -> ThreadChannelRecord:
        row = _ThreadChannelRow(
            thread_id=thread_id,
            channel=channel,
            external_thread_id=external_thread_id,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_ThreadRow, thread_id) is None:
                        raise NotFoundError(f"thread not found: {thread_id}")
                    session.add(row)
                    session.flush()
                    return self._channel_record(row)
        except IntegrityError as exc:
            raise ConflictError(f"channel mapping already exists: {channel}:{external_thread_id}") from exc

    def list_thread_channels(self, thread_id: str) -> list[ThreadChannelRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ThreadChannelRow)
                .where(_ThreadChannelRow.thread_id == thread_id)
                .order_by(_ThreadChannelRow.created_at.asc())
            ).all()
            return [self._channel_record(row) for row in rows]

    def add_participant(
        self,
        thread_id: str,
        *,
        participant_type: ParticipantType,
        user_id: str | None,
        external_address: str | None,
        display_name: str | None,
    ) -> ParticipantRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_ThreadRow, thread_id) is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                row = _ParticipantRow(
                    participant_id=_new_id("part"),
                    thread_id=thread_id,
                    participant_type=participant_type,
                    user_id=user_id,
                    external_address=external_address,
                    display_name=display_name,
                    last_read_at=None,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._participant_record(row)

    def list_participants(self, thread_id: str) -> list[ParticipantRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ParticipantRow)
                .where(_ParticipantRow.thread_id == thread_id)
                .order_by(_ParticipantRow.created_at.asc())
            ).all()
            return [self._participant_record(row) for row in rows]

    def update_participant_last_read(self, thread_id: str, *, participant_type: ParticipantType, at: datetime) -> int:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ParticipantRow)
                    .where(_ParticipantRow.thread_id == thread_id)
                    .where(_ParticipantRow.participant_type == participant_type)
                    .values(last_read_at=at)
                )
                return result.rowcount

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
    ) -> tuple[MessageRecord, DeliveryRecord]:
        message_values: dict[str, Any] = {
            "message_id": _new_id("msg"),
            "thread_id": thread_id,
            "parent_message_id": parent_message_id,
            "origin_role": origin_role,
            "direction": direction,
            "channel": channel,
            "content": content,
            "author_id": author_id,
            "created_at": now,
        }
        # The ORM would write NULLs for every mapped column; legacy tables lack the unsend ones.
        if self._capabilities.supports_unsend:
            message_values["is_unsent"] = False
        delivery = _DeliveryRow(
            delivery_id=_new_id("dlv"),
            message_id=message_values["message_id"],
            channel=channel,
            status=delivery_status,
            provider_message_id=provider_message_id,
            error_message=None,
            updated_at=now,
        )
        setattr(delivery, f"{delivery_status}_at", now)
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_ThreadRow, thread_id) is None:
                        raise NotFoundError(f"thread not found: {thread_id}")
                    session.execute(insert(_MessageRow.__table__).values(**message_values))
                    session.add(delivery)
                    session.flush()
                    message = session.get(_MessageRow, message_values["message_id"])
                    return self._message_record(message), self._delivery_record(delivery)
        except IntegrityError as exc:
            raise ConflictError(f"provider message id already recorded: {channel}:{provider_message_id}") from exc

    def update_message_content(self, message_id: str, *, content: str) -> None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MessageRow).where(_MessageRow.message_id == message_id).values(content=content)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"message not found: {message_id}")

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.get(_MessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def list_messages(self, thread_id: str, *, limit: int | None = None, offset: int = 0) -> list[MessageRecord]:
        statement = (
            select(_MessageRow)
            .where(_MessageRow.thread_id == thread_id)
            .order_by(_MessageRow.created_at.asc(), _MessageRow.message_id.asc())
            .offset(offset)
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            return [self._message_record(row) for row in session.scalars(statement).all()]

    def mark_unsent(self, message_id: str, *, unsent_by: str | None, at: datetime) -> MessageRecord | None:
        if not self._capabilities.supports_unsend:
            raise ConflictError("unsend not supported by store schema")
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MessageRow)
                    .where(_MessageRow.message_id == message_id)
                    .where(_MessageRow.is_unsent.is_not(True))
                    .values(is_unsent=True, unsent_at=at, unsent_by=unsent_by)
                )
                row = session.get(_MessageRow, message_id, populate_existing=True)
                if row is None:
                    raise NotFoundError(f"message not found: {message_id}")
                if result.rowcount == 0:
                    return None
                return self._message_record(row)

    def find_recent_outbound_by_content_and_window(
        self,
        *,
        thread_id: str,
        content: str,
        since: datetime,
        require_unassigned_delivery: bool,
    ) -> MessageRecord | None:
        statement = (
            select(_MessageRow)
            .where(_MessageRow.thread_id == thread_id)
            .where(_MessageRow.direction == "outgoing")
            .where(_MessageRow.origin_role == "host")
            .where(_MessageRow.content == content)
            .where(_MessageRow.created_at >= since)
        )
        if require_unassigned_delivery:
            statement = statement.where(
                exists().where(
                    and_(
                        _DeliveryRow.message_id == _MessageRow.message_id,
                        _DeliveryRow.provider_message_id.is_(None),
                    )
                )
            )
        statement = statement.order_by(_MessageRow.created_at.desc(), _MessageRow.message_id.desc()).limit(1)
        with self._session() as session:
            row = session.scalar(statement)
            return self._message_record(row) if row is not None else None

    # Deliveries

    def get_delivery(self, message_id: str, channel: str) -> DeliveryRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_DeliveryRow)
                .where(_DeliveryRow.message_id == message_id)
                .where(_DeliveryRow.channel == channel)
            )
            return self._delivery_record(row) if row is not None else None

    def list_deliveries(self, message_id: str) -> list[DeliveryRecord]:
        with self._session() as session:
            rows = session.scalars(select(_DeliveryRow).where(_DeliveryRow.message_id == message_id)).all()
            return [self._delivery_record(row) for row in rows]

    def list_deliveries_for_thread(self, thread_id: str) -> list[DeliveryRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_DeliveryRow)
                .join(_MessageRow, _MessageRow.message_id == _DeliveryRow.message_id)
                .where(_MessageRow.thread_id == thread_id)
            ).all()
            return [self._delivery_record(row) for row in rows]

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
        values: dict[str, Any] = {"status": status, "updated_at": at}
        if timestamp_field is not None:
            column = getattr(_DeliveryRow, timestamp_field)
            values[timestamp_field] = _coalesce(column, at)
        if error_message is not None:
            values["error_message"] = error_message
        elif clear_error:
            values["error_message"] = None
        if provider_message_id is not None:
            values["provider_message_id"] = _coalesce(_DeliveryRow.provider_message_id, provider_message_id)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_DeliveryRow)
                    .where(_DeliveryRow.message_id == message_id)
                    .where(_DeliveryRow.channel == channel)
                    .where(_DeliveryRow.status.in_(sorted(allowed_from)))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                row = session.scalar(
                    select(_DeliveryRow)
                    .where(_DeliveryRow.message_id == message_id)
                    .where(_DeliveryRow.channel == channel)
                )
                return self._delivery_record(row) if row is not None else None

    def conditional_backfill_provider_id(self, *, message_id: str, channel: str, provider_message_id: str) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(
                        update(_DeliveryRow)
                        .where(_DeliveryRow.message_id == message_id)
                        .where(_DeliveryRow.channel == channel)
                        .where(_DeliveryRow.provider_message_id.is_(None))
                        .values(provider_message_id=provider_message_id, updated_at=_now_utc())
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount == 1
        except IntegrityError:
            # Another delivery on this channel already owns the provider id.
            return False

    def find_delivery_by_provider_message_id(
        self,
        provider_message_id: str,
        *,
        channel: str | None = None,
    ) -> DeliveryRecord | None:
        statement = select(_DeliveryRow).where(_DeliveryRow.provider_message_id == provider_message_id)
        if channel is not None:
            statement = statement.where(_DeliveryRow.channel == channel)
        with self._session() as session:
            row = session.scalars(statement.limit(1)).first()
            return self._delivery_record(row) if row is not None else None

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
    ) -> ScheduledMessageRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_ThreadRow, thread_id) is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                row = _ScheduledMessageRow(
                    scheduled_id=_new_id("sched"),
                    thread_id=thread_id,
                    template_id=template_id,
                    channel=channel,
                    run_at=run_at,
                    payload_json=json.dumps(payload, sort_keys=True, separators=(",", ":")),
                    status="queued",
                    last_error=None,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return self._scheduled_record(row)

    def get_scheduled_message(self, scheduled_id: str) -> ScheduledMessageRecord | None:
        with self._session() as session:
            row = session.get(_ScheduledMessageRow, scheduled_id)
            return self._scheduled_record(row) if row is not None else None

    def claim_due_scheduled_messages(
        self,
        *,
        limit: int,
        now: datetime,
        lease_seconds: float | None = None,
    ) -> list[ScheduledMessageRecord]:
        claimable = and_(_ScheduledMessageRow.status == "queued", _ScheduledMessageRow.run_at <= now)
        if lease_seconds is not None:
            # updated_at holds the claim time while a row is processing.
            stale_before = now - timedelta(seconds=lease_seconds)
            claimable = or_(
                claimable,
                and_(_ScheduledMessageRow.status == "processing", _ScheduledMessageRow.updated_at <= stale_before),
            )
        statement = (
            select(_ScheduledMessageRow)
            .where(claimable)
            .order_by(_ScheduledMessageRow.run_at.asc(), _ScheduledMessageRow.scheduled_id.asc())
            .limit(limit)
        )
        if self._supports_skip_locked:
            statement = statement.with_for_update(skip_locked=True)
        with self._session() as session:
            with session.begin():
                rows = session.scalars(statement).all()
                for row in rows:
                    row.status = "processing"
                    row.updated_at = now
                session.flush()
                return [self._scheduled_record(row) for row in rows]

    def complete_scheduled_message(
        self,
        scheduled_id: str,
        *,
        status: ScheduledStatus,
        last_error: str | None = None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ScheduledMessageRow, scheduled_id)
                if row is None:
                    raise NotFoundError(f"scheduled message not found: {scheduled_id}")
                row.status = status
                row.last_error = last_error
                row.updated_at = _now_utc()

    @staticmethod
    def _thread_record(row: _ThreadRow) -> ThreadRecord:
        return ThreadRecord(
            thread_id=row.thread_id,
            reservation_id=row.reservation_id,
            subject=row.subject,
            status=row.status,  # type: ignore[arg-type]
            priority=row.priority,  # type: ignore[arg-type]
            closure_reason=row.closure_reason,
            last_message_at=_coerce_utc(row.last_message_at),
            last_message_preview=row.last_message_preview,
            needs_linking=bool(row.needs_linking),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _channel_record(row: _ThreadChannelRow) -> ThreadChannelRecord:
        return ThreadChannelRecord(
            thread_id=row.thread_id,
            channel=row.channel,
            external_thread_id=row.external_thread_id,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _participant_record(row: _ParticipantRow) -> ParticipantRecord:
        return ParticipantRecord(
            participant_id=row.participant_id,
            thread_id=row.thread_id,
            participant_type=row.participant_type,  # type: ignore[arg-type]
            user_id=row.user_id,
            external_address=row.external_address,
            display_name=row.display_name,
            last_read_at=_coerce_utc(row.last_read_at),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    def _message_record(self, row: _MessageRow) -> MessageRecord:
        if self._capabilities.supports_unsend:
            is_unsent, unsent_at, unsent_by = bool(row.is_unsent), _coerce_utc(row.unsent_at), row.unsent_by
        else:
            is_unsent, unsent_at, unsent_by = False, None, None
        return MessageRecord(
            message_id=row.message_id,
            thread_id=row.thread_id,
            parent_message_id=row.parent_message_id,
            origin_role=row.origin_role,  # type: ignore[arg-type]
            direction=row.direction,  # type: ignore[arg-type]
            channel=row.channel,
            content=row.content,
            author_id=row.author_id,
            is_unsent=is_unsent,
            unsent_at=unsent_at,
            unsent_by=unsent_by,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _delivery_record(row: _DeliveryRow) -> DeliveryRecord:
        return DeliveryRecord(
            delivery_id=row.delivery_id,
            message_id=row.message_id,
            channel=row.channel,
            status=row.status,  # type: ignore[arg-type]
            queued_at=_coerce_utc(row.queued_at),
            sent_at=_coerce_utc(row.sent_at),
            delivered_at=_coerce_utc(row.delivered_at),
            read_at=_coerce_utc(row.read_at),
            provider_message_id=row.provider_message_id,
            error_message=row.error_message,
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _scheduled_record(row: _ScheduledMessageRow) -> ScheduledMessageRecord:
        return ScheduledMessageRecord(
            scheduled_id=row.scheduled_id,
            thread_id=row.thread_id,
            template_id=row.template_id,
            channel=row.channel,
            run_at=_coerce_utc(row.run_at),  # type: ignore[arg-type]
            payload=json.loads(row.payload_json or "{}"),
            status=row.status,  # type: ignore[arg-type]
            last_error=row.last_error,
            created_by=row.created_by,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )


def _coalesce(column, value):
    return func.coalesce(column, value)


def create_messaging_repository(
    *,
    backend: str,
    database_url: str,
    schema_features: tuple[str, ...] = (),
) -> MessagingRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessagingRepository(database_url, schema_features=schema_features)
    capabilities = None
    if schema_features:
        capabilities = StoreCapabilities(
            supports_unsend=UNSEND_FEATURE in schema_features,
            extra_features=frozenset(schema_features),
        )
    return InMemoryMessagingRepository(capabilities=capabilities)

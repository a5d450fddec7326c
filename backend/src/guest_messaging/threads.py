from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from .errors import ConflictError
from .models import ChannelMappingSpec, ThreadInitialData
from .store import MessagingRepository, ThreadRecord

logger = logging.getLogger(__name__)

REOPENABLE_STATUSES: frozenset[str] = frozenset({"closed"})


@dataclass(frozen=True)
class GroupInfo:
    master_reservation_id: str
    room_count: int
    guest_name: str | None = None


class GroupBookingResolver(Protocol):
    def sibling_reservation_ids(self, reservation_id: str) -> list[str]: ...

    def group_info(self, reservation_id: str) -> GroupInfo | None: ...


class NoGroupBookingResolver:
    """Every reservation is its own group."""

    def sibling_reservation_ids(self, reservation_id: str) -> list[str]:
        return [reservation_id]

    def group_info(self, reservation_id: str) -> GroupInfo | None:
        return None


class StaticGroupBookingResolver:
    def __init__(self, groups: dict[str, list[str]] | None = None, *, guest_names: dict[str, str] | None = None) -> None:
        # master reservation id -> child reservation ids
        self._groups = {master: list(children) for master, children in (groups or {}).items()}
        self._guest_names = dict(guest_names or {})

    def _master_for(self, reservation_id: str) -> str | None:
        if reservation_id in self._groups:
            return reservation_id
        for master, children in self._groups.items():
            if reservation_id in children:
                return master
        return None

    def sibling_reservation_ids(self, reservation_id: str) -> list[str]:
        master = self._master_for(reservation_id)
        if master is None:
            return [reservation_id]
        return [master, *self._groups[master]]

    def group_info(self, reservation_id: str) -> GroupInfo | None:
        master = self._master_for(reservation_id)
        if master is None:
            return None
        return GroupInfo(
            master_reservation_id=master,
            room_count=1 + len(self._groups[master]),
            guest_name=self._guest_names.get(master),
        )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ThreadResolver:
    """Maps a reservation (and its group siblings) onto one canonical thread."""

    def __init__(
        self,
        *,
        repository: MessagingRepository,
        group_resolver: GroupBookingResolver | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._group_resolver = group_resolver or NoGroupBookingResolver()
        self._clock = clock

    def resolve(self, reservation_id: str, initial_data: ThreadInitialData | None = None) -> ThreadRecord:
        data = initial_data or ThreadInitialData()

        thread = self._group_match(reservation_id)
        if thread is None:
            thread = self._direct_match(reservation_id)
        if thread is not None:
            thread = self._reopen_if_closed(thread)
            self._merge_channel_mappings(thread, data.channels)
            return thread

        thread = self._cross_reservation_match(reservation_id, data.channels)
        if thread is not None:
            return thread

        return self._create(reservation_id, data)

    def resolve_by_channel(
        self,
        channel: str,
        external_thread_id: str,
        initial_data: ThreadInitialData | None = None,
    ) -> ThreadRecord:
        existing = self._repository.find_thread_by_channel_mapping(channel=channel, external_thread_id=external_thread_id)
        if existing is not None:
            return existing

        data = initial_data or ThreadInitialData()
        thread = self._repository.insert_thread(
            reservation_id=None,
            subject=data.subject,
            priority=data.priority,
            needs_linking=True,
            now=self._clock(),
        )
        try:
            self._repository.add_thread_channel(thread.thread_id, channel=channel, external_thread_id=external_thread_id)
        except ConflictError:
            winner = self._repository.find_thread_by_channel_mapping(channel=channel, external_thread_id=external_thread_id)
            if winner is not None:
                logger.warning(
                    "channel mapping %s:%s claimed concurrently by thread %s; thread %s left unlinked",
                    channel,
                    external_thread_id,
                    winner.thread_id,
                    thread.thread_id,
                )
                return winner
            raise
        self._attach_participants(thread, data)
        logger.info("created unlinked thread %s for %s:%s", thread.thread_id, channel, external_thread_id)
        return thread

    def link_reservation(self, thread_id: str, reservation_id: str) -> ThreadRecord:
        thread = self._repository.update_thread_reservation(thread_id, reservation_id=reservation_id)
        logger.info("linked thread %s to reservation %s", thread_id, reservation_id)
        return thread

    def _group_match(self, reservation_id: str) -> ThreadRecord | None:
        siblings = set(self._group_resolver.sibling_reservation_ids(reservation_id))
        siblings.discard(reservation_id)
        if not siblings:
            return None
        siblings.add(reservation_id)
        threads = self._repository.find_threads_by_reservation_ids(siblings)
        if not threads:
            return None
        canonical = threads[0]
        if len(threads) > 1:
            logger.warning(
                "group of reservation %s has %d threads (%s); using most recent %s, manual merge required",
                reservation_id,
                len(threads),
                ", ".join(thread.thread_id for thread in threads),
                canonical.thread_id,
            )
        return canonical

    def _direct_match(self, reservation_id: str) -> ThreadRecord | None:
        threads = self._repository.find_threads_by_reservation_ids([reservation_id])
        return threads[0] if threads else None

    def _cross_reservation_match(self, reservation_id: str, channels: list[ChannelMappingSpec]) -> ThreadRecord | None:
        for mapping in channels:
            thread = self._repository.find_thread_by_channel_mapping(
                channel=mapping.channel,
                external_thread_id=mapping.external_thread_id,
            )
            if thread is None:
                continue
            if thread.reservation_id != reservation_id:
                logger.info(
                    "re-pointing thread %s from reservation %s to %s via %s:%s",
                    thread.thread_id,
                    thread.reservation_id,
                    reservation_id,
                    mapping.channel,
                    mapping.external_thread_id,
                )
                try:
                    thread = self._repository.update_thread_reservation(thread.thread_id, reservation_id=reservation_id)
                except ConflictError:
                    winner = self._direct_match(reservation_id)
                    if winner is None:
                        raise
                    thread = winner
            thread = self._reopen_if_closed(thread)
            self._merge_channel_mappings(thread, channels)
            return thread
        return None

    def _create(self, reservation_id: str, data: ThreadInitialData) -> ThreadRecord:
        try:
            thread = self._repository.insert_thread(
                reservation_id=reservation_id,
                subject=self._subject_for(reservation_id, data),
                priority=data.priority,
                needs_linking=False,
                now=self._clock(),
            )
        except ConflictError:
            winner = self._direct_match(reservation_id)
            if winner is None:
                raise
            logger.info("thread for reservation %s created concurrently; using %s", reservation_id, winner.thread_id)
            self._merge_channel_mappings(winner, data.channels)
            return winner
        self._merge_channel_mappings(thread, data.channels)
        self._attach_participants(thread, data)
        logger.info("created thread %s for reservation %s", thread.thread_id, reservation_id)
        return thread

    def _subject_for(self, reservation_id: str, data: ThreadInitialData) -> str:
        if data.subject:
            return data.subject
        guest_name = next(
            (participant.display_name for participant in data.participants if participant.type == "guest" and participant.display_name),
            None,
        )
        info = self._group_resolver.group_info(reservation_id)
        if info is not None and info.master_reservation_id == reservation_id and info.room_count > 1:
            return f"Group booking: {info.guest_name or guest_name or 'Guest'} ({info.room_count} rooms)"
        if guest_name:
            return f"{guest_name} - Reservation {reservation_id}"
        return f"Reservation {reservation_id}"

    def _reopen_if_closed(self, thread: ThreadRecord) -> ThreadRecord:
        if thread.status not in REOPENABLE_STATUSES:
            return thread
        reopened = self._repository.update_thread_status(thread.thread_id, status="open", only_from=REOPENABLE_STATUSES)
        logger.info("reopened thread %s for new activity", thread.thread_id)
        return reopened

    def _merge_channel_mappings(self, thread: ThreadRecord, channels: list[ChannelMappingSpec]) -> None:
        if not channels:
            return
        present = {(value.channel, value.external_thread_id) for value in self._repository.list_thread_channels(thread.thread_id)}
        for mapping in channels:
            key = (mapping.channel, mapping.external_thread_id)
            if key in present:
                continue
            try:
                self._repository.add_thread_channel(
                    thread.thread_id,
                    channel=mapping.channel,
                    external_thread_id=mapping.external_thread_id,
                )
            except ConflictError:
                logger.info("channel mapping %s:%s already present, continuing", mapping.channel, mapping.external_thread_id)
                continue
            present.add(key)

    def _attach_participants(self, thread: ThreadRecord, data: ThreadInitialData) -> None:
        for participant in data.participants:
            self._repository.add_participant(
                thread.thread_id,
                participant_type=participant.type,
                user_id=participant.user_id,
                external_address=participant.external_address,
                display_name=participant.display_name,
            )

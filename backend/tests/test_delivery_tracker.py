from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from guest_messaging.delivery import DeliveryStatusTracker, can_transition
from guest_messaging.store import InMemoryMessagingRepository


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _make_tracker() -> tuple[DeliveryStatusTracker, InMemoryMessagingRepository, _Clock, str]:
    repository = InMemoryMessagingRepository()
    clock = _Clock()
    thread = repository.insert_thread(reservation_id="RES-1", subject=None, priority="normal", needs_linking=False, now=clock())
    message, _ = repository.insert_message_with_delivery(
        thread_id=thread.thread_id,
        parent_message_id=None,
        origin_role="host",
        direction="outgoing",
        channel="airbnb",
        content="Check-in is at 3pm",
        author_id="host-1",
        delivery_status="queued",
        provider_message_id=None,
        now=clock(),
    )
    return DeliveryStatusTracker(repository=repository, clock=clock), repository, clock, message.message_id


@pytest.mark.parametrize(
    ("current", "target", "expected"),
    [
        ("queued", "sent", True),
        ("sent", "delivered", True),
        ("delivered", "read", True),
        ("queued", "read", True),
        ("queued", "failed", True),
        ("sent", "failed", True),
        ("delivered", "failed", False),
        ("read", "delivered", False),
        ("read", "failed", False),
        ("failed", "sent", False),
        ("failed", "delivered", False),
        ("sent", "queued", False),
    ],
)
def test_can_transition(current: str, target: str, expected: bool) -> None:
    assert can_transition(current, target) is expected  # type: ignore[arg-type]


def test_forward_path_stamps_each_timestamp_once() -> None:
    tracker, _, clock, message_id = _make_tracker()
    queued_at = clock()

    clock.advance(seconds=1)
    assert tracker.mark_sent(message_id, "airbnb", provider_message_id="ab-msg-1") is True
    clock.advance(seconds=1)
    assert tracker.mark_delivered(message_id, "airbnb") is True
    clock.advance(seconds=1)
    assert tracker.mark_read(message_id, "airbnb") is True

    delivery = tracker.get(message_id, "airbnb")
    assert delivery is not None
    assert delivery.status == "read"
    assert delivery.queued_at == queued_at
    assert delivery.sent_at == queued_at + timedelta(seconds=1)
    assert delivery.delivered_at == queued_at + timedelta(seconds=2)
    assert delivery.read_at == queued_at + timedelta(seconds=3)
    assert delivery.provider_message_id == "ab-msg-1"


def test_read_delivery_cannot_fail_or_regress() -> None:
    tracker, _, clock, message_id = _make_tracker()
    tracker.mark_sent(message_id, "airbnb")
    tracker.mark_delivered(message_id, "airbnb")
    tracker.mark_read(message_id, "airbnb")
    before = tracker.get(message_id, "airbnb")

    clock.advance(minutes=5)
    assert tracker.mark_failed(message_id, "airbnb", "late failure report") is False
    assert tracker.mark_delivered(message_id, "airbnb") is False
    assert tracker.mark_sent(message_id, "airbnb") is False

    after = tracker.get(message_id, "airbnb")
    assert after == before


def test_failure_keeps_earlier_timestamps_and_records_error() -> None:
    tracker, _, clock, message_id = _make_tracker()
    tracker.mark_sent(message_id, "airbnb")
    sent_at = clock()

    clock.advance(seconds=30)
    assert tracker.mark_failed(message_id, "airbnb", "Gateway server error (temporary): HTTP 500") is True

    delivery = tracker.get(message_id, "airbnb")
    assert delivery is not None
    assert delivery.status == "failed"
    assert delivery.sent_at == sent_at
    assert delivery.delivered_at is None
    assert delivery.error_message == "Gateway server error (temporary): HTTP 500"
    assert tracker.mark_delivered(message_id, "airbnb") is False


def test_requeue_only_from_failed_and_clears_error() -> None:
    tracker, _, clock, message_id = _make_tracker()
    first_queued_at = clock()
    assert tracker.requeue(message_id, "airbnb") is False

    tracker.mark_failed(message_id, "airbnb", "Rate limited: HTTP 429")
    clock.advance(minutes=1)
    assert tracker.requeue(message_id, "airbnb") is True

    delivery = tracker.get(message_id, "airbnb")
    assert delivery is not None
    assert delivery.status == "queued"
    assert delivery.error_message is None
    assert delivery.queued_at == first_queued_at


def test_unknown_delivery_and_non_target_status_are_rejected() -> None:
    tracker, _, _, message_id = _make_tracker()

    assert tracker.mark_sent(message_id, "email") is False
    assert tracker.mark_sent("msg_missing", "airbnb") is False
    assert tracker.transition(message_id, "airbnb", "queued") is False


def test_provider_id_is_not_overwritten_by_later_transition() -> None:
    tracker, repository, _, message_id = _make_tracker()
    assert repository.conditional_backfill_provider_id(
        message_id=message_id,
        channel="airbnb",
        provider_message_id="echo-1",
    )

    tracker.mark_sent(message_id, "airbnb", provider_message_id="gateway-1")

    delivery = tracker.get(message_id, "airbnb")
    assert delivery is not None
    assert delivery.provider_message_id == "echo-1"

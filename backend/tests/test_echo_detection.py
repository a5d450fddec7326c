from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from guest_messaging.channels import ChannelRegistry, InAppChannelAdapter
from guest_messaging.config import Settings
from guest_messaging.echo import EchoDetector
from guest_messaging.models import InboundWebhookPayload, SendMessageRequest
from guest_messaging.orchestrator import MessageOrchestrator
from guest_messaging.store import InMemoryMessagingRepository


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _make_orchestrator(
    repository: InMemoryMessagingRepository | None = None,
    settings: Settings | None = None,
) -> tuple[MessageOrchestrator, InMemoryMessagingRepository, _Clock]:
    repository = repository or InMemoryMessagingRepository()
    clock = _Clock()
    registry = ChannelRegistry()
    registry.register("inapp", InAppChannelAdapter())
    orchestrator = MessageOrchestrator(
        repository=repository,
        settings=settings or Settings(),
        channels=registry,
        clock=clock,
        delayed_call=lambda _delay, _callback: None,
    )
    return orchestrator, repository, clock


def _host_echo(content: str, provider_message_id: str, *, reservation_id: str = "RES-1") -> InboundWebhookPayload:
    return InboundWebhookPayload(
        thread_hint=reservation_id,
        channel="airbnb",
        content=content,
        sender_role="host",
        provider_message_id=provider_message_id,
    )


def test_host_echo_backfills_original_delivery() -> None:
    orchestrator, repository, clock = _make_orchestrator()
    thread = orchestrator.resolver.resolve("RES-1")
    sent = orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))

    clock.advance(minutes=2)
    result = orchestrator.ingest_webhook(_host_echo("Thank you", "ab-777"))

    assert result.echo is True
    assert result.message_id == sent.message_id
    assert len(repository.list_messages(thread.thread_id)) == 1
    delivery = repository.get_delivery(sent.message_id, "inapp")
    assert delivery is not None
    assert delivery.provider_message_id == "ab-777"


def test_second_echo_for_same_message_creates_new_message() -> None:
    orchestrator, repository, clock = _make_orchestrator()
    thread = orchestrator.resolver.resolve("RES-1")
    orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))

    clock.advance(minutes=1)
    first = orchestrator.ingest_webhook(_host_echo("Thank you", "ab-1"))
    second = orchestrator.ingest_webhook(_host_echo("Thank you", "ab-2"))

    assert first.echo is True
    assert second.echo is False
    assert second.duplicate is False
    messages = repository.list_messages(thread.thread_id)
    assert len(messages) == 2
    assert messages[1].direction == "incoming"
    assert messages[1].origin_role == "host"


def test_echo_outside_window_is_recorded_as_message() -> None:
    orchestrator, repository, clock = _make_orchestrator()
    thread = orchestrator.resolver.resolve("RES-1")
    orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))

    clock.advance(minutes=11)
    result = orchestrator.ingest_webhook(_host_echo("Thank you", "ab-late"))

    assert result.echo is False
    assert len(repository.list_messages(thread.thread_id)) == 2


def test_echo_window_is_configurable() -> None:
    orchestrator, repository, clock = _make_orchestrator(settings=Settings(echo_window_minutes=30))
    thread = orchestrator.resolver.resolve("RES-1")
    orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))

    clock.advance(minutes=20)
    result = orchestrator.ingest_webhook(_host_echo("Thank you", "ab-20"))

    assert result.echo is True
    assert len(repository.list_messages(thread.thread_id)) == 1


def test_guest_message_with_same_text_is_never_an_echo() -> None:
    orchestrator, repository, _ = _make_orchestrator()
    thread = orchestrator.resolver.resolve("RES-1")
    orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))

    result = orchestrator.ingest_webhook(
        InboundWebhookPayload(thread_hint="RES-1", channel="airbnb", content="Thank you", provider_message_id="ab-g1")
    )

    assert result.echo is False
    assert len(repository.list_messages(thread.thread_id)) == 2


def test_find_recent_outbound_echo_ignores_other_content_and_incoming() -> None:
    repository = InMemoryMessagingRepository()
    clock = _Clock()
    thread = repository.insert_thread(reservation_id="RES-1", subject=None, priority="normal", needs_linking=False, now=clock())
    repository.insert_message_with_delivery(
        thread_id=thread.thread_id,
        parent_message_id=None,
        origin_role="guest",
        direction="incoming",
        channel="airbnb",
        content="Thank you",
        author_id=None,
        delivery_status="delivered",
        provider_message_id=None,
        now=clock(),
    )
    detector = EchoDetector(repository=repository, settings=Settings(), clock=clock)

    assert detector.find_recent_outbound_echo(thread.thread_id, "Thank you") is None
    assert detector.find_recent_outbound_echo(thread.thread_id, "Something else") is None


def test_absorb_echo_without_provider_id_returns_none() -> None:
    repository = InMemoryMessagingRepository()
    detector = EchoDetector(repository=repository, settings=Settings())

    assert detector.absorb_echo("thread_000001", "Thank you", None) is None


def test_backfill_is_compare_and_set(caplog: pytest.LogCaptureFixture) -> None:
    orchestrator, repository, _ = _make_orchestrator()
    thread = orchestrator.resolver.resolve("RES-1")
    sent = orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))
    detector = EchoDetector(repository=repository, settings=Settings())

    with caplog.at_level(logging.INFO, logger="guest_messaging.echo"):
        assert detector.backfill_provider_message_id(sent.message_id, "inapp", "first") is True
        assert detector.backfill_provider_message_id(sent.message_id, "inapp", "second") is False

    delivery = repository.get_delivery(sent.message_id, "inapp")
    assert delivery is not None
    assert delivery.provider_message_id == "first"
    assert any(record.levelno == logging.WARNING for record in caplog.records)


def test_concurrent_echo_webhooks_claim_original_once() -> None:
    orchestrator, repository, clock = _make_orchestrator()
    thread = orchestrator.resolver.resolve("RES-1")
    sent = orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))
    clock.advance(minutes=1)

    start = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def _ingest(index: int) -> None:
        start.wait()
        result = orchestrator.ingest_webhook(_host_echo("Thank you", f"ab-race-{index}"))
        with results_lock:
            results.append(result)

    workers = [threading.Thread(target=_ingest, args=(index,)) for index in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert sum(1 for value in results if value.echo) == 1
    assert len(repository.list_messages(thread.thread_id)) == 8
    delivery = repository.get_delivery(sent.message_id, "inapp")
    assert delivery is not None
    assert delivery.provider_message_id is not None
    assert delivery.provider_message_id.startswith("ab-race-")


def test_lost_backfill_falls_back_to_normal_message() -> None:
    class _AlwaysLosingRepository(InMemoryMessagingRepository):
        def conditional_backfill_provider_id(self, *, message_id: str, channel: str, provider_message_id: str) -> bool:
            return False

    orchestrator, repository, clock = _make_orchestrator(repository=_AlwaysLosingRepository())
    thread = orchestrator.resolver.resolve("RES-1")
    orchestrator.send_message(SendMessageRequest(thread_id=thread.thread_id, channel="inapp", content="Thank you"))

    clock.advance(minutes=1)
    result = orchestrator.ingest_webhook(_host_echo("Thank you", "ab-lost"))

    assert result.echo is False
    assert result.duplicate is False
    assert len(repository.list_messages(thread.thread_id)) == 2

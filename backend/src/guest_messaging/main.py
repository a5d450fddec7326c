from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass

from twilio.rest import Client

from .channels import ChannelRegistry, build_channel_registry
from .collaborators import (
    BookingReferenceLookup,
    ContentSanitizer,
    DeliveryEventPublisher,
    InMemoryTemplateRenderer,
    StaticBookingReferenceLookup,
    TemplateRenderer,
)
from .config import Settings, get_settings, runtime_secret_issues
from .delivery import DeliveryStatusTracker
from .echo import EchoDetector
from .orchestrator import MessageOrchestrator
from .scheduler import ScheduledDispatcher
from .store import MessagingRepository
from .store_backends import create_messaging_repository
from .threads import GroupBookingResolver, ThreadResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessagingEngine:
    settings: Settings
    repository: MessagingRepository
    channels: ChannelRegistry
    resolver: ThreadResolver
    orchestrator: MessageOrchestrator
    dispatcher: ScheduledDispatcher


def _enforce_secret_guard(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: disable unused channels via GATEWAY_ENABLED/NOTIFIER_ENABLED/SMS_PROVIDER_ENABLED=false "
            + "or set the required provider secrets."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


def create_messaging_engine(
    settings: Settings | None = None,
    *,
    repository: MessagingRepository | None = None,
    group_resolver: GroupBookingResolver | None = None,
    booking_lookup: BookingReferenceLookup | None = None,
    sanitizer: ContentSanitizer | None = None,
    renderer: TemplateRenderer | None = None,
    publisher: DeliveryEventPublisher | None = None,
    twilio_client: Client | None = None,
) -> MessagingEngine:
    settings = settings or get_settings()
    _enforce_secret_guard(settings)

    repository = repository or create_messaging_repository(
        backend=settings.store_backend,
        database_url=settings.database_url,
        schema_features=settings.schema_features,
    )
    channels = build_channel_registry(
        settings,
        booking_lookup=booking_lookup or StaticBookingReferenceLookup(),
        twilio_client=twilio_client,
    )
    resolver = ThreadResolver(repository=repository, group_resolver=group_resolver)
    orchestrator = MessageOrchestrator(
        repository=repository,
        settings=settings,
        channels=channels,
        resolver=resolver,
        tracker=DeliveryStatusTracker(repository=repository),
        echo_detector=EchoDetector(repository=repository, settings=settings),
        sanitizer=sanitizer,
        publisher=publisher,
    )
    dispatcher = ScheduledDispatcher(
        repository=repository,
        orchestrator=orchestrator,
        renderer=renderer or InMemoryTemplateRenderer(),
        settings=settings,
    )
    logger.info("%s ready (store=%s)", settings.app_name, settings.store_backend)
    return MessagingEngine(
        settings=settings,
        repository=repository,
        channels=channels,
        resolver=resolver,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging()
    engine = create_messaging_engine()
    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("received signal %s, stopping dispatcher", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    engine.dispatcher.run_forever(stop_event)


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from .collaborators import TemplateRenderer
from .config import Settings
from .errors import MessagingError, StoreUnavailableError
from .models import DispatchRunSummary, SendMessageRequest
from .orchestrator import MessageOrchestrator
from .store import MessagingRepository, ScheduledMessageRecord

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledDispatcher:
    """Claims due scheduled messages and sends them as system messages.

    Rows are claimed (queued -> processing) in the same store transaction that
    selects them, so concurrent dispatchers never pick up the same row. Each
    claimed row ends as ``sent`` or ``failed``; failures are not retried here.
    A row left in ``processing`` longer than ``scheduler_claim_lease_seconds``
    (dispatcher crashed or the store dropped the completion) is claimed again.
    """

    def __init__(
        self,
        *,
        repository: MessagingRepository,
        orchestrator: MessageOrchestrator,
        renderer: TemplateRenderer,
        settings: Settings,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._renderer = renderer
        self._settings = settings
        self._clock = clock

    def run_once(self, *, limit: int | None = None) -> DispatchRunSummary:
        batch_size = limit or self._settings.scheduler_batch_size
        claimed = self._repository.claim_due_scheduled_messages(
            limit=batch_size,
            now=self._clock(),
            lease_seconds=self._settings.scheduler_claim_lease_seconds,
        )
        summary = DispatchRunSummary(claimed=len(claimed))
        for record in claimed:
            if self._process(record):
                summary.sent += 1
                summary.sent_ids.append(record.scheduled_id)
            else:
                summary.failed += 1
                summary.failed_ids.append(record.scheduled_id)
        if claimed:
            logger.info(
                "scheduled dispatch: claimed=%d sent=%d failed=%d",
                summary.claimed,
                summary.sent,
                summary.failed,
            )
        return summary

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("scheduled dispatcher started (poll every %.1fs)", self._settings.scheduler_poll_seconds)
        while not stop_event.is_set():
            try:
                self.run_once()
            except StoreUnavailableError as exc:
                logger.warning("scheduled dispatch skipped: %s", exc.message)
            stop_event.wait(self._settings.scheduler_poll_seconds)
        logger.info("scheduled dispatcher stopped")

    def _process(self, record: ScheduledMessageRecord) -> bool:
        try:
            content = self._renderer.render(record.template_id, record.payload)
            message = self._orchestrator.send_message(
                SendMessageRequest(
                    thread_id=record.thread_id,
                    channel=record.channel,
                    content=content,
                    origin_role="system",
                    author_id=record.created_by,
                )
            )
        except MessagingError as exc:
            logger.warning("scheduled message %s failed: %s", record.scheduled_id, exc.message)
            self._repository.complete_scheduled_message(record.scheduled_id, status="failed", last_error=exc.message)
            return False
        except Exception as exc:
            logger.exception("scheduled message %s failed unexpectedly", record.scheduled_id)
            self._repository.complete_scheduled_message(record.scheduled_id, status="failed", last_error=str(exc))
            return False
        self._repository.complete_scheduled_message(record.scheduled_id, status="sent")
        logger.info("scheduled message %s sent as %s", record.scheduled_id, message.message_id)
        return True

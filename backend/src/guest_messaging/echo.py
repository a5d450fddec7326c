from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import Settings
from .store import MessageRecord, MessagingRepository

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EchoDetector:
    """Recognises provider echoes of messages the host already sent.

    Upstream channels report a host's own outbound message back through the
    inbound webhook. The echo is matched by content within a short window and
    the provider id is written onto the original delivery with a
    compare-and-set, so at most one webhook can ever claim a given message.
    """

    def __init__(
        self,
        *,
        repository: MessagingRepository,
        settings: Settings,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._clock = clock

    def find_recent_outbound_echo(
        self,
        thread_id: str,
        content: str,
        time_window_minutes: int | None = None,
    ) -> MessageRecord | None:
        window = time_window_minutes if time_window_minutes is not None else self._settings.echo_window_minutes
        since = self._clock() - timedelta(minutes=window)
        return self._repository.find_recent_outbound_by_content_and_window(
            thread_id=thread_id,
            content=content,
            since=since,
            require_unassigned_delivery=self._settings.echo_require_unassigned_delivery,
        )

    def backfill_provider_message_id(self, message_id: str, channel: str, provider_message_id: str) -> bool:
        won = self._repository.conditional_backfill_provider_id(
            message_id=message_id,
            channel=channel,
            provider_message_id=provider_message_id,
        )
        if won:
            logger.info("backfilled provider id %s onto message %s (%s)", provider_message_id, message_id, channel)
        else:
            logger.warning(
                "lost provider id backfill race for message %s (%s); provider id %s",
                message_id,
                channel,
                provider_message_id,
            )
        return won

    def absorb_echo(self, thread_id: str, content: str, provider_message_id: str | None) -> MessageRecord | None:
        """Return the original outbound message when this inbound event is its echo.

        ``None`` means the caller must record the event as a normal message,
        either because nothing matched or because another webhook already
        claimed the match.
        """
        if not provider_message_id:
            return None
        match = self.find_recent_outbound_echo(thread_id, content)
        if match is None:
            return None
        if self.backfill_provider_message_id(match.message_id, match.channel, provider_message_id):
            return match
        return None

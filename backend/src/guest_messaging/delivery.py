from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from .models import DeliveryStatus
from .store import DeliveryRecord, MessagingRepository

logger = logging.getLogger(__name__)

# Status -> statuses it may be entered from. Terminal states have no outgoing
# edges; ``requeue`` is the single manual exit from ``failed``.
ALLOWED_PREDECESSORS: dict[str, frozenset[str]] = {
    "sent": frozenset({"queued"}),
    "delivered": frozenset({"queued", "sent"}),
    "read": frozenset({"queued", "sent", "delivered"}),
    "failed": frozenset({"queued", "sent"}),
}
REQUEUE_PREDECESSORS: frozenset[str] = frozenset({"failed"})

TIMESTAMP_FIELD_BY_STATUS: dict[str, str | None] = {
    "queued": "queued_at",
    "sent": "sent_at",
    "delivered": "delivered_at",
    "read": "read_at",
    "failed": None,
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return current in ALLOWED_PREDECESSORS.get(target, frozenset())


class DeliveryStatusTracker:
    """Per-(message, channel) delivery state machine.

    Forward path is queued -> sent -> delivered -> read, and ``failed`` may
    only be entered from queued or sent. Each status stamps its own timestamp
    the first time it is reached and never clears another one. Every move is
    one conditional store update, so two callers racing on the same row can
    never both apply a transition from the same predecessor.
    """

    def __init__(self, *, repository: MessagingRepository, clock: Callable[[], datetime] = _now_utc) -> None:
        self._repository = repository
        self._clock = clock

    def get(self, message_id: str, channel: str) -> DeliveryRecord | None:
        return self._repository.get_delivery(message_id, channel)

    def transition(
        self,
        message_id: str,
        channel: str,
        status: DeliveryStatus,
        *,
        error_message: str | None = None,
        provider_message_id: str | None = None,
    ) -> bool:
        allowed_from = ALLOWED_PREDECESSORS.get(status)
        if allowed_from is None:
            logger.debug("rejected delivery transition to %s for %s/%s: not a target state", status, message_id, channel)
            return False
        updated = self._repository.transition_delivery(
            message_id=message_id,
            channel=channel,
            status=status,
            allowed_from=allowed_from,
            timestamp_field=TIMESTAMP_FIELD_BY_STATUS[status],
            at=self._clock(),
            error_message=error_message if status == "failed" else None,
            provider_message_id=provider_message_id,
        )
        if updated is None:
            current = self._repository.get_delivery(message_id, channel)
            logger.debug(
                "rejected delivery transition %s -> %s for %s/%s",
                current.status if current is not None else "missing",
                status,
                message_id,
                channel,
            )
            return False
        return True

    def mark_sent(self, message_id: str, channel: str, *, provider_message_id: str | None = None) -> bool:
        return self.transition(message_id, channel, "sent", provider_message_id=provider_message_id)

    def mark_delivered(self, message_id: str, channel: str) -> bool:
        return self.transition(message_id, channel, "delivered")

    def mark_read(self, message_id: str, channel: str) -> bool:
        return self.transition(message_id, channel, "read")

    def mark_failed(self, message_id: str, channel: str, error_message: str) -> bool:
        return self.transition(message_id, channel, "failed", error_message=error_message)

    def requeue(self, message_id: str, channel: str) -> bool:
        """Manual resend: failed -> queued, keeping every timestamp already set."""
        updated = self._repository.transition_delivery(
            message_id=message_id,
            channel=channel,
            status="queued",
            allowed_from=REQUEUE_PREDECESSORS,
            timestamp_field="queued_at",
            at=self._clock(),
            clear_error=True,
        )
        if updated is None:
            logger.debug("rejected requeue for %s/%s: delivery is not failed", message_id, channel)
            return False
        return True

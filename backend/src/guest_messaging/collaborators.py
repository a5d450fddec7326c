from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Protocol

from .errors import NotFoundError

logger = logging.getLogger(__name__)

_TEMPLATE_VARIABLE = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")


class ContentSanitizer(Protocol):
    def process(self, content: str, message_id: str) -> str: ...


class PassthroughContentSanitizer:
    def process(self, content: str, message_id: str) -> str:
        return content


class TemplateRenderer(Protocol):
    def render(self, template_id: str, payload: Mapping[str, Any]) -> str: ...


class InMemoryTemplateRenderer:
    """Templates held in a dict, with ``{{ variable }}`` substitution.

    Variables missing from the payload (or set to ``None``) render as an
    empty string.
    """

    def __init__(self, templates: Mapping[str, str] | None = None) -> None:
        self._templates = dict(templates or {})

    def register(self, template_id: str, content: str) -> None:
        self._templates[template_id] = content

    def render(self, template_id: str, payload: Mapping[str, Any]) -> str:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"template not found: {template_id}")

        def _substitute(match: re.Match[str]) -> str:
            value = payload.get(match.group(1))
            return "" if value is None else str(value)

        return _TEMPLATE_VARIABLE.sub(_substitute, template)


class BookingReferenceLookup(Protocol):
    def external_booking_id(self, reservation_id: str) -> str | None: ...


class StaticBookingReferenceLookup:
    def __init__(self, booking_ids: Mapping[str, str] | None = None) -> None:
        self._booking_ids = dict(booking_ids or {})

    def external_booking_id(self, reservation_id: str) -> str | None:
        return self._booking_ids.get(reservation_id)


class DeliveryEventPublisher(Protocol):
    def publish(self, thread_id: str, event: str, payload: dict[str, Any]) -> None: ...


class LoggingDeliveryEventPublisher:
    def publish(self, thread_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.debug("event %s on thread %s: %s", event, thread_id, payload)

"""Post-commit event fan-out.

Services receive an EventPublisher and call it only after their transaction
has committed. Delivery is best-effort and at-most-once: a subscriber that
raises is logged and skipped, and nothing is rolled back or retried.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum as PyEnum
from typing import Callable

from tag_custody.schemas.events import EventType, InventoryEvent

logger = logging.getLogger(__name__)

Handler = Callable[[InventoryEvent], object]


class SubscriberCategory(str, PyEnum):
    DASHBOARD = "dashboard"
    HUB_CONSOLE = "hub_console"
    GATING = "gating"
    QUALITY = "quality"
    SUPPLIER = "supplier"


# Every event reaches the stock dashboards
EVENT_ROUTES: dict[EventType, tuple[SubscriberCategory, ...]] = {
    EventType.RECEIVED: (SubscriberCategory.DASHBOARD,),
    EventType.ASSIGNED: (SubscriberCategory.DASHBOARD, SubscriberCategory.GATING),
    EventType.RELEASED: (SubscriberCategory.DASHBOARD, SubscriberCategory.GATING),
    EventType.TESTED: (SubscriberCategory.DASHBOARD, SubscriberCategory.GATING),
    EventType.INSTALLED: (SubscriberCategory.DASHBOARD, SubscriberCategory.HUB_CONSOLE),
    EventType.DEFECTIVE: (SubscriberCategory.DASHBOARD, SubscriberCategory.QUALITY),
    EventType.RMA: (SubscriberCategory.DASHBOARD, SubscriberCategory.QUALITY),
    EventType.QUARANTINE_SET: (
        SubscriberCategory.DASHBOARD,
        SubscriberCategory.QUALITY,
        SubscriberCategory.SUPPLIER,
    ),
    EventType.QUARANTINE_LIFTED: (SubscriberCategory.DASHBOARD,),
    EventType.TRANSFER_INITIATED: (SubscriberCategory.DASHBOARD,),
    EventType.TRANSFER_ARRIVED: (SubscriberCategory.DASHBOARD,),
}


class EventPublisher(ABC):
    """Interface the services depend on."""

    @abstractmethod
    def publish(self, event: InventoryEvent) -> int:
        """Deliver one committed event; return the number of subscribers reached."""


class NullPublisher(EventPublisher):
    def publish(self, event: InventoryEvent) -> int:
        return 0


class EventBus(EventPublisher):
    """In-process publish/subscribe, routed by subscriber category."""

    def __init__(self):
        self._handlers: dict[SubscriberCategory, list[Handler]] = defaultdict(list)
        self._global: list[Handler] = []

    def subscribe(self, handler: Handler, category: SubscriberCategory | None = None) -> None:
        """Register a handler for one category, or for every event when category is None."""
        if category is None:
            self._global.append(handler)
        else:
            self._handlers[SubscriberCategory(category)].append(handler)
        logger.debug("Subscribed %r to %s", handler, category or "all events")

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._global:
            self._global.remove(handler)
        for handlers in self._handlers.values():
            if handler in handlers:
                handlers.remove(handler)

    def handlers_for(self, event_type: EventType) -> list[Handler]:
        handlers = list(self._global)
        for category in EVENT_ROUTES.get(event_type, (SubscriberCategory.DASHBOARD,)):
            for handler in self._handlers.get(category, []):
                if handler not in handlers:
                    handlers.append(handler)
        return handlers

    def publish(self, event: InventoryEvent) -> int:
        delivered = 0
        for handler in self.handlers_for(event.type):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber %r failed on %s (%s)", handler, event.type.value, event.event_id)
        logger.debug("Published %s to %d subscriber(s)", event.type.value, delivered)
        return delivered


def publish_after_commit(bus: EventPublisher | None, event: InventoryEvent) -> InventoryEvent:
    """Hand a committed change to the publisher. Never raises."""
    if bus is None:
        return event
    try:
        bus.publish(event)
    except Exception:
        logger.exception("Event publisher failed on %s for %s", event.type.value, event.uid or event.lot or event.transfer_id)
    return event

import logging

import httpx

from tag_custody.config import settings
from tag_custody.schemas.events import InventoryEvent
from tag_custody.services.event_bus import EventBus, SubscriberCategory

logger = logging.getLogger(__name__)


def _build_payload(event: InventoryEvent) -> dict:
    return {
        "event": event.type.value,
        **event.model_dump(mode="json", exclude={"type"}),
    }


class WebhookSubscriber:
    """Bus subscriber that POSTs each event envelope to a list of callback URLs.

    Failures are logged and reported in the returned results; they never
    propagate back into the publishing service.
    """

    def __init__(self, urls: list[str], timeout: float | None = None, transport: httpx.BaseTransport | None = None):
        self.urls = list(urls)
        self.timeout = settings.WEBHOOK_TIMEOUT if timeout is None else timeout
        self.transport = transport

    def __call__(self, event: InventoryEvent) -> list[dict]:
        return self.send(event)

    def send(self, event: InventoryEvent) -> list[dict]:
        if not self.urls:
            return []

        payload = _build_payload(event)
        results = []

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            for url in self.urls:
                try:
                    resp = client.post(url, json=payload)
                    results.append({"url": url, "status": resp.status_code, "success": resp.is_success})
                    if not resp.is_success:
                        logger.warning("Webhook %s returned %s for %s", url, resp.status_code, event.type.value)
                except httpx.HTTPError as e:
                    logger.error("Webhook failed for %s: %s", url, e)
                    results.append({"url": url, "status": 0, "success": False, "error": str(e)})

        return results


def register_webhooks(
    bus: EventBus,
    urls: list[str] | None = None,
    category: SubscriberCategory | None = None,
    transport: httpx.BaseTransport | None = None,
) -> WebhookSubscriber | None:
    """Subscribe a WebhookSubscriber for the configured URLs (WEBHOOK_URLS by default)."""
    urls = settings.webhook_urls if urls is None else urls
    if not urls:
        return None
    subscriber = WebhookSubscriber(urls, transport=transport)
    bus.subscribe(subscriber, category)
    logger.info("Registered %d webhook URL(s) for %s", len(urls), category or "all events")
    return subscriber

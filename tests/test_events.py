import json

import httpx
import pytest

from tag_custody.errors import NoStockError
from tag_custody.models.inventory_unit import UnitStatus
from tag_custody.schemas.events import EventType, InventoryEvent
from tag_custody.schemas.inventory import ReserveRequest
from tag_custody.services import reservation_service
from tag_custody.services.event_bus import (
    EVENT_ROUTES,
    EventBus,
    EventPublisher,
    NullPublisher,
    SubscriberCategory,
    publish_after_commit,
)
from tag_custody.services.stock_service import get_unit
from tag_custody.services.webhook_service import WebhookSubscriber, register_webhooks


def _event(event_type=EventType.ASSIGNED, **kwargs):
    return InventoryEvent(type=event_type, uid="NFC-L1-0001", lot="L1", hub_id="H1", actor_id="op", **kwargs)


class TestEventBus:
    def test_publisher_must_implement_publish(self):
        with pytest.raises(TypeError):
            EventPublisher()

        class Silent(EventPublisher):
            pass

        with pytest.raises(TypeError):
            Silent()

    def test_every_event_type_is_routed_to_dashboards(self):
        for event_type in EventType:
            assert SubscriberCategory.DASHBOARD in EVENT_ROUTES[event_type]

    def test_routes_by_category(self):
        bus = EventBus()
        gating, quality, supplier = [], [], []
        bus.subscribe(gating.append, SubscriberCategory.GATING)
        bus.subscribe(quality.append, SubscriberCategory.QUALITY)
        bus.subscribe(supplier.append, SubscriberCategory.SUPPLIER)

        bus.publish(_event(EventType.ASSIGNED))
        bus.publish(_event(EventType.RMA))
        bus.publish(_event(EventType.QUARANTINE_SET))

        assert [e.type for e in gating] == [EventType.ASSIGNED]
        assert [e.type for e in quality] == [EventType.RMA, EventType.QUARANTINE_SET]
        assert [e.type for e in supplier] == [EventType.QUARANTINE_SET]

    def test_handler_in_two_categories_gets_event_once(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append, SubscriberCategory.DASHBOARD)
        bus.subscribe(seen.append, SubscriberCategory.QUALITY)

        assert bus.publish(_event(EventType.DEFECTIVE)) == 1
        assert len(seen) == 1

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("dashboard offline")

        bus.subscribe(broken)
        bus.subscribe(seen.append)

        assert bus.publish(_event()) == 1
        assert len(seen) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append, SubscriberCategory.GATING)
        bus.unsubscribe(seen.append)
        bus.publish(_event())
        assert seen == []


class TestPublishAfterCommit:
    def test_publisher_errors_are_contained(self):
        class Exploding(EventPublisher):
            def publish(self, event):
                raise ConnectionError("broker down")

        event = _event()
        assert publish_after_commit(Exploding(), event) is event

    def test_null_publisher(self, db, receive):
        assert NullPublisher().publish(_event()) == 0
        uid = receive(quantity=1)[0]
        reserved = reservation_service.reserve_unit(db, NullPublisher(), ReserveRequest(shipment_id="S1", hub_id="H1", uid=uid))
        assert reserved.status == UnitStatus.ASSIGNED

    def test_no_publisher(self):
        assert publish_after_commit(None, _event()).type == EventType.ASSIGNED

    def test_subscribers_see_committed_state(self, session_factory, db, receive):
        seen = []

        def check(event):
            with session_factory() as other:
                seen.append(get_unit(other, event.uid).status)

        bus = EventBus()
        bus.subscribe(check, SubscriberCategory.GATING)
        receive(quantity=1)

        reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1"))

        assert seen == [UnitStatus.ASSIGNED]

    def test_subscriber_failure_keeps_the_change(self, db, receive):
        def broken(event):
            raise RuntimeError("hub console offline")

        bus = EventBus()
        bus.subscribe(broken)
        uid = receive(quantity=1)[0]

        unit = reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1", uid=uid))

        assert unit.status == UnitStatus.ASSIGNED
        db.expire_all()
        assert get_unit(db, uid).status == UnitStatus.ASSIGNED

    def test_no_event_when_operation_fails(self, db, bus, events):
        with pytest.raises(NoStockError):
            reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1"))
        assert events == []


class TestWebhookSubscriber:
    def test_posts_event_envelope(self):
        received = []

        def handler(request):
            received.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200)

        subscriber = WebhookSubscriber(["https://hooks.test/a", "https://hooks.test/b"], transport=httpx.MockTransport(handler))
        results = subscriber(_event(EventType.RMA, data={"reason": "DOA"}))

        assert results == [
            {"url": "https://hooks.test/a", "status": 200, "success": True},
            {"url": "https://hooks.test/b", "status": 200, "success": True},
        ]
        url, payload = received[0]
        assert url == "https://hooks.test/a"
        assert payload["event"] == "inventory.rma"
        assert payload["uid"] == "NFC-L1-0001"
        assert payload["data"] == {"reason": "DOA"}
        assert "type" not in payload

    def test_reports_http_errors(self):
        def handler(request):
            if request.url.host == "down.test":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(500)

        subscriber = WebhookSubscriber(["https://down.test/", "https://sad.test/"], transport=httpx.MockTransport(handler))
        down, sad = subscriber(_event())

        assert down["success"] is False
        assert "connection refused" in down["error"]
        assert sad == {"url": "https://sad.test/", "status": 500, "success": False}

    def test_register_webhooks(self, db, receive):
        posted = []

        def handler(request):
            posted.append(json.loads(request.content)["event"])
            return httpx.Response(204)

        bus = EventBus()
        subscriber = register_webhooks(
            bus, ["https://hooks.test/q"], SubscriberCategory.QUALITY, transport=httpx.MockTransport(handler)
        )
        assert subscriber is not None
        uid = receive(quantity=1)[0]

        reservation_service.mark_defective(db, bus, uid, "Delaminated")

        assert posted == ["inventory.defective"]

    def test_register_without_urls(self):
        assert register_webhooks(EventBus(), []) is None

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from pydantic import BaseModel, Field


class EventType(str, PyEnum):
    RECEIVED = "inventory.received"
    ASSIGNED = "inventory.assigned"
    RELEASED = "inventory.released"
    INSTALLED = "inventory.installed"
    TESTED = "inventory.tested"
    DEFECTIVE = "inventory.defective"
    RMA = "inventory.rma"
    QUARANTINE_SET = "lot.quarantine.set"
    QUARANTINE_LIFTED = "lot.quarantine.lifted"
    TRANSFER_INITIATED = "transfer.initiated"
    TRANSFER_ARRIVED = "transfer.arrived"


class InventoryEvent(BaseModel):
    """Envelope delivered to subscribers after the owning transaction commits."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType
    uid: str | None = None
    lot: str | None = None
    transfer_id: str | None = None
    hub_id: str | None = None
    actor_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict = {}

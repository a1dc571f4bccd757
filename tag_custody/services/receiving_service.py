import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tag_custody.config import settings
from tag_custody.database import atomic
from tag_custody.errors import ConcurrencyConflictError, InvalidTransitionError
from tag_custody.models.inventory_unit import InventoryUnit, UnitKind, UnitStatus
from tag_custody.schemas.events import EventType, InventoryEvent
from tag_custody.schemas.inventory import ReceiveBatch
from tag_custody.services import audit_service
from tag_custody.services.event_bus import EventPublisher, publish_after_commit
from tag_custody.services.transitions import ensure_transition, utcnow

logger = logging.getLogger(__name__)


def _uid_prefix(kind: UnitKind) -> str:
    return settings.TAG_UID_PREFIX if kind == UnitKind.TAG else settings.NFC_UID_PREFIX


def _generate_uids(db: Session, data: ReceiveBatch, needed: int, taken: set[str]) -> list[str]:
    """Human-readable UIDs, NFC-<lot>-<seq>, continuing after the lot's existing units."""
    prefix = _uid_prefix(data.kind)
    seq = db.query(func.count(InventoryUnit.id)).filter(InventoryUnit.lot == data.lot).scalar() or 0
    uids: list[str] = []
    while len(uids) < needed:
        seq += 1
        uid = f"{prefix}-{data.lot}-{str(seq).zfill(settings.UID_SEQUENCE_WIDTH)}"
        if uid in taken or db.query(InventoryUnit.id).filter(InventoryUnit.uid == uid).first():
            continue
        uids.append(uid)
    return uids


def receive_batch(
    db: Session, bus: EventPublisher | None, data: ReceiveBatch, actor_id: str | None = None
) -> list[InventoryUnit]:
    """Receive a batch of tags or chips into stock at a hub. The only way units are created."""
    actor_id = actor_id or settings.DEFAULT_ACTOR
    received_at = data.received_at or utcnow()
    results = data.test_results

    with atomic(db):
        existing = db.query(InventoryUnit).filter(InventoryUnit.uid.in_(data.uids)).all() if data.uids else []
        if existing:
            dupe = existing[0]
            raise InvalidTransitionError(dupe.uid, dupe.status, UnitStatus.AVAILABLE)

        uids = list(data.uids)
        uids += _generate_uids(db, data, data.quantity - len(uids), set(uids))

        units = []
        for uid in uids:
            ensure_transition(uid, None, UnitStatus.AVAILABLE)
            unit = InventoryUnit(
                uid=uid,
                kind=data.kind,
                status=UnitStatus.AVAILABLE,
                lot=data.lot,
                supplier_ref=data.supplier_ref,
                current_hub_id=data.hub_id,
                received_at=received_at,
                created_by=actor_id,
            )
            if results is not None:
                unit.read_test_passed = results.read_passed
                unit.write_test_passed = results.write_passed
                unit.last_tested_at = results.tested_at or received_at
                unit.test_notes = results.notes
            db.add(unit)
            entry = audit_service.record_transition(
                db,
                uid,
                action="receive",
                old_value=None,
                new_value=UnitStatus.AVAILABLE.value,
                actor_id=actor_id,
                reason=f"Batch received: {data.lot}" + (f" ({data.supplier_ref})" if data.supplier_ref else ""),
                details={"hub_id": data.hub_id, "lot": data.lot, "supplier_ref": data.supplier_ref},
            )
            if data.evidence:
                audit_service.attach_evidence(entry, data.evidence, actor_id)
            units.append(unit)

        try:
            db.flush()
        except IntegrityError:
            # Same UID received concurrently by another writer
            raise ConcurrencyConflictError(", ".join(uids), None)

    logger.info("Received %d %s unit(s) of lot %s at hub %s (actor=%s)", len(units), data.kind.value, data.lot, data.hub_id, actor_id)

    publish_after_commit(bus, InventoryEvent(
        type=EventType.RECEIVED,
        lot=data.lot,
        hub_id=data.hub_id,
        actor_id=actor_id,
        data={
            "qty": len(uids),
            "uids": uids,
            "kind": data.kind.value,
            "supplier_ref": data.supplier_ref,
            "evidence": [f.name for f in data.evidence],
        },
    ))
    for unit in units:
        db.refresh(unit)
    return units

"""Lot-level quarantine and its reversal.

Each unit is moved in its own short transaction so a sweep over a large lot
never holds more than one row lock at a time, and one unit that cannot be
moved does not undo the others. Units that fail are reported back to the
caller through PartialFailureError after the successful subset has been
committed and announced.
"""

import logging

from sqlalchemy.orm import Session

from tag_custody.config import settings
from tag_custody.database import atomic
from tag_custody.errors import ConcurrencyConflictError, InventoryError, NotFoundError, PartialFailureError
from tag_custody.models.inventory_unit import InventoryUnit, UnitStatus
from tag_custody.schemas.events import EventType, InventoryEvent
from tag_custody.schemas.inventory import LiftResult, QuarantineRequest, QuarantineResult, UnitFailure
from tag_custody.services import transfer_service
from tag_custody.services.event_bus import EventPublisher, publish_after_commit
from tag_custody.services.transitions import apply_transition

logger = logging.getLogger(__name__)

# Installed units are already in the field and are never quarantined retroactively.
# Units in transit are pulled off their transfer so they cannot arrive as stock.
QUARANTINABLE = (UnitStatus.AVAILABLE, UnitStatus.ASSIGNED, UnitStatus.IN_TRANSIT)


def _lot_query(db: Session, lot: str, hub_id: str | None):
    q = db.query(InventoryUnit).filter(InventoryUnit.lot == lot)
    if hub_id:
        q = q.filter(InventoryUnit.current_hub_id == hub_id)
    return q


def _ensure_lot_exists(db: Session, lot: str, hub_id: str | None) -> None:
    if not _lot_query(db, lot, hub_id).with_entities(InventoryUnit.id).first():
        raise NotFoundError("Lot", lot, hub_id)


def _lock_in_scope(db: Session, uid: str, lot: str, hub_id: str | None, statuses, quarantined: bool | None = None):
    """Re-read and lock a selected unit; it must still match the sweep's selection."""
    unit = (
        _lot_query(db, lot, hub_id)
        .filter(InventoryUnit.uid == uid)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not unit:
        raise NotFoundError("Unit", uid, hub_id)
    if unit.status not in statuses or (quarantined is not None and unit.quarantined != quarantined):
        raise ConcurrencyConflictError(uid, "/".join(s.value for s in statuses))
    return unit


def quarantine_lot(
    db: Session, bus: EventPublisher | None, data: QuarantineRequest, actor_id: str | None = None
) -> QuarantineResult:
    """Block every available, reserved or in-transit unit of a lot, optionally at one hub."""
    actor_id = actor_id or settings.DEFAULT_ACTOR
    _ensure_lot_exists(db, data.lot, data.hub_id)

    uids = [
        row.uid
        for row in _lot_query(db, data.lot, data.hub_id)
        .with_entities(InventoryUnit.uid)
        .filter(InventoryUnit.status.in_(QUARANTINABLE))
        .order_by(InventoryUnit.uid)
        .all()
    ]

    result = QuarantineResult(lot=data.lot, hub_id=data.hub_id, reason=data.reason)
    shipments: dict[str, str] = {}

    for uid in uids:
        try:
            with atomic(db):
                unit = _lock_in_scope(db, uid, data.lot, data.hub_id, QUARANTINABLE)
                previous = unit.status_value
                transfer_id = unit.transfer_id
                apply_transition(
                    db,
                    unit,
                    UnitStatus.DEFECTIVE,
                    action="quarantine",
                    actor_id=actor_id,
                    reason=data.reason,
                    details={
                        "lot": data.lot,
                        "hub_id": data.hub_id,
                        "previous_status": previous,
                        "quarantine_type": "lot_quarantine",
                        "transfer_id": transfer_id,
                    },
                    values={"quarantined": True, "quarantine_reason": data.reason, "transfer_id": None},
                )
                if transfer_id:
                    transfer_service.close_transfer_item(db, transfer_id, uid, "quarantine")
            result.affected_uids.append(uid)
            if unit.assigned_shipment_id:
                shipments[uid] = unit.assigned_shipment_id
        except InventoryError as e:
            logger.warning("Quarantine of %s in lot %s failed: %s", uid, data.lot, e)
            result.failures.append(UnitFailure.from_error(uid, e))

    result.affected_count = len(result.affected_uids)
    logger.info(
        "Quarantined %d unit(s) of lot %s at hub %s, %d failed (actor=%s)",
        result.affected_count, data.lot, data.hub_id or "*", len(result.failures), actor_id,
    )

    publish_after_commit(bus, InventoryEvent(
        type=EventType.QUARANTINE_SET,
        lot=data.lot,
        hub_id=data.hub_id,
        actor_id=actor_id,
        data={
            "reason": data.reason,
            "affected_count": result.affected_count,
            "affected_uids": result.affected_uids,
            "affected_shipments": shipments,
            "incident_type": "lot_quarantine",
        },
    ))

    if result.failures:
        raise PartialFailureError(result, result.failures)
    return result


def lift_quarantine(
    db: Session, bus: EventPublisher | None, data: QuarantineRequest, actor_id: str | None = None
) -> LiftResult:
    """Return a lot's quarantined units to stock.

    Only units carrying the quarantine marker are touched; units that are
    defective for their own reasons stay defective.
    """
    actor_id = actor_id or settings.DEFAULT_ACTOR
    _ensure_lot_exists(db, data.lot, data.hub_id)

    uids = [
        row.uid
        for row in _lot_query(db, data.lot, data.hub_id)
        .with_entities(InventoryUnit.uid)
        .filter(InventoryUnit.status == UnitStatus.DEFECTIVE, InventoryUnit.quarantined.is_(True))
        .order_by(InventoryUnit.uid)
        .all()
    ]

    result = LiftResult(lot=data.lot, hub_id=data.hub_id, reason=data.reason)

    for uid in uids:
        try:
            with atomic(db):
                unit = _lock_in_scope(db, uid, data.lot, data.hub_id, (UnitStatus.DEFECTIVE,), quarantined=True)
                apply_transition(
                    db,
                    unit,
                    UnitStatus.AVAILABLE,
                    action="lift_quarantine",
                    actor_id=actor_id,
                    reason=data.reason,
                    details={"lot": data.lot, "hub_id": data.hub_id},
                    values={"quarantined": False, "quarantine_reason": "", "assigned_shipment_id": None},
                )
            result.restored_uids.append(uid)
        except InventoryError as e:
            logger.warning("Lifting quarantine of %s in lot %s failed: %s", uid, data.lot, e)
            result.failures.append(UnitFailure.from_error(uid, e))

    result.restored_count = len(result.restored_uids)
    logger.info(
        "Lifted quarantine on %d unit(s) of lot %s at hub %s, %d failed (actor=%s)",
        result.restored_count, data.lot, data.hub_id or "*", len(result.failures), actor_id,
    )

    publish_after_commit(bus, InventoryEvent(
        type=EventType.QUARANTINE_LIFTED,
        lot=data.lot,
        hub_id=data.hub_id,
        actor_id=actor_id,
        data={
            "reason": data.reason,
            "restored_count": result.restored_count,
            "restored_uids": result.restored_uids,
        },
    ))

    if result.failures:
        raise PartialFailureError(result, result.failures)
    return result

"""Reservation, installation, release and single-unit quality actions."""

import logging

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from tag_custody.config import settings
from tag_custody.database import atomic
from tag_custody.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NoStockError,
    NotFoundError,
    TestFailureError,
)
from tag_custody.models.inventory_unit import InventoryUnit, UnitKind, UnitStatus
from tag_custody.schemas.events import EventType, InventoryEvent
from tag_custody.schemas.inventory import InstallRequest, ReserveRequest, RMARequest, TestResults
from tag_custody.services import audit_service, transfer_service
from tag_custody.services.event_bus import EventPublisher, publish_after_commit
from tag_custody.services.transitions import apply_transition, set_once, utcnow

logger = logging.getLogger(__name__)

# Units whose QA results may still be updated
_TESTABLE = (UnitStatus.AVAILABLE, UnitStatus.ASSIGNED)

# Claimed by another shipment or transfer; a named reserve of one lost a race
_HELD = (UnitStatus.ASSIGNED, UnitStatus.IN_TRANSIT)


def eligible_filter():
    """Tags need no QA; chips must have passed both read and write tests."""
    return or_(
        InventoryUnit.kind == UnitKind.TAG,
        and_(InventoryUnit.read_test_passed.is_(True), InventoryUnit.write_test_passed.is_(True)),
    )


def _lock_unit(db: Session, uid: str) -> InventoryUnit:
    unit = db.query(InventoryUnit).filter(InventoryUnit.uid == uid).with_for_update().populate_existing().first()
    if not unit:
        raise NotFoundError("Unit", uid)
    return unit


def _select_oldest(db: Session, data: ReserveRequest) -> InventoryUnit:
    """Lock the oldest-received eligible unit at the hub, skipping rows other transactions hold."""
    q = db.query(InventoryUnit).filter(
        InventoryUnit.current_hub_id == data.hub_id,
        InventoryUnit.status == UnitStatus.AVAILABLE,
        eligible_filter(),
    )
    if data.lot:
        q = q.filter(InventoryUnit.lot == data.lot)
    if data.kind:
        q = q.filter(InventoryUnit.kind == data.kind)

    unit = (
        q.order_by(InventoryUnit.received_at, InventoryUnit.uid)
        .with_for_update(skip_locked=True)
        .populate_existing()
        .first()
    )
    if not unit:
        raise NoStockError(data.hub_id, data.lot)
    return unit


def _claim(db: Session, data: ReserveRequest, actor_id: str) -> tuple[InventoryUnit, str]:
    """Select and assign one unit inside the caller's transaction. Returns the unit and its prior status."""
    if data.uid:
        unit = _lock_unit(db, data.uid)
        if unit.current_hub_id != data.hub_id or (data.lot and unit.lot != data.lot):
            raise NotFoundError("Unit", data.uid, data.hub_id)
        if unit.status in _HELD:
            raise ConcurrencyConflictError(unit.uid, UnitStatus.AVAILABLE)
        if unit.status == UnitStatus.AVAILABLE and unit.is_nfc and not unit.tests_passed:
            raise TestFailureError(unit.uid, unit.read_test_passed, unit.write_test_passed)
    else:
        unit = _select_oldest(db, data)

    previous = unit.status_value
    apply_transition(
        db,
        unit,
        UnitStatus.ASSIGNED,
        action="assign",
        actor_id=actor_id,
        reason=f"Reserved for shipment {data.shipment_id}",
        details={"shipment_id": data.shipment_id, "hub_id": data.hub_id},
        values={
            "assigned_shipment_id": data.shipment_id,
            "assigned_at": set_once(InventoryUnit.assigned_at, utcnow()),
        },
        criteria=(InventoryUnit.current_hub_id == data.hub_id,),
    )
    return unit, previous


def _assigned_event(unit: InventoryUnit, previous: str, actor_id: str) -> InventoryEvent:
    return InventoryEvent(
        type=EventType.ASSIGNED,
        uid=unit.uid,
        lot=unit.lot,
        hub_id=unit.current_hub_id,
        actor_id=actor_id,
        data={"shipment_id": unit.assigned_shipment_id, "previous_status": previous},
    )


def reserve_unit(
    db: Session, bus: EventPublisher | None, data: ReserveRequest, actor_id: str | None = None
) -> InventoryUnit:
    """Claim one available unit at a hub for a shipment.

    With ``uid`` set the named unit is claimed; otherwise the oldest-received
    eligible unit at the hub (optionally within ``lot``/``kind``) is taken, so
    old stock is used first. Concurrent callers never receive the same unit:
    the loser of a race gets ConcurrencyConflictError, or NoStockError once
    nothing eligible remains.
    """
    actor_id = actor_id or settings.DEFAULT_ACTOR

    with atomic(db):
        unit, previous = _claim(db, data, actor_id)

    logger.info("Reserved %s at hub %s for shipment %s (actor=%s)", unit.uid, data.hub_id, data.shipment_id, actor_id)
    publish_after_commit(bus, _assigned_event(unit, previous, actor_id))
    return unit


def install_unit(
    db: Session, bus: EventPublisher | None, data: InstallRequest, actor_id: str | None = None
) -> InventoryUnit:
    """Mark a reserved unit as permanently installed. Write-once: only defective/RMA may follow."""
    actor_id = actor_id or settings.DEFAULT_ACTOR
    results = data.test_results

    with atomic(db):
        unit = _lock_unit(db, data.uid)
        if unit.current_hub_id != data.hub_id:
            raise NotFoundError("Unit", data.uid, data.hub_id)
        previous = unit.status_value
        now = utcnow()
        entry = apply_transition(
            db,
            unit,
            UnitStatus.INSTALLED,
            action="install",
            actor_id=actor_id,
            reason="Installed during hub processing",
            details={
                "hub_id": data.hub_id,
                "shipment_id": unit.assigned_shipment_id,
                "test_results": results.model_dump(mode="json"),
            },
            values={
                "installed_at": set_once(InventoryUnit.installed_at, now),
                "read_test_passed": results.read_passed,
                "write_test_passed": results.write_passed,
                "last_tested_at": results.tested_at or now,
                "test_notes": results.notes or "Installation test completed",
            },
            criteria=(InventoryUnit.current_hub_id == data.hub_id,),
        )
        if data.evidence:
            audit_service.attach_evidence(entry, data.evidence, actor_id)

    logger.info("Installed %s at hub %s for shipment %s (actor=%s)", unit.uid, data.hub_id, unit.assigned_shipment_id, actor_id)
    publish_after_commit(bus, InventoryEvent(
        type=EventType.INSTALLED,
        uid=unit.uid,
        lot=unit.lot,
        hub_id=data.hub_id,
        actor_id=actor_id,
        data={
            "shipment_id": unit.assigned_shipment_id,
            "previous_status": previous,
            "test_results": results.model_dump(mode="json"),
            "evidence": [f.name for f in data.evidence],
        },
    ))
    return unit


def release_unit(
    db: Session, bus: EventPublisher | None, uid: str, reason: str = "Shipment cancelled", actor_id: str | None = None
) -> InventoryUnit:
    """Return a reserved unit to stock and drop its shipment link."""
    actor_id = actor_id or settings.DEFAULT_ACTOR

    with atomic(db):
        unit = _lock_unit(db, uid)
        shipment_id = unit.assigned_shipment_id
        apply_transition(
            db,
            unit,
            UnitStatus.AVAILABLE,
            action="release",
            actor_id=actor_id,
            reason=reason,
            details={"shipment_id": shipment_id},
            values={"assigned_shipment_id": None},
        )

    logger.info("Released %s from shipment %s (actor=%s)", uid, shipment_id, actor_id)
    publish_after_commit(bus, InventoryEvent(
        type=EventType.RELEASED,
        uid=uid,
        lot=unit.lot,
        hub_id=unit.current_hub_id,
        actor_id=actor_id,
        data={"shipment_id": shipment_id, "reason": reason},
    ))
    return unit


def record_test_results(
    db: Session, bus: EventPublisher | None, uid: str, results: TestResults, actor_id: str | None = None
) -> InventoryUnit:
    """Store a QA re-test for a unit still in stock or reserved. Status does not change."""
    actor_id = actor_id or settings.DEFAULT_ACTOR

    with atomic(db):
        unit = _lock_unit(db, uid)
        status = unit.status
        if status not in _TESTABLE:
            raise InvalidTransitionError(uid, status, status)

        old = f"read={unit.read_test_passed},write={unit.write_test_passed}"
        new = f"read={results.read_passed},write={results.write_passed}"
        updated = db.execute(
            update(InventoryUnit)
            .where(InventoryUnit.id == unit.id, InventoryUnit.status == status)
            .values(
                read_test_passed=results.read_passed,
                write_test_passed=results.write_passed,
                last_tested_at=results.tested_at or utcnow(),
                test_notes=results.notes,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            raise ConcurrencyConflictError(uid, status)
        audit_service.record_transition(
            db,
            uid,
            action="test",
            old_value=old,
            new_value=new,
            actor_id=actor_id,
            reason=results.notes,
            field_name="test_results",
        )
        db.refresh(unit)

    logger.info("Recorded test results for %s: %s (actor=%s)", uid, new, actor_id)
    publish_after_commit(bus, InventoryEvent(
        type=EventType.TESTED,
        uid=uid,
        lot=unit.lot,
        hub_id=unit.current_hub_id,
        actor_id=actor_id,
        data={"test_results": results.model_dump(mode="json"), "passed": results.passed},
    ))
    return unit


def _leave_transit(db: Session, unit: InventoryUnit, transfer_id: str | None, reason: str) -> None:
    if transfer_id:
        transfer_service.close_transfer_item(db, transfer_id, unit.uid, reason)


def mark_defective(
    db: Session, bus: EventPublisher | None, uid: str, reason: str, actor_id: str | None = None
) -> InventoryUnit:
    """Flag a single unit as a quality failure. Never carries the quarantine marker.

    A unit flagged while in transit is taken off its transfer.
    """
    actor_id = actor_id or settings.DEFAULT_ACTOR

    with atomic(db):
        unit = _lock_unit(db, uid)
        previous = unit.status_value
        transfer_id = unit.transfer_id
        apply_transition(
            db,
            unit,
            UnitStatus.DEFECTIVE,
            action="defective",
            actor_id=actor_id,
            reason=reason,
            details={"previous_status": previous, "transfer_id": transfer_id},
            values={"quarantined": False, "transfer_id": None},
        )
        _leave_transit(db, unit, transfer_id, "defective")

    logger.info("Marked %s defective: %s (actor=%s)", uid, reason, actor_id)
    publish_after_commit(bus, InventoryEvent(
        type=EventType.DEFECTIVE,
        uid=uid,
        lot=unit.lot,
        hub_id=unit.current_hub_id,
        transfer_id=transfer_id,
        actor_id=actor_id,
        data={"reason": reason, "previous_status": previous},
    ))
    return unit


def mark_rma(
    db: Session, bus: EventPublisher | None, data: RMARequest, actor_id: str | None = None
) -> InventoryUnit:
    """Retire a unit for return to the supplier (terminal).

    If ``replacement_uid`` is given and the returned unit was linked to a
    shipment, the replacement is reserved for that shipment in the same
    transaction; if the replacement cannot be reserved nothing is written.
    """
    actor_id = actor_id or settings.DEFAULT_ACTOR
    replacement = None

    with atomic(db):
        unit = _lock_unit(db, data.uid)
        previous = unit.status_value
        shipment_id = unit.assigned_shipment_id
        transfer_id = unit.transfer_id
        entry = apply_transition(
            db,
            unit,
            UnitStatus.RMA,
            action="rma",
            actor_id=actor_id,
            reason=data.reason_code,
            details={
                "reason_code": data.reason_code,
                "notes": data.notes,
                "replacement_uid": data.replacement_uid,
                "shipment_id": shipment_id,
                "transfer_id": transfer_id,
            },
            values={
                "rma_initiated_at": set_once(InventoryUnit.rma_initiated_at, utcnow()),
                "rma_reason": data.reason_code,
                "rma_reference": f"{data.reason_code}: {data.notes}" if data.notes else data.reason_code,
                "transfer_id": None,
            },
        )
        if data.evidence:
            audit_service.attach_evidence(entry, data.evidence, actor_id)
        _leave_transit(db, unit, transfer_id, "rma")
        if data.replacement_uid and shipment_id:
            replacement = _claim(
                db,
                ReserveRequest(shipment_id=shipment_id, hub_id=unit.current_hub_id, uid=data.replacement_uid),
                actor_id,
            )

    logger.info("RMA %s (%s), previous status %s (actor=%s)", data.uid, data.reason_code, previous, actor_id)
    publish_after_commit(bus, InventoryEvent(
        type=EventType.RMA,
        uid=unit.uid,
        lot=unit.lot,
        hub_id=unit.current_hub_id,
        transfer_id=transfer_id,
        actor_id=actor_id,
        data={
            "reason": data.reason_code,
            "notes": data.notes,
            "previous_status": previous,
            "replacement_uid": data.replacement_uid,
            "evidence": [f.name for f in data.evidence],
        },
    ))
    if replacement:
        publish_after_commit(bus, _assigned_event(*replacement, actor_id))
    return unit

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tag_custody.config import settings
from tag_custody.database import atomic
from tag_custody.errors import InventoryError, NoStockError, NotFoundError, PartialFailureError
from tag_custody.models.inventory_unit import InventoryUnit, UnitStatus
from tag_custody.models.transfer import Transfer, TransferItem, TransferStatus
from tag_custody.schemas.events import EventType, InventoryEvent
from tag_custody.schemas.inventory import UnitFailure
from tag_custody.schemas.transfer import TransferComplete, TransferCreate
from tag_custody.services.event_bus import EventPublisher, publish_after_commit
from tag_custody.services.transitions import apply_transition, utcnow

logger = logging.getLogger(__name__)


def _generate_transfer_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    short = uuid.uuid4().hex[:6].upper()
    return f"{settings.TRANSFER_ID_PREFIX}-{ts}-{short}"


def _lock_units(db: Session, data: TransferCreate) -> list[InventoryUnit]:
    if data.uids:
        units = (
            db.query(InventoryUnit)
            .filter(InventoryUnit.uid.in_(data.uids))
            .with_for_update()
            .populate_existing()
            .all()
        )
        by_uid = {u.uid: u for u in units}
        for uid in data.uids:
            unit = by_uid.get(uid)
            if not unit or unit.current_hub_id != data.from_hub_id:
                raise NotFoundError("Unit", uid, data.from_hub_id)
        return [by_uid[uid] for uid in data.uids]

    units = (
        db.query(InventoryUnit)
        .filter(
            InventoryUnit.current_hub_id == data.from_hub_id,
            InventoryUnit.status == UnitStatus.AVAILABLE,
            InventoryUnit.transfer_id.is_(None),
        )
        .order_by(InventoryUnit.received_at, InventoryUnit.uid)
        .limit(data.quantity)
        .with_for_update(skip_locked=True)
        .populate_existing()
        .all()
    )
    if len(units) < data.quantity:
        raise NoStockError(data.from_hub_id, requested=data.quantity, available=len(units))
    return units


def initiate_transfer(
    db: Session, bus: EventPublisher | None, data: TransferCreate, actor_id: str | None = None
) -> Transfer:
    """Put available units at one hub in transit to another.

    Explicit UIDs must all be available at the source hub; with ``quantity``
    the oldest available units are picked. All or nothing: if any unit cannot
    move, no unit moves.
    """
    actor_id = actor_id or settings.DEFAULT_ACTOR

    with atomic(db):
        units = _lock_units(db, data)
        transfer = Transfer(
            id=_generate_transfer_id(),
            from_hub_id=data.from_hub_id,
            to_hub_id=data.to_hub_id,
            reason=data.reason,
            eta=data.eta,
            status=TransferStatus.INITIATED,
            created_by=actor_id,
        )
        db.add(transfer)

        for unit in units:
            apply_transition(
                db,
                unit,
                UnitStatus.IN_TRANSIT,
                action="transfer_initiated",
                actor_id=actor_id,
                reason=data.reason,
                details={
                    "transfer_id": transfer.id,
                    "from_hub_id": data.from_hub_id,
                    "to_hub_id": data.to_hub_id,
                    "eta": data.eta,
                },
                values={"transfer_id": transfer.id},
                criteria=(
                    InventoryUnit.current_hub_id == data.from_hub_id,
                    InventoryUnit.transfer_id.is_(None),
                ),
            )
            transfer.items.append(TransferItem(uid=unit.uid))

        uids = [u.uid for u in units]
        transfer_id = transfer.id

    logger.info(
        "Transfer %s initiated: %d unit(s) %s -> %s (actor=%s)",
        transfer_id, len(uids), data.from_hub_id, data.to_hub_id, actor_id,
    )
    publish_after_commit(bus, InventoryEvent(
        type=EventType.TRANSFER_INITIATED,
        transfer_id=transfer_id,
        hub_id=data.from_hub_id,
        actor_id=actor_id,
        data={
            "from_hub_id": data.from_hub_id,
            "to_hub_id": data.to_hub_id,
            "uids": uids,
            "count": len(uids),
            "reason": data.reason,
            "eta": data.eta.isoformat() if data.eta else None,
        },
    ))
    return transfer


def _lock_transfer(db: Session, transfer_id: str) -> Transfer | None:
    return (
        db.query(Transfer)
        .filter(Transfer.id == transfer_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _finish_if_resolved(transfer: Transfer, now) -> None:
    if transfer.status != TransferStatus.COMPLETED and transfer.is_resolved:
        transfer.status = TransferStatus.COMPLETED
        transfer.completed_at = now


def _arrive_one(db: Session, transfer_id: str, uid: str, actor_id: str) -> None:
    transfer = _lock_transfer(db, transfer_id)
    item = next((i for i in transfer.items if i.uid == uid and i.is_pending), None)
    unit = None
    if item:
        unit = (
            db.query(InventoryUnit)
            .filter(InventoryUnit.uid == uid)
            .with_for_update()
            .populate_existing()
            .first()
        )
    if not unit or unit.transfer_id != transfer.id:
        raise NotFoundError("Unit", uid, transfer.to_hub_id)

    now = utcnow()
    apply_transition(
        db,
        unit,
        UnitStatus.AVAILABLE,
        action="transfer_completed",
        actor_id=actor_id,
        reason=f"Arrived from hub {transfer.from_hub_id}",
        details={
            "transfer_id": transfer.id,
            "from_hub_id": transfer.from_hub_id,
            "to_hub_id": transfer.to_hub_id,
        },
        values={"current_hub_id": transfer.to_hub_id, "transfer_id": None},
        criteria=(InventoryUnit.transfer_id == transfer.id,),
    )
    item.arrived_at = now
    _finish_if_resolved(transfer, now)


def complete_transfer(
    db: Session, bus: EventPublisher | None, data: TransferComplete, actor_id: str | None = None
) -> Transfer:
    """Record arrival of some or all units of an open transfer at the destination hub.

    Each arrival commits on its own. UIDs that are not pending in the
    transfer, or that cannot be moved, are reported through
    PartialFailureError after the rest have been committed. Units not listed
    stay in transit.
    """
    actor_id = actor_id or settings.DEFAULT_ACTOR
    transfer = db.query(Transfer).filter(Transfer.id == data.transfer_id).first()
    if not transfer or transfer.to_hub_id != data.to_hub_id:
        raise NotFoundError("Transfer", data.transfer_id, data.to_hub_id)

    completed: list[str] = []
    failures: list[UnitFailure] = []

    for uid in dict.fromkeys(data.arrived_uids):
        try:
            with atomic(db):
                _arrive_one(db, transfer.id, uid, actor_id)
            completed.append(uid)
        except InventoryError as e:
            logger.warning("Arrival of %s on transfer %s failed: %s", uid, data.transfer_id, e)
            failures.append(UnitFailure.from_error(uid, e))

    db.refresh(transfer)
    logger.info(
        "Transfer %s: %d unit(s) arrived at %s, %d rejected (actor=%s)",
        data.transfer_id, len(completed), data.to_hub_id, len(failures), actor_id,
    )
    publish_after_commit(bus, InventoryEvent(
        type=EventType.TRANSFER_ARRIVED,
        transfer_id=data.transfer_id,
        hub_id=data.to_hub_id,
        actor_id=actor_id,
        data={
            "uids": completed,
            "count": len(completed),
            "transfer_status": TransferStatus(transfer.status).value,
        },
    ))

    if failures:
        raise PartialFailureError(transfer, failures)
    return transfer


def close_transfer_item(db: Session, transfer_id: str, uid: str, reason: str) -> Transfer | None:
    """Take a unit that left transit without arriving off its open transfer.

    Runs inside the caller's transaction. The transfer completes once no
    unit is left pending.
    """
    transfer = _lock_transfer(db, transfer_id)
    if not transfer:
        return None
    now = utcnow()
    for item in transfer.items:
        if item.uid == uid and item.is_pending:
            item.closed_at = now
            item.close_reason = reason
    _finish_if_resolved(transfer, now)
    logger.info("Closed %s on transfer %s: %s", uid, transfer_id, reason)
    return transfer


def get_transfer(db: Session, transfer_id: str) -> Transfer:
    transfer = db.query(Transfer).filter(Transfer.id == transfer_id).first()
    if not transfer:
        raise NotFoundError("Transfer", transfer_id)
    return transfer


def list_open_transfers(db: Session, hub_id: str | None = None) -> list[Transfer]:
    q = db.query(Transfer).filter(Transfer.status == TransferStatus.INITIATED)
    if hub_id:
        q = q.filter(or_(Transfer.from_hub_id == hub_id, Transfer.to_hub_id == hub_id))
    return q.order_by(Transfer.created_at).all()

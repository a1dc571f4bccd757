"""Legal custody status changes, and the one guarded write every service goes through.

Every status change, single-unit or bulk, is checked against ALLOWED_TRANSITIONS
and then applied with a conditional UPDATE keyed on the status that was read.
If another writer moved the unit in between, the UPDATE matches no row and the
operation fails with ConcurrencyConflictError instead of overwriting it.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from tag_custody.errors import ConcurrencyConflictError, InvalidTransitionError
from tag_custody.models.audit_log import AuditLogEntry
from tag_custody.models.inventory_unit import InventoryUnit, UnitStatus
from tag_custody.services import audit_service

logger = logging.getLogger(__name__)

# None is "not yet received": the only way a unit comes into existence
ALLOWED_TRANSITIONS: dict[UnitStatus | None, frozenset[UnitStatus]] = {
    None: frozenset({UnitStatus.AVAILABLE}),
    UnitStatus.AVAILABLE: frozenset(
        {UnitStatus.ASSIGNED, UnitStatus.IN_TRANSIT, UnitStatus.DEFECTIVE, UnitStatus.RMA}
    ),
    UnitStatus.ASSIGNED: frozenset(
        {UnitStatus.INSTALLED, UnitStatus.AVAILABLE, UnitStatus.DEFECTIVE, UnitStatus.RMA}
    ),
    UnitStatus.INSTALLED: frozenset({UnitStatus.DEFECTIVE, UnitStatus.RMA}),
    UnitStatus.IN_TRANSIT: frozenset({UnitStatus.AVAILABLE, UnitStatus.DEFECTIVE, UnitStatus.RMA}),
    UnitStatus.DEFECTIVE: frozenset({UnitStatus.RMA}),
    UnitStatus.RMA: frozenset(),
}

# Only lifting a lot quarantine may return a defective unit to stock
QUARANTINE_RELEASE = (UnitStatus.DEFECTIVE, UnitStatus.AVAILABLE)

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if s and not targets)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_status(value) -> UnitStatus | None:
    if value is None:
        return None
    return value if isinstance(value, UnitStatus) else UnitStatus(value)


def validate_transition(from_status, to_status, quarantined: bool = False) -> bool:
    from_status = _as_status(from_status)
    to_status = _as_status(to_status)
    if (from_status, to_status) == QUARANTINE_RELEASE:
        return quarantined
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def ensure_transition(uid: str, from_status, to_status, quarantined: bool = False) -> None:
    if not validate_transition(from_status, to_status, quarantined):
        logger.warning("Rejected transition for %s: %s -> %s", uid, from_status, to_status)
        raise InvalidTransitionError(uid, _as_status(from_status), _as_status(to_status))


def set_once(column, value):
    """SET expression that keeps an existing timestamp and only fills a null one."""
    return func.coalesce(column, value)


def apply_transition(
    db: Session,
    unit: InventoryUnit,
    to_status: UnitStatus,
    *,
    action: str,
    actor_id: str,
    reason: str = "",
    details: dict | None = None,
    values: dict | None = None,
    criteria: tuple = (),
) -> AuditLogEntry:
    """Validate, write and audit one status change inside the caller's transaction.

    ``values`` are extra columns written by the same UPDATE; ``criteria`` are
    extra WHERE clauses that must still hold at write time.
    """
    from_status = _as_status(unit.status)
    ensure_transition(unit.uid, from_status, to_status, quarantined=unit.quarantined)

    where = [InventoryUnit.id == unit.id, InventoryUnit.status == from_status, *criteria]
    if (from_status, to_status) == QUARANTINE_RELEASE:
        where.append(InventoryUnit.quarantined.is_(True))

    stmt = (
        update(InventoryUnit)
        .where(*where)
        .values(status=to_status, updated_at=utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        logger.warning("Conflict on %s: status is no longer %s", unit.uid, from_status.value)
        raise ConcurrencyConflictError(unit.uid, from_status)

    entry = audit_service.record_transition(
        db,
        unit.uid,
        action=action,
        old_value=from_status.value,
        new_value=to_status.value,
        actor_id=actor_id,
        reason=reason,
        details=details,
    )
    db.refresh(unit)
    return entry

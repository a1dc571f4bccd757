from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from tag_custody.config import settings
from tag_custody.errors import NotFoundError
from tag_custody.models.inventory_unit import InventoryUnit, UnitKind, UnitStatus
from tag_custody.schemas.inventory import HubStockSummary, LotCount, StockCheck
from tag_custody.services.reservation_service import eligible_filter
from tag_custody.services.transitions import utcnow

QUARANTINED = "quarantined"


def get_unit(db: Session, uid: str) -> InventoryUnit:
    unit = db.query(InventoryUnit).filter(InventoryUnit.uid == uid).first()
    if not unit:
        raise NotFoundError("Unit", uid)
    return unit


def list_units(
    db: Session,
    hub_id: str | None = None,
    status: str | None = None,
    lot: str | None = None,
    kind: UnitKind | None = None,
    skip: int = 0,
    limit: int = 100,
) -> list[InventoryUnit]:
    """Filter units. status may also be "quarantined" (defective with the quarantine marker)."""
    q = db.query(InventoryUnit)
    if hub_id:
        q = q.filter(InventoryUnit.current_hub_id == hub_id)
    if status == QUARANTINED:
        q = q.filter(InventoryUnit.status == UnitStatus.DEFECTIVE, InventoryUnit.quarantined.is_(True))
    elif status:
        q = q.filter(InventoryUnit.status == UnitStatus(status))
    if lot:
        q = q.filter(InventoryUnit.lot == lot)
    if kind:
        q = q.filter(InventoryUnit.kind == kind)
    return q.order_by(InventoryUnit.received_at, InventoryUnit.uid).offset(skip).limit(limit).all()


def available_lots(db: Session, hub_id: str | None = None) -> list[LotCount]:
    q = db.query(InventoryUnit.lot, func.count(InventoryUnit.id))
    if hub_id:
        q = q.filter(InventoryUnit.current_hub_id == hub_id)
    rows = q.group_by(InventoryUnit.lot).order_by(InventoryUnit.lot).all()
    return [LotCount(lot=lot, count=count) for lot, count in rows]


def _installed_since(db: Session, hub_id: str, since: datetime) -> int:
    return (
        db.query(func.count(InventoryUnit.id))
        .filter(
            InventoryUnit.current_hub_id == hub_id,
            InventoryUnit.status == UnitStatus.INSTALLED,
            InventoryUnit.installed_at >= since,
        )
        .scalar()
        or 0
    )


def _rate_stock_health(summary: HubStockSummary) -> None:
    """Burn rate, days of cover and a traffic-light status, as shown on the stock dashboard."""
    summary.burn_rate_7d = round(summary.installed_last_7_days / 7, 1)
    summary.burn_rate_30d = round(summary.installed_last_30_days / 30, 1)
    burn = summary.installed_last_7_days / 7
    summary.days_of_cover = round(summary.available / burn) if burn > 0 else None

    threshold = max(summary.total * settings.LOW_STOCK_RATIO, settings.LOW_STOCK_MIN_UNITS)
    summary.threshold = round(threshold)
    stock_ratio = summary.available / threshold if threshold else 1.0
    cover = summary.days_of_cover

    if (cover is not None and cover < 5) or stock_ratio < 0.3:
        summary.status_color = "red"
    elif (cover is not None and cover < 10) or stock_ratio < 0.6:
        summary.status_color = "amber"
    else:
        summary.status_color = "green"
    summary.low_stock = summary.status_color == "red" or summary.available < threshold


def hub_stock_summary(db: Session, hub_id: str, now: datetime | None = None) -> HubStockSummary:
    rows = (
        db.query(InventoryUnit.status, InventoryUnit.quarantined, func.count(InventoryUnit.id))
        .filter(InventoryUnit.current_hub_id == hub_id)
        .group_by(InventoryUnit.status, InventoryUnit.quarantined)
        .all()
    )
    summary = HubStockSummary(hub_id=hub_id)
    for status, quarantined, count in rows:
        status = UnitStatus(status)
        setattr(summary, status.value, getattr(summary, status.value) + count)
        if status == UnitStatus.DEFECTIVE and quarantined:
            summary.quarantined += count
        summary.total += count

    summary.available_tested_good = (
        db.query(func.count(InventoryUnit.id))
        .filter(
            InventoryUnit.current_hub_id == hub_id,
            InventoryUnit.status == UnitStatus.AVAILABLE,
            eligible_filter(),
        )
        .scalar()
        or 0
    )

    now = now or utcnow()
    summary.installed_last_7_days = _installed_since(db, hub_id, now - timedelta(days=7))
    summary.installed_last_30_days = _installed_since(db, hub_id, now - timedelta(days=30))
    _rate_stock_health(summary)
    return summary


def hub_overview(db: Session, now: datetime | None = None) -> list[HubStockSummary]:
    """Stock summary for every hub currently holding units."""
    hub_ids = [
        row[0]
        for row in db.query(InventoryUnit.current_hub_id)
        .filter(InventoryUnit.current_hub_id.is_not(None))
        .distinct()
        .order_by(InventoryUnit.current_hub_id)
        .all()
    ]
    return [hub_stock_summary(db, hub_id, now) for hub_id in hub_ids]


def validate_hub_stock(db: Session, hub_id: str, required: int = 1, kind: UnitKind | None = None) -> StockCheck:
    """Gate check: can the hub satisfy ``required`` reservations right now?"""
    base = db.query(func.count(InventoryUnit.id)).filter(
        InventoryUnit.current_hub_id == hub_id,
        InventoryUnit.status == UnitStatus.AVAILABLE,
    )
    if kind:
        base = base.filter(InventoryUnit.kind == kind)
    available = base.scalar() or 0
    tested_good = base.filter(eligible_filter()).scalar() or 0

    suggestion = None
    if tested_good < required:
        suggestion = (
            f"Only {tested_good} eligible unit(s) available at hub {hub_id}. "
            "Consider transferring stock or using another hub."
        )
    return StockCheck(
        hub_id=hub_id,
        required=required,
        available=available,
        available_tested_good=tested_good,
        can_proceed=tested_good >= required,
        suggestion=suggestion,
    )

import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Enum, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from tag_custody.database import Base


class UnitKind(str, PyEnum):
    TAG = "tag"
    NFC_CHIP = "nfc_chip"


class UnitStatus(str, PyEnum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    INSTALLED = "installed"
    IN_TRANSIT = "in_transit"
    DEFECTIVE = "defective"
    RMA = "rma"


class InventoryUnit(Base):
    """One physical tag or NFC chip."""

    __tablename__ = "inventory_units"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    uid: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    kind: Mapped[str] = mapped_column(
        Enum(UnitKind, values_callable=lambda x: [e.value for e in x]),
        default=UnitKind.NFC_CHIP,
    )
    status: Mapped[str] = mapped_column(
        Enum(UnitStatus, values_callable=lambda x: [e.value for e in x]),
        default=UnitStatus.AVAILABLE,
        index=True,
    )
    lot: Mapped[str] = mapped_column(String, index=True, nullable=False)
    supplier_ref: Mapped[str] = mapped_column(String, default="")

    current_hub_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    assigned_shipment_id: Mapped[str | None] = mapped_column(String, nullable=True)

    # QA results; NFC chips must pass both before they can be reserved
    read_test_passed: Mapped[bool] = mapped_column(Boolean, default=False)
    write_test_passed: Mapped[bool] = mapped_column(Boolean, default=False)
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    test_notes: Mapped[str] = mapped_column(Text, default="")

    # Set once, never overwritten
    received_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rma_initiated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Quarantine marker: defective because the whole lot is blocked, not because of RMA
    quarantined: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    quarantine_reason: Mapped[str] = mapped_column(Text, default="")

    rma_reason: Mapped[str] = mapped_column(String, default="")
    rma_reference: Mapped[str] = mapped_column(Text, default="")

    # Open transfer this unit belongs to (null when not moving)
    transfer_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)

    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def status_value(self) -> str:
        return self.status if isinstance(self.status, str) else self.status.value

    @property
    def is_nfc(self) -> bool:
        return self.kind == UnitKind.NFC_CHIP

    @property
    def tests_passed(self) -> bool:
        return bool(self.read_test_passed and self.write_test_passed)

    @property
    def test_results(self) -> dict:
        return {
            "read_passed": self.read_test_passed,
            "write_passed": self.write_test_passed,
            "last_tested_at": self.last_tested_at,
            "notes": self.test_notes,
        }

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tag_custody.database import Base


class TransferStatus(str, PyEnum):
    INITIATED = "initiated"
    COMPLETED = "completed"


class Transfer(Base):
    __tablename__ = "inventory_transfers"

    id: Mapped[str] = mapped_column(String, primary_key=True)  # TRF-20260101120000-1A2B3C
    from_hub_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    to_hub_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    eta: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(
        Enum(TransferStatus, values_callable=lambda x: [e.value for e in x]),
        default=TransferStatus.INITIATED,
    )
    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    items: Mapped[list["TransferItem"]] = relationship(
        "TransferItem", back_populates="transfer", cascade="all, delete-orphan", order_by="TransferItem.id"
    )

    @property
    def uids(self) -> list[str]:
        return [item.uid for item in self.items]

    @property
    def pending_uids(self) -> list[str]:
        return [item.uid for item in self.items if item.is_pending]

    @property
    def arrived_uids(self) -> list[str]:
        return [item.uid for item in self.items if item.arrived_at is not None]

    @property
    def closed_uids(self) -> list[str]:
        return [item.uid for item in self.items if item.closed_at is not None]

    @property
    def is_resolved(self) -> bool:
        """Every unit has either arrived or been pulled out of transit."""
        return not self.pending_uids


class TransferItem(Base):
    __tablename__ = "inventory_transfer_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transfer_id: Mapped[str] = mapped_column(String, ForeignKey("inventory_transfers.id"), nullable=False)
    uid: Mapped[str] = mapped_column(String, index=True, nullable=False)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Set when the unit left transit without arriving (quarantine, defective, rma)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    close_reason: Mapped[str] = mapped_column(String, default="")

    transfer: Mapped["Transfer"] = relationship("Transfer", back_populates="items")

    @property
    def is_pending(self) -> bool:
        return self.arrived_at is None and self.closed_at is None

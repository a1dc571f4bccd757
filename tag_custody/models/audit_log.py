from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tag_custody.database import Base


class AuditLogEntry(Base):
    """Append-only record of every custody change. Rows are never updated or deleted."""

    __tablename__ = "inventory_audit_log"

    # Autoincrement id gives a strict order even when timestamps collide
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_table: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, index=True, nullable=False)  # UID or transfer id
    action: Mapped[str] = mapped_column(String, nullable=False)  # receive, assign, install, rma, ...
    field_name: Mapped[str] = mapped_column(String, default="status")
    old_value: Mapped[str | None] = mapped_column(String, nullable=True)
    new_value: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[str] = mapped_column(Text, default="{}")  # JSON
    actor_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    evidence: Mapped[list["AuditEvidence"]] = relationship(
        "AuditEvidence", back_populates="entry", cascade="all, delete-orphan", order_by="AuditEvidence.id"
    )


class AuditEvidence(Base):
    """File reference (photo, test report, supplier letter) backing an audit entry."""

    __tablename__ = "inventory_audit_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_log_id: Mapped[int] = mapped_column(Integer, ForeignKey("inventory_audit_log.id"), index=True, nullable=False)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_type: Mapped[str] = mapped_column(String, default="document")
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    entry: Mapped["AuditLogEntry"] = relationship("AuditLogEntry", back_populates="evidence")

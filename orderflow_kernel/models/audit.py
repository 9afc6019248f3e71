"""
Module: orderflow_kernel.models.audit
Responsibility: Append-only, hash-chained approval history of weight transfers.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Rows are never updated or deleted (db/immutability.py).
    - entry_hash = H(entity, id, action, payload_hash, prev_hash): each entry
      links to the previous entry of the same transfer.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from orderflow_kernel.db.base import Base, UUIDString


class TransferAuditEntry(Base):
    """One immutable entry in a transfer's approval history."""

    __tablename__ = "transfer_audit_entries"

    __table_args__ = (
        UniqueConstraint("weight_transfer_id", "seq", name="uq_transfer_audit_seq"),
        Index("ix_transfer_audit_transfer", "weight_transfer_id", "seq"),
    )

    weight_transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("weight_transfers.id"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<TransferAuditEntry {self.weight_transfer_id}#{self.seq} {self.action}>"

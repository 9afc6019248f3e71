"""
Module: orderflow_kernel.models.transfer
Responsibility: ORM persistence for weight transfers, their sequential
    approval steps and the paired inventory (pick/put) requests.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Valid status values are limited by check constraints; transitions are
      enforced by TransferCoordinator against domain.transfer.
    - UNIQUE(weight_transfer_id, approval_sequence): one step per position.
    - UNIQUE(weight_transfer_id, request_type): one request per side.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow_kernel.db.base import TrackedBase, UUIDString
from orderflow_kernel.domain.dtos import ApprovalStepInfo, TransferInfo
from orderflow_kernel.domain.transfer import (
    ApprovalStepStatus,
    InventoryRequestStatus,
    TransferStatus,
)


class WeightTransfer(TrackedBase):
    """A tracked movement of reserved weight between two warehouses."""

    __tablename__ = "weight_transfers"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'completed')",
            name="ck_weight_transfers_valid_status",
        ),
        CheckConstraint("weight_transferred > 0", name="ck_weight_transfers_weight"),
        Index("ix_weight_transfers_order", "order_id", "to_stage", "status"),
    )

    transfer_group_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    order_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=True
    )
    order_material_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("order_materials.id"), nullable=True
    )
    source_stock_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stocks.id"), nullable=False
    )
    destination_stock_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stocks.id"), nullable=True
    )
    source_reservation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )
    source_warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    destination_warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    weight_transferred: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    transfer_category: Mapped[str] = mapped_column(String(50), nullable=False)
    requires_sequential_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransferStatus.PENDING.value
    )
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    approvals: Mapped[list["WeightTransferApproval"]] = relationship(
        "WeightTransferApproval",
        back_populates="transfer",
        order_by="WeightTransferApproval.approval_sequence",
        lazy="selectin",
    )
    inventory_requests: Mapped[list["InventoryRequest"]] = relationship(
        "InventoryRequest",
        back_populates="transfer",
        lazy="selectin",
    )

    @property
    def transfer_status(self) -> TransferStatus:
        return TransferStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<WeightTransfer {self.id} {self.transfer_category} "
            f"{self.weight_transferred} status={self.status}>"
        )

    def to_dto(self) -> TransferInfo:
        return TransferInfo(
            id=self.id,
            transfer_group_id=self.transfer_group_id,
            order_id=self.order_id,
            order_material_id=self.order_material_id,
            source_warehouse_id=self.source_warehouse_id,
            destination_warehouse_id=self.destination_warehouse_id,
            weight_transferred=self.weight_transferred,
            transfer_category=self.transfer_category,
            requires_sequential_approval=self.requires_sequential_approval,
            status=self.status,
            steps=tuple(a.to_dto() for a in self.approvals),
        )


class WeightTransferApproval(TrackedBase):
    """One position in a transfer's approval chain."""

    __tablename__ = "weight_transfer_approvals"

    __table_args__ = (
        UniqueConstraint(
            "weight_transfer_id",
            "approval_sequence",
            name="uq_weight_transfer_approvals_sequence",
        ),
        CheckConstraint(
            "approval_status IN ('pending', 'approved', 'rejected')",
            name="ck_weight_transfer_approvals_valid_status",
        ),
        Index("ix_weight_transfer_approvals_approver", "approver_id", "approval_status"),
    )

    weight_transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("weight_transfers.id"), nullable=False
    )
    approval_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_role_level: Mapped[str] = mapped_column(String(100), nullable=False)
    # NULL either means "any holder of the role" (non-sequential) or an
    # unresolved level (sequential, see is_unresolved).
    approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    warehouse_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalStepStatus.PENDING.value
    )
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decided_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    transfer: Mapped["WeightTransfer"] = relationship(
        "WeightTransfer", back_populates="approvals"
    )

    @property
    def is_unresolved(self) -> bool:
        return (
            self.transfer.requires_sequential_approval
            and self.approver_id is None
            and self.approval_status == ApprovalStepStatus.PENDING.value
        )

    def to_dto(self) -> ApprovalStepInfo:
        return ApprovalStepInfo(
            approval_sequence=self.approval_sequence,
            approver_role_level=self.approver_role_level,
            approver_id=self.approver_id,
            approval_status=self.approval_status,
            decided_at=self.decided_at,
            is_final=self.is_final,
        )


class InventoryRequest(TrackedBase):
    """Physical pick (source) or put (destination) confirmation for a transfer."""

    __tablename__ = "inventory_requests"

    __table_args__ = (
        UniqueConstraint(
            "weight_transfer_id", "request_type", name="uq_inventory_requests_side"
        ),
        Index("ix_inventory_requests_warehouse_status", "warehouse_id", "status"),
    )

    weight_transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("weight_transfers.id"), nullable=False
    )
    request_type: Mapped[str] = mapped_column(String(30), nullable=False)
    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    weight: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InventoryRequestStatus.PENDING.value
    )
    counted_weight: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    confirmed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    transfer: Mapped["WeightTransfer"] = relationship(
        "WeightTransfer", back_populates="inventory_requests"
    )

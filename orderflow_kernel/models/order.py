"""
Module: orderflow_kernel.models.order
Responsibility: ORM persistence for orders, their per-stage records and the
    append-only stage history.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Order.current_stage is always a Stage value (the state machine is the
      only writer and parses through domain.stages).
    - One OrderStage row per (order, stage) -- UNIQUE constraint.
    - A completed or skipped OrderStage is frozen except for notes
      (db/immutability.py).
    - OrderStageHistory rows are append-only.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow_kernel.db.base import Base, TrackedBase, UUIDString
from orderflow_kernel.domain.dtos import OrderInfo, OrderStageInfo, StageHistoryInfo
from orderflow_kernel.domain.stages import OrderStatus, Stage, StageStatus


class Order(TrackedBase):
    """A customer order moving through the physical fulfilment stages."""

    __tablename__ = "orders"

    __table_args__ = (Index("ix_orders_status_stage", "status", "current_stage"),)

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.DRAFT.value
    )
    current_stage: Mapped[str] = mapped_column(
        String(50), nullable=False, default=Stage.CREATION.value
    )
    assigned_to: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    required_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Material requirement
    product_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    required_weight: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    source_warehouse_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    specifications: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    selected_materials: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    materials_selected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    estimated_material_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True
    )
    pricing_calculated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    stages: Mapped[list["OrderStage"]] = relationship(
        "OrderStage",
        back_populates="order",
        order_by="OrderStage.stage_order",
        lazy="selectin",
    )

    @property
    def stage(self) -> Stage:
        return Stage(self.current_stage)

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def stage_record(self, stage: Stage) -> "OrderStage | None":
        for record in self.stages:
            if record.stage_name == stage.value:
                return record
        return None

    def __repr__(self) -> str:
        return (
            f"<Order {self.order_number} status={self.status} "
            f"stage={self.current_stage}>"
        )

    def to_dto(self) -> OrderInfo:
        return OrderInfo(
            id=self.id,
            order_number=self.order_number,
            status=self.status,
            current_stage=self.current_stage,
            is_urgent=self.is_urgent,
            required_weight=self.required_weight,
            selected_materials=self.selected_materials,
            pricing_calculated=self.pricing_calculated,
            estimated_material_cost=self.estimated_material_cost,
            stages=tuple(s.to_dto() for s in self.stages),
        )


class OrderStage(TrackedBase):
    """Per-order record of one stage, created when the order first reaches it."""

    __tablename__ = "order_stages"

    __table_args__ = (
        UniqueConstraint("order_id", "stage_name", name="uq_order_stages_order_stage"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )
    stage_name: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value
    )
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    assigned_to: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    requires_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    approval_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    weight_input: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    weight_output: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    waste_weight: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="stages")

    @property
    def stage(self) -> Stage:
        return Stage(self.stage_name)

    @property
    def stage_status(self) -> StageStatus:
        return StageStatus(self.status)

    def to_dto(self) -> OrderStageInfo:
        return OrderStageInfo(
            stage_name=self.stage_name,
            stage_order=self.stage_order,
            status=self.status,
            requires_approval=self.requires_approval,
            approval_status=self.approval_status,
            started_at=self.started_at,
            completed_at=self.completed_at,
            weight_input=self.weight_input,
            weight_output=self.weight_output,
            waste_weight=self.waste_weight,
            notes=self.notes,
        )


class OrderStageHistory(Base):
    """Append-only log of every stage action on an order."""

    __tablename__ = "order_stage_history"

    __table_args__ = (
        UniqueConstraint("order_id", "seq", name="uq_order_stage_history_seq"),
        Index("ix_order_stage_history_order", "order_id", "occurred_at"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )
    # Per-order position; the order row is locked while history is appended.
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> StageHistoryInfo:
        return StageHistoryInfo(
            action=self.action,
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            actor_id=self.actor_id,
            reason=self.reason,
            occurred_at=self.occurred_at,
        )

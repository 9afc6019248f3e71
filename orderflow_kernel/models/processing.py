"""
Module: orderflow_kernel.models.processing
Responsibility: ORM persistence for sorting/cutting units of work and the
    waste they report.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - One ProcessingUnit per (order material, stage) -- UNIQUE constraint.
    - Weights on a unit are written once, by SortingProcessor.record, after
      the balance check has passed.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from orderflow_kernel.db.base import TrackedBase, UUIDString
from orderflow_kernel.domain.dtos import ProcessingUnitInfo


class ProcessingUnitStatus(str, Enum):
    AWAITING_WEIGHTS = "awaiting_weights"
    READY_FOR_TRANSFER = "ready_for_transfer"
    TRANSFERRED = "transferred"


class ProcessingUnit(TrackedBase):
    """The sorting or cutting work for one allocated material."""

    __tablename__ = "processing_units"

    __table_args__ = (
        UniqueConstraint(
            "order_material_id", "stage", name="uq_processing_units_material_stage"
        ),
        Index("ix_processing_units_order_stage", "order_id", "stage"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )
    order_material_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("order_materials.id"), nullable=False
    )
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    expected_weight: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    original_weight: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True
    )
    # Stored as strings so Decimal precision survives JSON.
    output_weights: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    total_output_weight: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True
    )
    waste_weight: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    waste_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ProcessingUnitStatus.AWAITING_WEIGHTS.value
    )
    performed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    recorded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def outputs(self) -> tuple[Decimal, ...]:
        return tuple(Decimal(w) for w in self.output_weights or ())

    def to_dto(self) -> ProcessingUnitInfo:
        return ProcessingUnitInfo(
            id=self.id,
            order_id=self.order_id,
            order_material_id=self.order_material_id,
            stage=self.stage,
            expected_weight=self.expected_weight,
            original_weight=self.original_weight,
            output_weights=self.outputs,
            waste_weight=self.waste_weight,
            status=self.status,
        )


class Waste(TrackedBase):
    """Weight lost during sorting or cutting."""

    __tablename__ = "waste"

    __table_args__ = (Index("ix_waste_product_stage", "product_id", "stage"),)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    processing_unit_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("processing_units.id"), nullable=True
    )
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reported_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

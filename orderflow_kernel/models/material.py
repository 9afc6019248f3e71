"""
Module: orderflow_kernel.models.material
Responsibility: ORM persistence for the stock lots allocated to an order.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - allocated_weight is the weight originally reserved and never changes.
    - reserved_weight is the weight the order still holds through
      reservation_id; it follows the material through processing (waste is
      written off) and transfers (the reservation moves lots).
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow_kernel.db.base import TrackedBase, UUIDString
from orderflow_kernel.domain.dtos import MaterialAllocation
from orderflow_kernel.models.stock import Stock


class OrderMaterialStatus(str, Enum):
    RESERVED = "reserved"
    RELEASED = "released"
    CONSUMED = "consumed"


class OrderMaterial(TrackedBase):
    """One stock lot allocated to an order by the material selector."""

    __tablename__ = "order_materials"

    __table_args__ = (Index("ix_order_materials_order", "order_id", "status"),)

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )
    stock_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stocks.id"), nullable=False
    )
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reservation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stock_reservations.id"), nullable=True
    )
    allocated_weight: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reserved_weight: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    selection_mode: Mapped[str] = mapped_column(String(10), nullable=False)
    specifications: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderMaterialStatus.RESERVED.value
    )

    stock: Mapped[Stock] = relationship(Stock, lazy="joined")

    def to_allocation(self) -> MaterialAllocation:
        return MaterialAllocation(
            order_material_id=self.id,
            stock_id=self.stock_id,
            allocated_weight=self.allocated_weight,
            unit_cost=self.unit_cost,
            expiry_date=self.stock.expiry_date if self.stock is not None else None,
        )

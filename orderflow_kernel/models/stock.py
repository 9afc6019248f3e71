"""
Module: orderflow_kernel.models.stock
Responsibility: ORM persistence for stock lots, reservations and the
    append-only stock movement log.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - 0 <= reserved_quantity <= quantity (DB check constraints; the ledger
      service checks first so the constraint is never the reporting path).
    - available_quantity has exactly one definition: the hybrid property on
      Stock, usable both on instances and inside SQL filters/ordering.
    - StockMovement rows are append-only (db/immutability.py).

Failure modes:
    - IntegrityError if a raw write bypasses the ledger and breaks a check.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Numeric,
    String,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column

from orderflow_kernel.db.base import Base, TrackedBase, UUIDString
from orderflow_kernel.domain.dtos import ReservationInfo, StockInfo


class Stock(TrackedBase):
    """
    One lot of a product in a warehouse.

    Contract:
        quantity is the on-hand weight; reserved_quantity is the part held
        for orders.  Only StockLedger mutates either column.
    """

    __tablename__ = "stocks"

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stocks_quantity_non_negative"),
        CheckConstraint(
            "reserved_quantity >= 0", name="ck_stocks_reserved_non_negative"
        ),
        CheckConstraint(
            "reserved_quantity <= quantity", name="ck_stocks_reserved_within_quantity"
        ),
        Index("ix_stocks_product_warehouse", "product_id", "warehouse_id"),
        Index("ix_stocks_selection_order", "product_id", "expiry_date", "unit_cost"),
    )

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    reserved_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    batch_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    specifications: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    @hybrid_property
    def available_quantity(self) -> Decimal:
        """On-hand minus reserved.  The only definition of availability."""
        return self.quantity - self.reserved_quantity

    def is_expired(self, today: date) -> bool:
        return self.expiry_date is not None and self.expiry_date < today

    def __repr__(self) -> str:
        return (
            f"<Stock {self.id} product={self.product_id} "
            f"qty={self.quantity} reserved={self.reserved_quantity}>"
        )

    def to_dto(self) -> StockInfo:
        return StockInfo(
            id=self.id,
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            quantity=self.quantity,
            reserved_quantity=self.reserved_quantity,
            available_quantity=self.available_quantity,
            unit_cost=self.unit_cost,
            batch_number=self.batch_number,
            expiry_date=self.expiry_date,
            is_active=self.is_active,
        )


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    COMMITTED = "committed"
    CONSUMED = "consumed"


class StockReservation(TrackedBase):
    """
    A soft hold on a stock lot for an order.

    quantity is the outstanding held amount; the sum of ACTIVE reservation
    quantities on a lot equals the lot's reserved_quantity.
    """

    __tablename__ = "stock_reservations"

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_reservations_quantity"),
        Index("ix_stock_reservations_order_status", "order_id", "status"),
        Index("ix_stock_reservations_stock", "stock_id"),
    )

    stock_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stocks.id"), nullable=False
    )
    order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    order_material_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReservationStatus.ACTIVE.value
    )

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE.value

    def to_dto(self) -> ReservationInfo:
        return ReservationInfo(
            id=self.id,
            stock_id=self.stock_id,
            order_id=self.order_id,
            quantity=self.quantity,
            status=self.status,
        )


class MovementType(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    RESERVE = "reserve"
    RELEASE = "release"
    COMMIT_OUT = "commit_out"
    COMMIT_IN = "commit_in"
    CONSUME = "consume"


class StockMovement(Base):
    """Append-only record of one ledger mutation and its resulting balances."""

    __tablename__ = "stock_movements"

    __table_args__ = (Index("ix_stock_movements_stock", "stock_id", "occurred_at"),)

    stock_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stocks.id"), nullable=False
    )
    movement_type: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reserved_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

"""
Module: orderflow_kernel.selectors.stock_selector
Responsibility: Read-only stock queries: material selection candidates,
    low-stock lots and reservations held by an order.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Availability is always Stock.available_quantity (the hybrid property),
      both when filtering in SQL and when reading values back.
    - Candidate order is deterministic: soonest expiry first (no expiry
      last), then lowest unit cost, then stock id.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from orderflow_kernel.domain.dtos import ReservationInfo, StockInfo
from orderflow_kernel.models.stock import ReservationStatus, Stock, StockReservation
from orderflow_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")


def specifications_match(required: dict[str, Any], offered: dict[str, Any]) -> bool:
    """
    True when a lot satisfies an order's required specifications.

    Keys prefixed ``min_`` are lower bounds on the unprefixed attribute
    (``min_width: 100`` accepts a lot with ``width: 120``); every other key
    must match exactly.
    """
    for key, wanted in (required or {}).items():
        if wanted is None:
            continue
        if key.startswith("min_"):
            have = offered.get(key[4:])
            if have is None or Decimal(str(have)) < Decimal(str(wanted)):
                return False
        elif offered.get(key) != wanted:
            return False
    return True


class StockSelector(BaseSelector):
    """Read-only access to stock lots and reservations."""

    def candidates(
        self,
        product_id: UUID,
        today: date,
        warehouse_id: UUID | None = None,
        specifications: dict[str, Any] | None = None,
    ) -> list[StockInfo]:
        """
        Eligible lots for auto selection, in allocation order.

        Eligible: active, same product, not expired as of ``today``, with
        positive availability, in ``warehouse_id`` when given, and matching
        ``specifications``.
        """
        stmt = (
            select(Stock)
            .where(
                Stock.product_id == product_id,
                Stock.is_active.is_(True),
                Stock.available_quantity > _ZERO,
                (Stock.expiry_date.is_(None)) | (Stock.expiry_date >= today),
            )
            .order_by(
                Stock.expiry_date.is_(None),
                Stock.expiry_date,
                Stock.unit_cost,
                Stock.id,
            )
        )
        if warehouse_id is not None:
            stmt = stmt.where(Stock.warehouse_id == warehouse_id)

        rows = self.session.execute(stmt).scalars().all()
        return [
            row.to_dto()
            for row in rows
            if specifications_match(specifications or {}, row.specifications or {})
        ]

    def active_reservations_for_order(self, order_id: UUID) -> list[ReservationInfo]:
        stmt = (
            select(StockReservation)
            .where(
                StockReservation.order_id == order_id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .order_by(StockReservation.stock_id, StockReservation.id)
        )
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    def reserved_total_for_order(self, order_id: UUID) -> Decimal:
        stmt = select(func.coalesce(func.sum(StockReservation.quantity), 0)).where(
            StockReservation.order_id == order_id,
            StockReservation.status == ReservationStatus.ACTIVE.value,
        )
        return Decimal(str(self.session.execute(stmt).scalar_one()))

    def low_stock(self, threshold: Decimal) -> list[StockInfo]:
        """Active lots whose availability is at or below ``threshold``."""
        stmt = (
            select(Stock)
            .where(Stock.is_active.is_(True), Stock.available_quantity <= threshold)
            .order_by(Stock.available_quantity, Stock.id)
        )
        return [row.to_dto() for row in self.session.execute(stmt).scalars().all()]

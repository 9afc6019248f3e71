"""
MaterialSelector -- allocate stock lots to an order.

Responsibility:
    Chooses the stock lots that satisfy an order's material requirement,
    either automatically (soonest expiry, then lowest unit cost, then stock
    id; first-fit across as many lots as needed) or from an explicit list
    of (stock, weight) lines, and reserves them through StockLedger.

Architecture position:
    Kernel > Services.  Called by OrderStageMachine when an order enters
    (or sits at) the material reservation stage.

Invariants enforced:
    - All-or-nothing: every reservation of one call happens inside a single
      SAVEPOINT.  A shortage discovered at any point rolls back the
      reservations already made in the same call.
    - Order.selected_materials is set only after every reservation
      succeeded.
    - Eligibility is decided from Stock.available_quantity only.

Failure modes:
    - InsufficientMaterialError: eligible availability is below the
      required weight, or a manual line exceeds its lot's availability.
    - InvalidMaterialSelectionError: a manual line names a missing,
      inactive, expired or wrong-product lot, or a non-positive weight.
    - StagePreconditionNotMetError: materials were already selected.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock
from orderflow_kernel.domain.dtos import (
    AvailabilityReport,
    MaterialSelectionLine,
    SelectionResult,
)
from orderflow_kernel.exceptions import (
    InsufficientMaterialError,
    InsufficientStockError,
    InvalidMaterialSelectionError,
    InvalidQuantityError,
    StagePreconditionNotMetError,
)
from orderflow_kernel.logging_config import get_logger
from orderflow_kernel.models.material import OrderMaterial, OrderMaterialStatus
from orderflow_kernel.models.order import Order
from orderflow_kernel.models.stock import ReservationStatus, Stock, StockReservation
from orderflow_kernel.selectors.stock_selector import StockSelector
from orderflow_kernel.services.base import BaseService
from orderflow_kernel.services.notifications import NotificationOutbox
from orderflow_kernel.services.stock_ledger import StockLedger

logger = get_logger("services.material_selector")

_ZERO = Decimal("0")

AUTO = "auto"
MANUAL = "manual"


class MaterialSelector(BaseService):
    """
    Allocates and reserves stock for orders.

    Contract:
        ``select`` returns a frozen SelectionResult; ORM rows stay inside the
        kernel.  Flushes only.
    """

    def __init__(
        self,
        session: Session,
        ledger: StockLedger,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        super().__init__(session, clock, outbox)
        self.ledger = ledger
        self._stocks = StockSelector(session)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(
        self,
        order: Order,
        actor_id: UUID,
        auto: bool = True,
        selections: Sequence[MaterialSelectionLine] | None = None,
    ) -> SelectionResult:
        """
        Reserve material for ``order``.

        With ``auto`` the candidates come from StockSelector.candidates;
        otherwise ``selections`` lists the lots and weights to reserve.
        """
        if order.selected_materials:
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage, "materials are already selected"
            )
        required = order.required_weight
        if required is None or required <= _ZERO:
            raise InvalidQuantityError(required, "select_materials")

        if auto:
            materials = self._select_auto(order, required, actor_id)
            mode = AUTO
        else:
            materials = self._select_manual(order, required, list(selections or ()), actor_id)
            mode = MANUAL

        total = sum((m.allocated_weight for m in materials), _ZERO)
        cost = sum((m.unit_cost * m.allocated_weight for m in materials), _ZERO)

        order.selected_materials = True
        order.materials_selected_at = self.clock.now()
        order.estimated_material_cost = cost
        order.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "materials_selected",
            extra={
                "order_id": str(order.id),
                "mode": mode,
                "lot_count": len(materials),
                "total_weight": str(total),
                "estimated_cost": str(cost),
            },
        )
        return SelectionResult(
            order_id=order.id,
            mode=mode,
            allocations=tuple(m.to_allocation() for m in materials),
            total_weight=total,
            estimated_cost=cost,
        )

    def _select_auto(
        self, order: Order, required: Decimal, actor_id: UUID
    ) -> list[OrderMaterial]:
        if order.product_id is None:
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage, "order has no product to select"
            )
        candidates = self._stocks.candidates(
            order.product_id,
            self.clock.today(),
            warehouse_id=order.source_warehouse_id,
            specifications=order.specifications,
        )
        available = sum((c.available_quantity for c in candidates), _ZERO)
        if available < required:
            logger.info(
                "material_shortage",
                extra={
                    "order_id": str(order.id),
                    "required": str(required),
                    "available": str(available),
                },
            )
            raise InsufficientMaterialError(str(order.id), required, available)

        materials: list[OrderMaterial] = []
        with self.session.begin_nested():
            remaining = required
            for candidate in candidates:
                if remaining <= _ZERO:
                    break
                stock = self.ledger.lock_stock(candidate.id)
                take = min(remaining, stock.available_quantity)
                if take <= _ZERO:
                    continue
                materials.append(
                    self._allocate(order, stock, take, actor_id, AUTO, order.specifications)
                )
                remaining -= take

            # Availability can shrink between the candidate query and the locks.
            if remaining > _ZERO:
                raise InsufficientMaterialError(
                    str(order.id), required, required - remaining
                )
        return materials

    def _select_manual(
        self,
        order: Order,
        required: Decimal,
        lines: list[MaterialSelectionLine],
        actor_id: UUID,
    ) -> list[OrderMaterial]:
        today = self.clock.today()
        requested: dict[UUID, Decimal] = defaultdict(lambda: _ZERO)
        stocks: dict[UUID, Stock] = {}

        for line in lines:
            stock = self.session.get(Stock, line.stock_id)
            if stock is None:
                raise InvalidMaterialSelectionError(str(line.stock_id), "stock lot not found")
            if not stock.is_active:
                raise InvalidMaterialSelectionError(str(stock.id), "stock lot is inactive")
            if stock.is_expired(today):
                raise InvalidMaterialSelectionError(str(stock.id), "stock lot is expired")
            if order.product_id is not None and stock.product_id != order.product_id:
                raise InvalidMaterialSelectionError(
                    str(stock.id), "stock lot is a different product"
                )
            weight = line.allocated_weight
            if not isinstance(weight, Decimal) or not weight.is_finite() or weight <= _ZERO:
                raise InvalidMaterialSelectionError(
                    str(stock.id), "allocated weight must be a positive Decimal"
                )
            requested[stock.id] += line.allocated_weight
            stocks[stock.id] = stock

        total = sum(requested.values(), _ZERO)
        if total < required:
            raise InsufficientMaterialError(str(order.id), required, total)
        for stock_id, weight in requested.items():
            available = stocks[stock_id].available_quantity
            if weight > available:
                raise InsufficientMaterialError(str(order.id), weight, available)

        materials: list[OrderMaterial] = []
        try:
            with self.session.begin_nested():
                for line in lines:
                    stock = self.ledger.lock_stock(line.stock_id)
                    materials.append(
                        self._allocate(
                            order,
                            stock,
                            line.allocated_weight,
                            actor_id,
                            MANUAL,
                            line.specifications or order.specifications,
                        )
                    )
        except InsufficientStockError as exc:
            raise InsufficientMaterialError(
                str(order.id), exc.requested, exc.available
            ) from exc
        return materials

    def _allocate(
        self,
        order: Order,
        stock: Stock,
        weight: Decimal,
        actor_id: UUID,
        mode: str,
        specifications: dict | None,
    ) -> OrderMaterial:
        material = OrderMaterial(
            order_id=order.id,
            stock_id=stock.id,
            product_id=stock.product_id,
            allocated_weight=weight,
            reserved_weight=weight,
            unit_cost=stock.unit_cost,
            selection_mode=mode,
            specifications=dict(specifications or {}),
            status=OrderMaterialStatus.RESERVED.value,
            created_by_id=actor_id,
        )
        self.session.add(material)
        self.session.flush()

        reservation = self.ledger.reserve(
            stock, weight, actor_id, order_id=order.id, order_material_id=material.id
        )
        material.reservation_id = reservation.id
        self.session.flush()
        return material

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def availability_report(self, order: Order) -> AvailabilityReport:
        """Required versus eligible available weight.  Read-only."""
        if order.product_id is None:
            return AvailabilityReport(order.id, order.required_weight, _ZERO, 0)
        candidates = self._stocks.candidates(
            order.product_id,
            self.clock.today(),
            warehouse_id=order.source_warehouse_id,
            specifications=order.specifications,
        )
        return AvailabilityReport(
            order_id=order.id,
            required_weight=order.required_weight,
            available_weight=sum((c.available_quantity for c in candidates), _ZERO),
            candidate_count=len(candidates),
        )

    # ------------------------------------------------------------------
    # Release and consumption
    # ------------------------------------------------------------------

    def materials_for(self, order: Order, status: OrderMaterialStatus | None = None) -> list[OrderMaterial]:
        stmt = select(OrderMaterial).where(OrderMaterial.order_id == order.id)
        if status is not None:
            stmt = stmt.where(OrderMaterial.status == status.value)
        return list(
            self.session.execute(
                stmt.order_by(OrderMaterial.created_at, OrderMaterial.id)
            ).scalars().all()
        )

    def _active_reservations(self, order: Order) -> list[StockReservation]:
        stmt = (
            select(StockReservation)
            .where(
                StockReservation.order_id == order.id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .order_by(StockReservation.stock_id, StockReservation.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def release_order_materials(
        self, order: Order, actor_id: UUID, reason: str | None = None
    ) -> Decimal:
        """Release every active reservation of the order.  Returns the weight released."""
        released = _ZERO
        for reservation in self._active_reservations(order):
            if reservation.quantity > _ZERO:
                released += reservation.quantity
                self.ledger.release_reservation(reservation.id, actor_id, reason=reason)
        for material in self.materials_for(order, OrderMaterialStatus.RESERVED):
            material.status = OrderMaterialStatus.RELEASED.value
            material.reserved_weight = _ZERO
            material.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "order_materials_released",
            extra={"order_id": str(order.id), "released_weight": str(released)},
        )
        return released

    def consume_order_materials(
        self, order: Order, actor_id: UUID, reason: str | None = None
    ) -> Decimal:
        """Write off the order's remaining reserved weight (goods delivered)."""
        consumed = _ZERO
        for reservation in self._active_reservations(order):
            if reservation.quantity > _ZERO:
                consumed += reservation.quantity
                self.ledger.consume_reserved(
                    reservation.stock_id,
                    reservation.quantity,
                    actor_id,
                    reservation_id=reservation.id,
                    reason=reason,
                )
        for material in self.materials_for(order, OrderMaterialStatus.RESERVED):
            material.status = OrderMaterialStatus.CONSUMED.value
            material.reserved_weight = _ZERO
            material.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "order_materials_consumed",
            extra={"order_id": str(order.id), "consumed_weight": str(consumed)},
        )
        return consumed

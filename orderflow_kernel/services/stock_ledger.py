"""
orderflow_kernel.services.stock_ledger -- Stock reservation ledger.

Responsibility:
    The only writer of Stock.quantity and Stock.reserved_quantity.  Provides
    atomic reserve / release / commit-movement / consume operations plus
    on-hand adjustments outside the reservation flow, and records every
    mutation in the append-only StockMovement log.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, selectors/.

Invariants enforced:
    - 0 <= reserved_quantity <= quantity before and after every operation.
      Checks run on a row locked with SELECT ... FOR UPDATE (re-read with
      populate_existing), so two concurrent reservations against one lot
      serialize and the loser sees the winner's reservation.
    - commit_movement locks both lots in a fixed (id) order and applies all
      four field changes inside one SAVEPOINT: all or nothing.
    - Validation happens before mutation; a failed call leaves the lot
      unchanged.
    - The sum of ACTIVE reservation quantities on a lot equals its
      reserved_quantity when all reservations go through this service.

Failure modes:
    - InvalidQuantityError for zero, negative or non-Decimal quantities.
    - InsufficientStockError when reserve exceeds availability or
      remove_stock would drive quantity below reserved_quantity.
    - OverReleaseError when release/commit/consume exceeds what is reserved.
    - StockNotFoundError / ReservationNotFoundError for unknown ids.
    - UnauthorizedError from require_stock_access for actors without a
      stock role or permission.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock
from orderflow_kernel.domain.ports import AuthorizationPort
from orderflow_kernel.exceptions import (
    InsufficientStockError,
    InvalidQuantityError,
    OverReleaseError,
    ReservationNotFoundError,
    StockNotFoundError,
    UnauthorizedError,
)
from orderflow_kernel.logging_config import get_logger
from orderflow_kernel.models.stock import (
    MovementType,
    ReservationStatus,
    Stock,
    StockMovement,
    StockReservation,
)
from orderflow_kernel.services.base import BaseService
from orderflow_kernel.services.notifications import NotificationOutbox

logger = get_logger("services.stock_ledger")

_ZERO = Decimal("0")


def _stock_id(stock: Stock | UUID) -> UUID:
    return stock.id if isinstance(stock, Stock) else stock


def _require_positive(quantity: Decimal, operation: str) -> None:
    if not isinstance(quantity, Decimal) or not quantity.is_finite() or quantity <= _ZERO:
        raise InvalidQuantityError(quantity, operation)


def _require_non_negative(quantity: Decimal, operation: str) -> None:
    if not isinstance(quantity, Decimal) or not quantity.is_finite() or quantity < _ZERO:
        raise InvalidQuantityError(quantity, operation)


class StockLedger(BaseService):
    """Atomic stock quantity and reservation mutations."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
        low_stock_threshold: Decimal = _ZERO,
        authorization: AuthorizationPort | None = None,
        stock_roles: frozenset[str] = frozenset(),
        stock_permissions: frozenset[str] = frozenset(),
    ):
        super().__init__(session, clock, outbox)
        self.low_stock_threshold = low_stock_threshold
        self.authorization = authorization
        self.stock_roles = stock_roles
        self.stock_permissions = stock_permissions

    def require_stock_access(self, actor_id: UUID, action: str) -> None:
        """
        Gate for direct stock entries (receipts, manual reservations,
        adjustments).  Stage and transfer flows move stock through their own
        role checks and do not come through here.

        Raises:
            UnauthorizedError: no authorization port is configured, or the
                actor holds none of the stock roles or permissions.
        """
        auth = self.authorization
        if auth is not None and (
            any(auth.has_role(actor_id, role) for role in sorted(self.stock_roles))
            or any(auth.has_permission(actor_id, p) for p in sorted(self.stock_permissions))
        ):
            return
        logger.warning(
            "stock_access_denied",
            extra={"actor_id": str(actor_id), "action": action},
        )
        raise UnauthorizedError(
            str(actor_id), action,
            f"requires one of {sorted(self.stock_roles | self.stock_permissions)}",
        )

    # ------------------------------------------------------------------
    # Loading and locking
    # ------------------------------------------------------------------

    def get_stock(self, stock_id: UUID) -> Stock:
        stock = self.session.get(Stock, stock_id)
        if stock is None:
            raise StockNotFoundError(str(stock_id))
        return stock

    def lock_stock(self, stock: Stock | UUID) -> Stock:
        """Row-lock a lot and refresh it from the database."""
        stock_id = _stock_id(stock)
        locked = self.session.execute(
            select(Stock)
            .where(Stock.id == stock_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if locked is None:
            raise StockNotFoundError(str(stock_id))
        return locked

    def lock_reservation(self, reservation_id: UUID) -> StockReservation:
        """Row-lock an ACTIVE reservation."""
        reservation = self.session.execute(
            select(StockReservation)
            .where(StockReservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if reservation is None or not reservation.is_active:
            raise ReservationNotFoundError(str(reservation_id))
        return reservation

    # ------------------------------------------------------------------
    # Reservation flow
    # ------------------------------------------------------------------

    def reserve(
        self,
        stock: Stock | UUID,
        quantity: Decimal,
        actor_id: UUID,
        order_id: UUID | None = None,
        order_material_id: UUID | None = None,
    ) -> StockReservation:
        """
        Hold ``quantity`` of a lot.

        Raises:
            InsufficientStockError: quantity exceeds available_quantity.
        """
        _require_positive(quantity, "reserve")
        locked = self.lock_stock(stock)

        available = locked.available_quantity
        if quantity > available:
            logger.info(
                "stock_reservation_refused",
                extra={
                    "stock_id": str(locked.id),
                    "requested": str(quantity),
                    "available": str(available),
                },
            )
            raise InsufficientStockError(str(locked.id), quantity, available)

        locked.reserved_quantity = locked.reserved_quantity + quantity
        reservation = StockReservation(
            stock_id=locked.id,
            order_id=order_id,
            order_material_id=order_material_id,
            quantity=quantity,
            status=ReservationStatus.ACTIVE.value,
            created_by_id=actor_id,
        )
        self.session.add(reservation)
        self.session.flush()

        self._record(locked, MovementType.RESERVE, quantity, actor_id, "reservation", reservation.id)
        self._alert_if_low(locked)

        logger.info(
            "stock_reserved",
            extra={
                "stock_id": str(locked.id),
                "reservation_id": str(reservation.id),
                "quantity": str(quantity),
                "reserved_after": str(locked.reserved_quantity),
            },
        )
        return reservation

    def release(
        self,
        stock: Stock | UUID,
        quantity: Decimal,
        actor_id: UUID,
        reservation_id: UUID | None = None,
        reason: str | None = None,
    ) -> Stock:
        """
        Give back ``quantity`` of reserved weight on a lot.

        When ``reservation_id`` is given the reservation is reduced too and
        must cover ``quantity``.

        Raises:
            OverReleaseError: quantity exceeds reserved_quantity (or the
                reservation's outstanding quantity).
        """
        _require_positive(quantity, "release")
        locked = self.lock_stock(stock)
        reservation = self._take_from_reservation(
            reservation_id, locked, quantity, ReservationStatus.RELEASED
        )

        if quantity > locked.reserved_quantity:
            raise OverReleaseError(str(locked.id), quantity, locked.reserved_quantity)

        locked.reserved_quantity = locked.reserved_quantity - quantity
        self.session.flush()
        self._record(
            locked,
            MovementType.RELEASE,
            quantity,
            actor_id,
            "reservation" if reservation is not None else None,
            reservation.id if reservation is not None else None,
            reason,
        )

        logger.info(
            "stock_released",
            extra={
                "stock_id": str(locked.id),
                "quantity": str(quantity),
                "reserved_after": str(locked.reserved_quantity),
            },
        )
        return locked

    def release_reservation(
        self,
        reservation_id: UUID,
        actor_id: UUID,
        quantity: Decimal | None = None,
        reason: str | None = None,
    ) -> StockReservation:
        """Release all (default) or part of an active reservation."""
        reservation = self.lock_reservation(reservation_id)
        amount = reservation.quantity if quantity is None else quantity
        self.release(reservation.stock_id, amount, actor_id, reservation.id, reason)
        return reservation

    def commit_movement(
        self,
        from_stock: Stock | UUID,
        to_stock: Stock | UUID,
        quantity: Decimal,
        actor_id: UUID,
        reservation_id: UUID | None = None,
        re_reserve: bool = False,
        order_id: UUID | None = None,
        order_material_id: UUID | None = None,
    ) -> StockReservation | None:
        """
        Move reserved weight from one lot to another.

        Source: quantity and reserved_quantity both decrease.  Destination:
        quantity increases, and with ``re_reserve`` reserved_quantity too,
        under a new reservation that is returned.

        Raises:
            OverReleaseError: the source does not hold ``quantity`` reserved.
        """
        _require_positive(quantity, "commit_movement")
        from_id, to_id = _stock_id(from_stock), _stock_id(to_stock)
        if from_id == to_id:
            raise ValueError("commit_movement requires two different stock lots")

        with self.session.begin_nested():
            # Fixed lock order: two opposite movements cannot deadlock.
            first, second = sorted((from_id, to_id), key=str)
            locked = {first: self.lock_stock(first), second: self.lock_stock(second)}
            source, destination = locked[from_id], locked[to_id]

            self._take_from_reservation(
                reservation_id, source, quantity, ReservationStatus.COMMITTED
            )
            if quantity > source.reserved_quantity:
                raise OverReleaseError(str(source.id), quantity, source.reserved_quantity)

            source.quantity = source.quantity - quantity
            source.reserved_quantity = source.reserved_quantity - quantity
            destination.quantity = destination.quantity + quantity

            new_reservation = None
            if re_reserve:
                destination.reserved_quantity = destination.reserved_quantity + quantity
                new_reservation = StockReservation(
                    stock_id=destination.id,
                    order_id=order_id,
                    order_material_id=order_material_id,
                    quantity=quantity,
                    status=ReservationStatus.ACTIVE.value,
                    created_by_id=actor_id,
                )
                self.session.add(new_reservation)

            self.session.flush()
            self._record(source, MovementType.COMMIT_OUT, quantity, actor_id, "stock", destination.id)
            self._record(destination, MovementType.COMMIT_IN, quantity, actor_id, "stock", source.id)

        self._alert_if_low(source)
        logger.info(
            "stock_movement_committed",
            extra={
                "from_stock_id": str(source.id),
                "to_stock_id": str(destination.id),
                "quantity": str(quantity),
                "re_reserved": re_reserve,
            },
        )
        return new_reservation

    def consume_reserved(
        self,
        stock: Stock | UUID,
        quantity: Decimal,
        actor_id: UUID,
        reservation_id: UUID | None = None,
        reason: str | None = None,
    ) -> Stock:
        """
        Write off reserved weight that physically left the lot (waste,
        delivered goods): quantity and reserved_quantity decrease together.
        """
        _require_positive(quantity, "consume_reserved")
        locked = self.lock_stock(stock)
        reservation = self._take_from_reservation(
            reservation_id, locked, quantity, ReservationStatus.CONSUMED
        )
        if quantity > locked.reserved_quantity:
            raise OverReleaseError(str(locked.id), quantity, locked.reserved_quantity)

        locked.quantity = locked.quantity - quantity
        locked.reserved_quantity = locked.reserved_quantity - quantity
        self.session.flush()
        self._record(
            locked,
            MovementType.CONSUME,
            quantity,
            actor_id,
            "reservation" if reservation is not None else None,
            reservation.id if reservation is not None else None,
            reason,
        )
        logger.info(
            "stock_consumed",
            extra={
                "stock_id": str(locked.id),
                "quantity": str(quantity),
                "quantity_after": str(locked.quantity),
            },
        )
        return locked

    # ------------------------------------------------------------------
    # On-hand adjustments (receiving, counts)
    # ------------------------------------------------------------------

    def add_stock(
        self,
        stock: Stock | UUID,
        quantity: Decimal,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Stock:
        _require_positive(quantity, "add_stock")
        locked = self.lock_stock(stock)
        locked.quantity = locked.quantity + quantity
        self.session.flush()
        self._record(locked, MovementType.ADD, quantity, actor_id, reason=reason)
        logger.info(
            "stock_added",
            extra={"stock_id": str(locked.id), "quantity": str(quantity)},
        )
        return locked

    def remove_stock(
        self,
        stock: Stock | UUID,
        quantity: Decimal,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Stock:
        """
        Remove on-hand weight that is not reserved.

        Raises:
            InsufficientStockError: quantity would drop below reserved_quantity.
        """
        _require_positive(quantity, "remove_stock")
        locked = self.lock_stock(stock)
        if locked.quantity - quantity < locked.reserved_quantity:
            raise InsufficientStockError(
                str(locked.id), quantity, locked.available_quantity
            )
        locked.quantity = locked.quantity - quantity
        self.session.flush()
        self._record(locked, MovementType.REMOVE, quantity, actor_id, reason=reason)
        self._alert_if_low(locked)
        logger.info(
            "stock_removed",
            extra={"stock_id": str(locked.id), "quantity": str(quantity)},
        )
        return locked

    def receive_stock(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        unit_cost: Decimal = _ZERO,
        batch_number: str | None = None,
        expiry_date: date | None = None,
        specifications: dict[str, Any] | None = None,
    ) -> Stock:
        """
        Create a new lot holding ``quantity``.

        Zero opens an empty lot (transfer destinations); negative or
        non-Decimal quantities raise InvalidQuantityError before any row is
        written.
        """
        _require_non_negative(quantity, "receive_stock")
        stock = Stock(
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=_ZERO,
            reserved_quantity=_ZERO,
            unit_cost=unit_cost,
            batch_number=batch_number,
            expiry_date=expiry_date,
            specifications=dict(specifications or {}),
            is_active=True,
            created_by_id=actor_id,
        )
        self.session.add(stock)
        self.session.flush()
        if quantity > _ZERO:
            self.add_stock(stock, quantity, actor_id, reason="received")
        return stock

    def find_or_create_lot(
        self,
        template: Stock,
        warehouse_id: UUID,
        actor_id: UUID,
    ) -> Stock:
        """
        The lot of ``template``'s product and batch in another warehouse.

        Created empty when missing; used as the destination of transfers.
        """
        stmt = select(Stock).where(
            Stock.product_id == template.product_id,
            Stock.warehouse_id == warehouse_id,
            Stock.is_active.is_(True),
        )
        if template.batch_number is None:
            stmt = stmt.where(Stock.batch_number.is_(None))
        else:
            stmt = stmt.where(Stock.batch_number == template.batch_number)
        existing = self.session.execute(stmt.order_by(Stock.id)).scalars().first()
        if existing is not None:
            return existing

        return self.receive_stock(
            product_id=template.product_id,
            warehouse_id=warehouse_id,
            quantity=_ZERO,
            actor_id=actor_id,
            unit_cost=template.unit_cost,
            batch_number=template.batch_number,
            expiry_date=template.expiry_date,
            specifications=template.specifications,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _take_from_reservation(
        self,
        reservation_id: UUID | None,
        stock: Stock,
        quantity: Decimal,
        closed_status: ReservationStatus,
    ) -> StockReservation | None:
        if reservation_id is None:
            return None
        reservation = self.lock_reservation(reservation_id)
        if reservation.stock_id != stock.id:
            raise ReservationNotFoundError(str(reservation_id))
        if quantity > reservation.quantity:
            raise OverReleaseError(str(stock.id), quantity, reservation.quantity)
        reservation.quantity = reservation.quantity - quantity
        if reservation.quantity == _ZERO:
            reservation.status = closed_status.value
        return reservation

    def _record(
        self,
        stock: Stock,
        movement_type: MovementType,
        quantity: Decimal,
        actor_id: UUID,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
        reason: str | None = None,
    ) -> None:
        self.session.add(
            StockMovement(
                stock_id=stock.id,
                movement_type=movement_type.value,
                quantity=quantity,
                quantity_after=stock.quantity,
                reserved_after=stock.reserved_quantity,
                reference_type=reference_type,
                reference_id=reference_id,
                reason=reason,
                actor_id=actor_id,
                occurred_at=self.clock.now(),
            )
        )
        self.session.flush()

    def _alert_if_low(self, stock: Stock) -> None:
        if self.low_stock_threshold <= _ZERO:
            return
        available = stock.available_quantity
        if available > self.low_stock_threshold:
            return
        event = "stock_out" if available <= _ZERO else "stock_low"
        logger.warning(
            event,
            extra={
                "stock_id": str(stock.id),
                "available": str(available),
                "threshold": str(self.low_stock_threshold),
            },
        )
        self.outbox.queue(
            event,
            stock_id=str(stock.id),
            product_id=str(stock.product_id),
            warehouse_id=str(stock.warehouse_id),
            available=str(available),
            threshold=str(self.low_stock_threshold),
        )

"""
OrderStageMachine -- the order stage workflow.

Responsibility:
    Moves an order forward through the configured stages one step at a
    time, gates every action on the AuthorizationPort, and triggers the
    side effects of entering a stage: material selection at the material
    reservation stage, processing units at sorting/cutting, and weight
    transfers across configured boundaries.  Cancels and closes orders.

Architecture position:
    Kernel > Services.  Top of the kernel service graph:

        OrderStageMachine
          +-- MaterialSelector ----+
          +-- SortingProcessor ----+--> StockLedger
          +-- TransferCoordinator -+
          +-- StageRecorder

Invariants enforced:
    - Order.current_stage only changes through ``_enter_stage``, which only
      follows the config's transition table (one step forward).
    - A stage is left only when its record is completed (or skipped through
      ``skip_stage``).  A failed move leaves current_stage unchanged.
    - Entering a stage and its side effects run in one SAVEPOINT; a failing
      side effect (e.g. insufficient material) undoes the whole move.
    - Cancellation releases every active reservation and sets the status in
      the same SAVEPOINT: no observable half-cancelled order.
    - Order status never moves backward except to cancelled.
    - The order row is locked (FOR UPDATE) for every mutating operation.

Failure modes:
    - UnauthorizedError: actor lacks the current stage role (or the skip /
      cancel / approver role), and has no override permission.
    - StagePreconditionNotMetError: stage not completed, approval pending,
      materials missing, weights unrecorded, inbound transfer open, order
      closed.
    - OrderNotCancellableError: cancel after the order is in progress.
    - OrderNotFoundError, DuplicateOrderNumberError,
      InvalidStageTransitionError.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock
from orderflow_kernel.domain.dtos import MaterialSelectionLine, SelectionResult
from orderflow_kernel.domain.ports import AuthorizationPort
from orderflow_kernel.domain.stages import (
    CANCELLABLE_ORDER_STATUSES,
    FINAL_STAGE,
    FIRST_STAGE,
    PROCESSING_STAGES,
    STAGE_STATUS_FLOOR,
    TERMINAL_ORDER_STATUSES,
    OrderStatus,
    Stage,
    StageAction,
    StageApprovalStatus,
    StageStatus,
    advance_status,
)
from orderflow_kernel.exceptions import (
    DuplicateOrderNumberError,
    InvalidQuantityError,
    InvalidRejectionReasonError,
    InvalidStageTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    StagePreconditionNotMetError,
    UnauthorizedError,
)
from orderflow_kernel.logging_config import get_logger
from orderflow_kernel.models.material import OrderMaterial, OrderMaterialStatus
from orderflow_kernel.models.order import Order, OrderStage
from orderflow_kernel.selectors.transfer_selector import TransferSelector
from orderflow_kernel.services.base import BaseService
from orderflow_kernel.services.material_selector import MaterialSelector
from orderflow_kernel.services.notifications import NotificationOutbox
from orderflow_kernel.services.sorting_processor import SortingProcessor
from orderflow_kernel.services.stage_records import StageRecorder
from orderflow_kernel.services.transfer_coordinator import TransferCoordinator

if TYPE_CHECKING:
    from orderflow_config.schema import TransferBoundary, WorkflowConfig

logger = get_logger("services.stage_machine")


class OrderStageMachine(BaseService):
    """
    Order stage workflow orchestrator.

    Contract:
        Mutating methods return the Order row (the WorkflowEngine converts it
        with ``to_dto()``).  Flushes only; the caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        config: WorkflowConfig,
        authorization: AuthorizationPort,
        recorder: StageRecorder,
        selector: MaterialSelector,
        processor: SortingProcessor,
        coordinator: TransferCoordinator,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        super().__init__(session, clock, outbox)
        self.config = config
        self.authorization = authorization
        self.recorder = recorder
        self.selector = selector
        self.processor = processor
        self.coordinator = coordinator
        self._transfers = TransferSelector(session)

    # ------------------------------------------------------------------
    # Loading and gates
    # ------------------------------------------------------------------

    def get_order(self, order_id: UUID) -> Order:
        order = self.session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    def _lock_order(self, order_id: UUID) -> Order:
        order = self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    def _is_override(self, actor_id: UUID) -> bool:
        return self.authorization.has_permission(actor_id, self.config.override_permission)

    def _require_stage_actor(self, actor_id: UUID, stage: Stage, action: str) -> None:
        role = self.config.role_for(stage)
        if self.authorization.has_role(actor_id, role) or self._is_override(actor_id):
            return
        logger.warning(
            "stage_action_refused",
            extra={"actor_id": str(actor_id), "stage": stage.value, "action": action},
        )
        raise UnauthorizedError(str(actor_id), action, f"requires role {role}")

    def _require_open_order(self, order: Order) -> None:
        if order.order_status in TERMINAL_ORDER_STATUSES:
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage, f"order is {order.status}"
            )

    def _current_record(self, order: Order) -> OrderStage:
        record = order.stage_record(order.stage)
        if record is None:
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage, "stage record is missing"
            )
        return record

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_order(
        self,
        actor_id: UUID,
        order_number: str,
        product_id: UUID | None = None,
        required_weight: Decimal = Decimal("0"),
        source_warehouse_id: UUID | None = None,
        specifications: dict[str, Any] | None = None,
        is_urgent: bool = False,
        required_date: date | None = None,
        assigned_to: UUID | None = None,
    ) -> Order:
        """A draft order sitting at the first stage, in progress."""
        self._require_stage_actor(actor_id, FIRST_STAGE, "create order")
        if isinstance(required_weight, float) or required_weight < Decimal("0"):
            raise InvalidQuantityError(required_weight, "create_order")
        exists = self.session.execute(
            select(Order.id).where(Order.order_number == order_number)
        ).first()
        if exists is not None:
            raise DuplicateOrderNumberError(order_number)

        order = Order(
            order_number=order_number,
            status=OrderStatus.DRAFT.value,
            current_stage=FIRST_STAGE.value,
            assigned_to=assigned_to,
            is_urgent=is_urgent,
            required_date=required_date,
            product_id=product_id,
            required_weight=required_weight,
            source_warehouse_id=source_warehouse_id,
            specifications=dict(specifications or {}),
            created_by_id=actor_id,
        )
        self.session.add(order)
        self.session.flush()

        self.recorder.open_stage(order, FIRST_STAGE, actor_id)
        self.recorder.record_history(order, StageAction.CREATED, actor_id, to_stage=FIRST_STAGE)
        self.outbox.queue(
            "order_created", order_id=str(order.id), order_number=order_number
        )
        logger.info(
            "order_created",
            extra={
                "order_id": str(order.id),
                "order_number": order_number,
                "required_weight": str(required_weight),
            },
        )
        return order

    # ------------------------------------------------------------------
    # Stage work
    # ------------------------------------------------------------------

    def complete_stage(
        self, order_id: UUID, actor_id: UUID, notes: str | None = None
    ) -> Order:
        """
        Mark the current stage's work done.

        Stages that require approval are parked with approval_status=pending
        instead of completing.  Completing the final stage closes the order.
        """
        order = self._lock_order(order_id)
        self._require_open_order(order)
        stage = order.stage
        self._require_stage_actor(actor_id, stage, f"complete stage {stage.value}")
        record = self._current_record(order)

        if record.status != StageStatus.IN_PROGRESS.value:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, f"stage is {record.status}"
            )
        if record.approval_status == StageApprovalStatus.PENDING.value:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "stage approval is pending"
            )
        self._check_stage_work(order, stage)

        if notes:
            record.notes = notes
        if self.recorder.finish_stage_work(order, record, actor_id):
            self._after_stage_completed(order, stage, actor_id)
        return order

    def _check_stage_work(self, order: Order, stage: Stage) -> None:
        if stage == Stage.MATERIAL_RESERVATION and not order.selected_materials:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "materials are not reserved"
            )
        if stage in PROCESSING_STAGES and not self.processor.all_recorded(order.id, stage):
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "processing weights are not recorded"
            )
        if self._transfers.open_inbound(order.id, stage.value):
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "inbound weight transfers are not completed"
            )

    def approve_stage(
        self, order_id: UUID, actor_id: UUID, notes: str | None = None
    ) -> Order:
        """Grant a pending stage approval; the stage completes."""
        order = self._lock_order(order_id)
        self._require_open_order(order)
        record = self._pending_approval_record(order, actor_id, "approve")

        record.approval_status = StageApprovalStatus.APPROVED.value
        record.approved_by = actor_id
        if notes:
            record.notes = notes
        self.recorder.record_history(order, StageAction.APPROVED, actor_id, from_stage=order.stage)
        self.recorder.complete_record(order, record, actor_id)
        logger.info(
            "stage_approved",
            extra={"order_id": str(order.id), "stage": record.stage_name},
        )
        self._after_stage_completed(order, order.stage, actor_id)
        return order

    def reject_stage(self, order_id: UUID, actor_id: UUID, reason: str) -> Order:
        """Refuse a pending stage approval; the stage stays in progress."""
        order = self._lock_order(order_id)
        self._require_open_order(order)
        record = self._pending_approval_record(order, actor_id, "reject")

        cleaned = (reason or "").strip()
        if len(cleaned) < self.config.min_rejection_reason_length:
            raise InvalidRejectionReasonError(self.config.min_rejection_reason_length)

        record.approval_status = StageApprovalStatus.REJECTED.value
        record.updated_by_id = actor_id
        self.session.flush()
        self.recorder.record_history(
            order, StageAction.REJECTED, actor_id, from_stage=order.stage, reason=cleaned
        )
        self.outbox.queue(
            "stage_approval_rejected",
            order_id=str(order.id),
            stage=record.stage_name,
            reason=cleaned,
        )
        logger.info(
            "stage_rejected",
            extra={"order_id": str(order.id), "stage": record.stage_name},
        )
        return order

    def _pending_approval_record(self, order: Order, actor_id: UUID, verb: str) -> OrderStage:
        approver_role = self.config.stage_approver_role
        if not (
            self.authorization.has_role(actor_id, approver_role) or self._is_override(actor_id)
        ):
            raise UnauthorizedError(
                str(actor_id), f"{verb} stage {order.current_stage}", f"requires role {approver_role}"
            )
        record = self._current_record(order)
        if (
            record.status != StageStatus.IN_PROGRESS.value
            or record.approval_status != StageApprovalStatus.PENDING.value
        ):
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage, "no stage approval is pending"
            )
        return record

    def _after_stage_completed(self, order: Order, stage: Stage, actor_id: UUID) -> None:
        if stage == Stage.INVOICING:
            order.pricing_calculated = True
            self.session.flush()
        if stage == FINAL_STAGE:
            self._close(order, actor_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def move_to_next_stage(
        self,
        order_id: UUID,
        actor_id: UUID,
        material_selections: Sequence[MaterialSelectionLine] | None = None,
    ) -> Order:
        """
        Advance one stage.

        Raises:
            UnauthorizedError: actor lacks the role of the CURRENT stage.
            StagePreconditionNotMetError: the current stage is not completed.
        """
        order = self._lock_order(order_id)
        self._require_open_order(order)
        stage = order.stage
        self._require_stage_actor(actor_id, stage, f"move order from {stage.value}")

        record = self._current_record(order)
        if record.status != StageStatus.COMPLETED.value:
            reason = f"stage is {record.status}"
            if record.approval_status == StageApprovalStatus.PENDING.value:
                reason = "stage approval is pending"
            logger.info(
                "stage_move_refused",
                extra={"order_id": str(order.id), "stage": stage.value, "reason": reason},
            )
            raise StagePreconditionNotMetError(str(order.id), stage.value, reason)

        target = self.config.next_stage(stage)
        if target is None:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "final stage has no successor"
            )

        with self.session.begin_nested():
            self._enter_stage(order, stage, target, actor_id, material_selections)
        return order

    def skip_stage(self, order_id: UUID, actor_id: UUID, reason: str) -> Order:
        """Leave the current stage without doing its work (audited)."""
        order = self._lock_order(order_id)
        self._require_open_order(order)
        stage = order.stage

        if not (
            self.authorization.has_permission(actor_id, self.config.skip_permission)
            or self._is_override(actor_id)
        ):
            raise UnauthorizedError(
                str(actor_id), f"skip stage {stage.value}",
                f"requires permission {self.config.skip_permission}",
            )
        cleaned = (reason or "").strip()
        if not cleaned:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "a reason is required to skip a stage"
            )
        if stage not in self.config.skippable_stages:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "stage cannot be skipped"
            )
        record = self._current_record(order)
        if record.status != StageStatus.IN_PROGRESS.value:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, f"stage is {record.status}"
            )
        target = self.config.next_stage(stage)

        with self.session.begin_nested():
            record.status = StageStatus.SKIPPED.value
            record.skip_reason = cleaned
            record.completed_at = self.clock.now()
            record.updated_by_id = actor_id
            self.session.flush()
            self.recorder.record_history(
                order, StageAction.SKIPPED, actor_id, from_stage=stage, reason=cleaned
            )
            self._enter_stage(order, stage, target, actor_id, None)

        logger.info(
            "stage_skipped",
            extra={"order_id": str(order.id), "stage": stage.value},
        )
        return order

    def _enter_stage(
        self,
        order: Order,
        from_stage: Stage,
        to_stage: Stage,
        actor_id: UUID,
        material_selections: Sequence[MaterialSelectionLine] | None,
    ) -> None:
        if to_stage not in self.config.transition_table().get(from_stage, frozenset()):
            raise InvalidStageTransitionError(from_stage.value, to_stage.value)

        boundary = self.config.boundary_between(from_stage, to_stage)
        if boundary is not None:
            self._request_boundary_transfers(order, boundary, actor_id)

        record = self.recorder.open_stage(order, to_stage, actor_id)
        order.current_stage = to_stage.value
        order.status = advance_status(
            order.order_status, STAGE_STATUS_FLOOR[to_stage]
        ).value
        order.updated_by_id = actor_id
        self.session.flush()
        self.recorder.record_history(
            order, StageAction.MOVED, actor_id, from_stage=from_stage, to_stage=to_stage
        )

        if to_stage == Stage.MATERIAL_RESERVATION:
            if material_selections is not None:
                self._reserve_materials(order, record, actor_id, False, material_selections)
            elif self.config.auto_select_materials:
                self._reserve_materials(order, record, actor_id, True, None)
        elif to_stage in PROCESSING_STAGES:
            self.processor.prepare(order, to_stage, actor_id)

        self.outbox.queue(
            "order_stage_changed",
            order_id=str(order.id),
            order_number=order.order_number,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
            assigned_role=self.config.role_for(to_stage),
        )
        logger.info(
            "order_stage_changed",
            extra={
                "order_id": str(order.id),
                "from_stage": from_stage.value,
                "to_stage": to_stage.value,
                "status": order.status,
            },
        )

    def _request_boundary_transfers(
        self, order: Order, boundary: TransferBoundary, actor_id: UUID
    ) -> None:
        destination = self.config.warehouse_for(boundary.to_stage)
        if destination is None:
            return
        materials = self.session.execute(
            select(OrderMaterial)
            .where(
                OrderMaterial.order_id == order.id,
                OrderMaterial.status == OrderMaterialStatus.RESERVED.value,
            )
            .order_by(OrderMaterial.created_at, OrderMaterial.id)
        ).scalars().all()
        for material in materials:
            if material.reserved_weight <= Decimal("0"):
                continue
            if material.stock.warehouse_id == destination:
                continue
            self.coordinator.request_transfer(order, material, boundary, destination, actor_id)

    # ------------------------------------------------------------------
    # Materials
    # ------------------------------------------------------------------

    def select_materials(
        self,
        order_id: UUID,
        actor_id: UUID,
        auto: bool = True,
        selections: Sequence[MaterialSelectionLine] | None = None,
    ) -> SelectionResult:
        """Explicit selection while the order sits at the material stage."""
        order = self._lock_order(order_id)
        self._require_open_order(order)
        if order.stage != Stage.MATERIAL_RESERVATION:
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage,
                f"materials are selected at {Stage.MATERIAL_RESERVATION.value}",
            )
        if not (
            self.authorization.has_role(actor_id, self.config.role_for(Stage.MATERIAL_RESERVATION))
            or self.authorization.has_permission(
                actor_id, self.config.select_materials_permission
            )
            or self._is_override(actor_id)
        ):
            raise UnauthorizedError(
                str(actor_id), "select materials",
                f"requires permission {self.config.select_materials_permission}",
            )
        record = self._current_record(order)
        if record.status != StageStatus.IN_PROGRESS.value:
            raise StagePreconditionNotMetError(
                str(order.id), order.current_stage, f"stage is {record.status}"
            )
        return self._reserve_materials(order, record, actor_id, auto, selections)

    def _reserve_materials(
        self,
        order: Order,
        record: OrderStage,
        actor_id: UUID,
        auto: bool,
        selections: Sequence[MaterialSelectionLine] | None,
    ) -> SelectionResult:
        result = self.selector.select(order, actor_id, auto=auto, selections=selections)
        self.recorder.record_history(
            order,
            StageAction.MATERIALS_SELECTED,
            actor_id,
            from_stage=Stage.MATERIAL_RESERVATION,
            reason=f"{result.mode}: {len(result.allocations)} lot(s), {result.total_weight}",
        )
        if self.recorder.finish_stage_work(order, record, actor_id):
            self._after_stage_completed(order, Stage.MATERIAL_RESERVATION, actor_id)
        return result

    # ------------------------------------------------------------------
    # Cancellation and closing
    # ------------------------------------------------------------------

    def cancel_order(
        self, order_id: UUID, actor_id: UUID, reason: str | None = None
    ) -> Order:
        """
        Cancel an order that is not yet in progress.

        Every active reservation is released in the same unit of work.
        """
        order = self._lock_order(order_id)
        if not (
            self.authorization.has_permission(actor_id, self.config.cancel_permission)
            or self._is_override(actor_id)
        ):
            raise UnauthorizedError(
                str(actor_id), "cancel order",
                f"requires permission {self.config.cancel_permission}",
            )
        if order.order_status not in CANCELLABLE_ORDER_STATUSES:
            raise OrderNotCancellableError(str(order.id), order.status)

        with self.session.begin_nested():
            released = self.selector.release_order_materials(
                order, actor_id, reason="order cancelled"
            )
            order.status = OrderStatus.CANCELLED.value
            order.cancel_reason = reason
            order.cancelled_at = self.clock.now()
            order.updated_by_id = actor_id
            self.session.flush()
            self.recorder.record_history(
                order, StageAction.CANCELLED, actor_id, from_stage=order.stage, reason=reason
            )

        self.outbox.queue(
            "order_cancelled",
            order_id=str(order.id),
            order_number=order.order_number,
            released_weight=str(released),
        )
        logger.info(
            "order_cancelled",
            extra={"order_id": str(order.id), "released_weight": str(released)},
        )
        return order

    def _close(self, order: Order, actor_id: UUID) -> None:
        consumed = self.selector.consume_order_materials(order, actor_id, reason="delivered")
        order.status = OrderStatus.COMPLETED.value
        order.completed_at = self.clock.now()
        order.updated_by_id = actor_id
        self.session.flush()
        self.recorder.record_history(order, StageAction.CLOSED, actor_id, from_stage=FINAL_STAGE)
        self.outbox.queue(
            "order_completed",
            order_id=str(order.id),
            order_number=order.order_number,
            delivered_weight=str(consumed),
        )
        logger.info(
            "order_completed",
            extra={"order_id": str(order.id), "delivered_weight": str(consumed)},
        )

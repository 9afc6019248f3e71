"""
orderflow_services.workflow_engine -- Public boundary of the order workflow.

Responsibility:
    The only entry point callers (controllers, UIs, jobs) use.  Each public
    method runs one unit of work in its own transaction, binds the log
    context, and answers with an OperationResult: ``{success, data}`` or
    ``{success, error_code, message}``.  No exception escapes.

Architecture position:
    Services -- outer boundary.  Owns transactions (session_scope) and
    notification dispatch; kernel services below only flush.

Invariants enforced:
    - One transaction per operation: commit on success, full rollback on any
      failure, so every failed operation is safely retryable.
    - Notifications are dispatched only after commit and discarded on
      rollback.
    - Typed kernel errors map to stable HTTP-equivalent statuses
      (``http_status_for``); storage failures map to STORAGE_ERROR / 503.
    - A failed transfer completion is audited in a separate transaction,
      after the failed unit has been rolled back.

Failure modes:
    None raised.  Unexpected non-storage exceptions are programming errors
    and propagate after rollback.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Callable, Sequence
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from orderflow_config import default_workflow_config
from orderflow_config.schema import WorkflowConfig
from orderflow_kernel.db.engine import get_session_factory, session_scope
from orderflow_kernel.db.immutability import register_immutability_listeners
from orderflow_kernel.domain.clock import Clock, SystemClock
from orderflow_kernel.domain.dtos import MaterialSelectionLine
from orderflow_kernel.domain.ports import (
    ApproverDirectory,
    AuthorizationPort,
    NotificationPort,
)
from orderflow_kernel.domain.results import OperationResult
from orderflow_kernel.domain.stages import parse_stage
from orderflow_kernel.domain.transfer import TransferStatus
from orderflow_kernel.exceptions import (
    AlreadyCompletedError,
    AlreadyRejectedError,
    InvalidProcessingDataError,
    InvalidQuantityError,
    InsufficientMaterialError,
    InsufficientStockError,
    OrderflowError,
    OrderNotFoundError,
    OverReleaseError,
    StockNotFoundError,
    TransferNotApprovedError,
    TransferNotFoundError,
    UnauthorizedError,
    WeightBalanceMismatchError,
)
from orderflow_kernel.logging_config import LogContext, get_logger
from orderflow_kernel.services.notifications import NotificationOutbox
from orderflow_services.notifier import LoggingNotifier
from orderflow_services.orchestrator import WorkflowOrchestrator

logger = get_logger("services.workflow_engine")

STORAGE_ERROR = "STORAGE_ERROR"

_CONFLICT_CODES = frozenset({
    "ALREADY_APPROVED",
    "ALREADY_REJECTED",
    "ALREADY_COMPLETED",
    "STAGE_PRECONDITION_NOT_MET",
    "ORDER_NOT_CANCELLABLE",
    "INVALID_STAGE_TRANSITION",
    "TRANSFER_NOT_APPROVED",
    "INVENTORY_REQUESTS_PENDING",
    "DUPLICATE_ORDER_NUMBER",
    "IMMUTABILITY_VIOLATION",
})

_UNPROCESSABLE_ERRORS = (
    WeightBalanceMismatchError,
    InsufficientStockError,
    InsufficientMaterialError,
    OverReleaseError,
    InvalidQuantityError,
    InvalidProcessingDataError,
)

# Completion refused before anything was attempted; nothing to audit.
_COMPLETION_PRECONDITION_ERRORS = (
    TransferNotFoundError,
    TransferNotApprovedError,
    AlreadyCompletedError,
    AlreadyRejectedError,
    UnauthorizedError,
)


def http_status_for(error: OrderflowError) -> int:
    """HTTP-equivalent status of a kernel error."""
    if isinstance(error, UnauthorizedError):
        return 403
    if error.code.endswith("_NOT_FOUND"):
        return 404
    if error.code in _CONFLICT_CODES:
        return 409
    if isinstance(error, _UNPROCESSABLE_ERRORS) or error.code.startswith("INVALID_"):
        return 422
    return 400


def _error_details(error: OrderflowError) -> dict[str, Any]:
    return {
        key: (str(value) if isinstance(value, (Decimal, UUID)) else value)
        for key, value in vars(error).items()
        if not key.startswith("_")
    }


class WorkflowEngine:
    """
    Order workflow facade returning OperationResult for every operation.

    Args:
        session_factory: Sessions for each unit of work; defaults to the
            factory bound to the initialized engine.
        config: Workflow configuration; defaults to the packaged YAML.
        authorization: Role / permission checks.
        directory: Approver lookup for sequential approval levels.
        notifier: Delivery of queued notifications (after commit).
        clock: Time source.
    """

    def __init__(
        self,
        authorization: AuthorizationPort,
        directory: ApproverDirectory,
        session_factory: sessionmaker[Session] | None = None,
        config: WorkflowConfig | None = None,
        notifier: NotificationPort | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory or get_session_factory()
        self.config = config or default_workflow_config()
        self.authorization = authorization
        self.directory = directory
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or SystemClock()
        register_immutability_listeners()

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _services(self, session: Session, outbox: NotificationOutbox) -> WorkflowOrchestrator:
        return WorkflowOrchestrator(
            session,
            self.config,
            self.authorization,
            self.directory,
            self.clock,
            outbox,
        )

    def _run(
        self,
        operation: str,
        actor_id: UUID | None,
        work: Callable[[WorkflowOrchestrator], Any],
        order_id: UUID | None = None,
        transfer_id: UUID | None = None,
        on_failure: Callable[[Exception], None] | None = None,
    ) -> OperationResult:
        outbox = NotificationOutbox()
        with LogContext.bind(
            correlation_id=uuid4(),
            actor_id=actor_id,
            operation=operation,
            order_id=order_id,
            transfer_id=transfer_id,
        ):
            try:
                with session_scope(self._session_factory) as session:
                    data = work(self._services(session, outbox))
            except OrderflowError as exc:
                outbox.discard()
                status = http_status_for(exc)
                logger.info(
                    "operation_failed",
                    extra={"error_code": exc.code, "http_status": status},
                )
                if on_failure is not None:
                    on_failure(exc)
                return OperationResult.fail(exc.code, str(exc), status, _error_details(exc))
            except SQLAlchemyError as exc:
                outbox.discard()
                logger.error(
                    "storage_error",
                    extra={"error_type": type(exc).__name__},
                    exc_info=True,
                )
                if on_failure is not None:
                    on_failure(exc)
                return OperationResult.fail(
                    STORAGE_ERROR,
                    "Storage failure; the operation was rolled back and may be retried",
                    503,
                )

            outbox.dispatch(self.notifier)
            logger.info("operation_succeeded")
            return OperationResult.ok(data)

    # ------------------------------------------------------------------
    # Orders
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
    ) -> OperationResult:
        return self._run(
            "create_order",
            actor_id,
            lambda s: s.stage_machine.create_order(
                actor_id,
                order_number,
                product_id=product_id,
                required_weight=required_weight,
                source_warehouse_id=source_warehouse_id,
                specifications=specifications,
                is_urgent=is_urgent,
                required_date=required_date,
                assigned_to=assigned_to,
            ).to_dto(),
        )

    def get_order(self, order_id: UUID) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            info = s.orders.get(order_id)
            if info is None:
                raise OrderNotFoundError(str(order_id))
            return info

        return self._run("get_order", None, work, order_id=order_id)

    def order_history(self, order_id: UUID) -> OperationResult:
        return self._run(
            "order_history", None, lambda s: s.orders.history(order_id), order_id=order_id
        )

    def complete_stage(
        self, order_id: UUID, actor_id: UUID, notes: str | None = None
    ) -> OperationResult:
        return self._run(
            "complete_stage",
            actor_id,
            lambda s: s.stage_machine.complete_stage(order_id, actor_id, notes).to_dto(),
            order_id=order_id,
        )

    def approve_stage(
        self, order_id: UUID, actor_id: UUID, notes: str | None = None
    ) -> OperationResult:
        return self._run(
            "approve_stage",
            actor_id,
            lambda s: s.stage_machine.approve_stage(order_id, actor_id, notes).to_dto(),
            order_id=order_id,
        )

    def reject_stage(self, order_id: UUID, actor_id: UUID, reason: str) -> OperationResult:
        return self._run(
            "reject_stage",
            actor_id,
            lambda s: s.stage_machine.reject_stage(order_id, actor_id, reason).to_dto(),
            order_id=order_id,
        )

    def move_to_next_stage(
        self,
        order_id: UUID,
        actor_id: UUID,
        material_selections: Sequence[MaterialSelectionLine] | None = None,
    ) -> OperationResult:
        return self._run(
            "move_to_next_stage",
            actor_id,
            lambda s: s.stage_machine.move_to_next_stage(
                order_id, actor_id, material_selections
            ).to_dto(),
            order_id=order_id,
        )

    def skip_stage(self, order_id: UUID, actor_id: UUID, reason: str) -> OperationResult:
        return self._run(
            "skip_stage",
            actor_id,
            lambda s: s.stage_machine.skip_stage(order_id, actor_id, reason).to_dto(),
            order_id=order_id,
        )

    def cancel_order(
        self, order_id: UUID, actor_id: UUID, reason: str | None = None
    ) -> OperationResult:
        return self._run(
            "cancel_order",
            actor_id,
            lambda s: s.stage_machine.cancel_order(order_id, actor_id, reason).to_dto(),
            order_id=order_id,
        )

    # ------------------------------------------------------------------
    # Materials
    # ------------------------------------------------------------------

    def select_materials(
        self,
        order_id: UUID,
        actor_id: UUID,
        auto: bool = True,
        selections: Sequence[MaterialSelectionLine] | None = None,
    ) -> OperationResult:
        return self._run(
            "select_materials",
            actor_id,
            lambda s: s.stage_machine.select_materials(
                order_id, actor_id, auto=auto, selections=selections
            ),
            order_id=order_id,
        )

    def availability_report(self, order_id: UUID) -> OperationResult:
        return self._run(
            "availability_report",
            None,
            lambda s: s.selector.availability_report(s.stage_machine.get_order(order_id)),
            order_id=order_id,
        )

    # ------------------------------------------------------------------
    # Sorting / cutting
    # ------------------------------------------------------------------

    def processing_units(self, order_id: UUID, stage: str) -> OperationResult:
        return self._run(
            "processing_units",
            None,
            lambda s: [
                u.to_dto() for u in s.processor.units_for(order_id, parse_stage(stage))
            ],
            order_id=order_id,
        )

    def record_processing(
        self,
        unit_id: UUID,
        actor_id: UUID,
        original_weight: Decimal,
        output_weights: Sequence[Decimal],
        waste_weight: Decimal = Decimal("0"),
        waste_reason: str | None = None,
    ) -> OperationResult:
        return self._run(
            "record_processing",
            actor_id,
            lambda s: s.processor.record(
                unit_id, actor_id, original_weight, output_weights, waste_weight, waste_reason
            ),
        )

    def record_two_roll_split(
        self,
        unit_id: UUID,
        actor_id: UUID,
        original_weight: Decimal,
        roll1_weight: Decimal,
        roll2_weight: Decimal,
        waste_weight: Decimal = Decimal("0"),
        waste_reason: str | None = None,
    ) -> OperationResult:
        return self._run(
            "record_two_roll_split",
            actor_id,
            lambda s: s.processor.record_two_roll_split(
                unit_id,
                actor_id,
                original_weight,
                roll1_weight,
                roll2_weight,
                waste_weight,
                waste_reason,
            ),
        )

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def transfers_for_order(self, order_id: UUID) -> OperationResult:
        return self._run(
            "transfers_for_order",
            None,
            lambda s: s.transfers.for_order(order_id),
            order_id=order_id,
        )

    def approve_transfer(
        self, transfer_id: UUID, actor_id: UUID, comments: str | None = None
    ) -> OperationResult:
        """
        Approve the transfer's current step.

        With ``auto_complete_transfers`` the final approval is committed
        first and completion runs as its own unit of work; a failed
        completion is audited and leaves the transfer approved.
        """
        result = self._run(
            "approve_transfer",
            actor_id,
            lambda s: s.coordinator.approve(transfer_id, actor_id, comments).to_dto(),
            transfer_id=transfer_id,
        )
        if (
            result.success
            and self.config.auto_complete_transfers
            and result.data.status == TransferStatus.APPROVED.value
        ):
            completed = self.complete_transfer(transfer_id, actor_id)
            if completed.success:
                return completed
        return result

    def reject_transfer(
        self, transfer_id: UUID, actor_id: UUID, reason: str
    ) -> OperationResult:
        return self._run(
            "reject_transfer",
            actor_id,
            lambda s: s.coordinator.reject(transfer_id, actor_id, reason).to_dto(),
            transfer_id=transfer_id,
        )

    def complete_transfer(self, transfer_id: UUID, actor_id: UUID) -> OperationResult:
        def on_failure(error: Exception) -> None:
            if isinstance(error, _COMPLETION_PRECONDITION_ERRORS):
                return
            self._record_completion_failure(transfer_id, actor_id, error)

        return self._run(
            "complete_transfer",
            actor_id,
            lambda s: s.coordinator.complete(transfer_id, actor_id).to_dto(),
            transfer_id=transfer_id,
            on_failure=on_failure,
        )

    def _record_completion_failure(
        self, transfer_id: UUID, actor_id: UUID, error: Exception
    ) -> None:
        try:
            with session_scope(self._session_factory) as session:
                services = self._services(session, NotificationOutbox())
                services.coordinator.record_completion_failure(transfer_id, actor_id, error)
        except (OrderflowError, SQLAlchemyError):
            logger.error(
                "completion_failure_audit_failed",
                extra={"transfer_id": str(transfer_id)},
                exc_info=True,
            )
            return
        logger.warning(
            "transfer_completion_failed",
            extra={
                "transfer_id": str(transfer_id),
                "error_code": getattr(error, "code", STORAGE_ERROR),
            },
        )

    def confirm_inventory_request(
        self,
        request_id: UUID,
        actor_id: UUID,
        counted_weight: Decimal | None = None,
    ) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            request = s.coordinator.confirm_inventory_request(
                request_id, actor_id, counted_weight
            )
            return {
                "id": request.id,
                "weight_transfer_id": request.weight_transfer_id,
                "request_type": request.request_type,
                "status": request.status,
                "counted_weight": request.counted_weight,
            }

        return self._run("confirm_inventory_request", actor_id, work)

    def transfer_approval_status(self, transfer_id: UUID) -> OperationResult:
        return self._run(
            "transfer_approval_status",
            None,
            lambda s: s.coordinator.approval_status(transfer_id),
            transfer_id=transfer_id,
        )

    def can_approve_transfer(self, transfer_id: UUID, user_id: UUID) -> OperationResult:
        """``data`` is True when ``user_id`` may act on the transfer's next step."""
        return self._run(
            "can_approve_transfer",
            user_id,
            lambda s: s.coordinator.can_user_approve(user_id, s.coordinator.get(transfer_id)),
            transfer_id=transfer_id,
        )

    def pending_approvals(self, user_id: UUID) -> OperationResult:
        return self._run(
            "pending_approvals",
            user_id,
            lambda s: s.coordinator.pending_approvals_for(user_id),
        )

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    def get_stock(self, stock_id: UUID) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            return s.ledger.get_stock(stock_id).to_dto()

        return self._run("get_stock", None, work)

    def receive_stock(
        self,
        actor_id: UUID,
        product_id: UUID,
        warehouse_id: UUID,
        quantity: Decimal,
        unit_cost: Decimal = Decimal("0"),
        batch_number: str | None = None,
        expiry_date: date | None = None,
        specifications: dict[str, Any] | None = None,
    ) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            s.ledger.require_stock_access(actor_id, "receive stock")
            return s.ledger.receive_stock(
                product_id,
                warehouse_id,
                quantity,
                actor_id,
                unit_cost=unit_cost,
                batch_number=batch_number,
                expiry_date=expiry_date,
                specifications=specifications,
            ).to_dto()

        return self._run("receive_stock", actor_id, work)

    def reserve_stock(
        self,
        stock_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        order_id: UUID | None = None,
    ) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            s.ledger.require_stock_access(actor_id, "reserve stock")
            return s.ledger.reserve(stock_id, quantity, actor_id, order_id=order_id).to_dto()

        return self._run("reserve_stock", actor_id, work, order_id=order_id)

    def release_reservation(
        self,
        reservation_id: UUID,
        actor_id: UUID,
        quantity: Decimal | None = None,
    ) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            s.ledger.require_stock_access(actor_id, "release reservation")
            return s.ledger.release_reservation(reservation_id, actor_id, quantity).to_dto()

        return self._run("release_reservation", actor_id, work)

    def add_stock(
        self, stock_id: UUID, quantity: Decimal, actor_id: UUID, reason: str | None = None
    ) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            s.ledger.require_stock_access(actor_id, "add stock")
            return s.ledger.add_stock(stock_id, quantity, actor_id, reason).to_dto()

        return self._run("add_stock", actor_id, work)

    def remove_stock(
        self, stock_id: UUID, quantity: Decimal, actor_id: UUID, reason: str | None = None
    ) -> OperationResult:
        def work(s: WorkflowOrchestrator):
            s.ledger.require_stock_access(actor_id, "remove stock")
            return s.ledger.remove_stock(stock_id, quantity, actor_id, reason).to_dto()

        return self._run("remove_stock", actor_id, work)

    def low_stock(self, threshold: Decimal | None = None) -> OperationResult:
        limit = self.config.low_stock_threshold if threshold is None else threshold
        return self._run("low_stock", None, lambda s: s.stocks.low_stock(limit))

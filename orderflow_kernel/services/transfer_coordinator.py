"""
TransferCoordinator -- weight transfers and their sequential approval chain.

Responsibility:
    Creates weight transfers between warehouses, drives their approval chain
    (pending -> approved | rejected, approved -> completed), and on
    completion moves the reserved weight in the stock ledger.  Every
    decision is appended to a hash-chained TransferAuditEntry log.

Architecture position:
    Kernel > Services.  ``request_transfer`` is called by OrderStageMachine
    when an order crosses a configured transfer boundary; approve / reject /
    complete are called by approvers through the WorkflowEngine.

Invariants enforced:
    - An approval at sequence k is decided only after every lower sequence
      is approved.  The transfer row is locked (FOR UPDATE) while a decision
      is made, so two approvers racing for the same step serialize and the
      loser re-evaluates against the winner's decision.
    - Rejection is terminal: no later approve or complete succeeds.
    - complete moves the ledger exactly once: a completed transfer cannot be
      completed again, and the movement runs inside one SAVEPOINT together
      with every status change.
    - Audit entries are append-only and chained per transfer
      (entry_hash covers prev_hash).

Failure modes:
    - UnauthorizedError: the user may not decide the current step.
    - AlreadyApprovedError / AlreadyRejectedError / AlreadyCompletedError.
    - TransferNotApprovedError: complete before full approval.
    - InvalidRejectionReasonError: rejection reason too short.
    - InventoryRequestsPendingError: confirmations required but missing.
    - ApproverUnresolvedError: raised only by find_approver_for_level;
      request_transfer catches it, leaves the step unassigned and
      escalates (ERROR log, audit entry, notification).

Audit relevance:
    requested, auto_approved, step_approved, approved, rejected, completed,
    completion_failed and approver_unresolved are all recorded.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock
from orderflow_kernel.domain.dtos import ApprovalStatusSummary, TransferInfo
from orderflow_kernel.domain.ports import ApproverDirectory, AuthorizationPort
from orderflow_kernel.domain.stages import Stage
from orderflow_kernel.domain.transfer import (
    TERMINAL_TRANSFER_STATUSES,
    ApprovalLevel,
    ApprovalStepStatus,
    InventoryRequestStatus,
    InventoryRequestType,
    TransferAuditAction,
    TransferStatus,
    can_transition,
    is_fully_approved,
    next_pending_step,
)
from orderflow_kernel.domain.weights import allowed_difference, within_tolerance
from orderflow_kernel.exceptions import (
    AlreadyApprovedError,
    AlreadyCompletedError,
    AlreadyRejectedError,
    ApproverUnresolvedError,
    InvalidQuantityError,
    InvalidRejectionReasonError,
    InventoryRequestNotFoundError,
    InventoryRequestsPendingError,
    TransferNotApprovedError,
    TransferNotFoundError,
    UnauthorizedError,
    WeightBalanceMismatchError,
)
from orderflow_kernel.logging_config import get_logger
from orderflow_kernel.models.audit import TransferAuditEntry
from orderflow_kernel.models.material import OrderMaterial
from orderflow_kernel.models.order import Order
from orderflow_kernel.models.processing import ProcessingUnit, ProcessingUnitStatus
from orderflow_kernel.models.transfer import (
    InventoryRequest,
    WeightTransfer,
    WeightTransferApproval,
)
from orderflow_kernel.selectors.transfer_selector import TransferSelector
from orderflow_kernel.services.base import BaseService
from orderflow_kernel.services.notifications import NotificationOutbox
from orderflow_kernel.services.stock_ledger import StockLedger
from orderflow_kernel.utils.hashing import hash_audit_entry, hash_payload

if TYPE_CHECKING:
    from orderflow_config.schema import TransferBoundary, WorkflowConfig

logger = get_logger("services.transfer_coordinator")

AUTO_APPROVED_ROLE = "auto_approved"

_OPEN_REQUEST_STATUSES = frozenset({
    InventoryRequestStatus.PENDING.value,
    InventoryRequestStatus.CONFIRMED.value,
})


class TransferCoordinator(BaseService):
    """
    Weight transfer lifecycle.

    Contract:
        Mutating methods return the WeightTransfer row for kernel callers;
        the WorkflowEngine converts it with ``to_dto()``.  Flushes only.
    """

    def __init__(
        self,
        session: Session,
        ledger: StockLedger,
        config: WorkflowConfig,
        authorization: AuthorizationPort,
        directory: ApproverDirectory,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        super().__init__(session, clock, outbox)
        self.ledger = ledger
        self.config = config
        self.authorization = authorization
        self.directory = directory
        self._transfers = TransferSelector(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get(self, transfer_id: UUID) -> WeightTransfer:
        transfer = self.session.get(WeightTransfer, transfer_id)
        if transfer is None:
            raise TransferNotFoundError(str(transfer_id))
        return transfer

    def _lock(self, transfer_id: UUID) -> WeightTransfer:
        transfer = self.session.execute(
            select(WeightTransfer)
            .where(WeightTransfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if transfer is None:
            raise TransferNotFoundError(str(transfer_id))
        return transfer

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def find_approver_for_level(
        self, level: ApprovalLevel, warehouse_id: UUID | None
    ) -> UUID:
        """
        The user holding ``level.role`` at ``warehouse_id``.

        Raises:
            ApproverUnresolvedError: nobody holds the role there.
        """
        approver_id = self.directory.find_approver(level.role, warehouse_id)
        if approver_id is None:
            raise ApproverUnresolvedError(
                level.role,
                str(warehouse_id) if warehouse_id is not None else None,
                level.sequence,
            )
        return approver_id

    def request_transfer(
        self,
        order: Order,
        material: OrderMaterial,
        boundary: TransferBoundary,
        destination_warehouse_id: UUID,
        actor_id: UUID,
        weight: Decimal | None = None,
    ) -> WeightTransfer:
        """
        Create a pending transfer of ``material``'s reserved weight.

        The approval chain comes from the boundary's category: one step for
        the destination stage's role, the configured sequential levels, or an
        immediate system approval for auto-approved categories.
        """
        amount = material.reserved_weight if weight is None else weight
        if amount is None or amount <= Decimal("0"):
            raise InvalidQuantityError(amount, "request_transfer")
        source = self.ledger.get_stock(material.stock_id)

        transfer = WeightTransfer(
            transfer_group_id=uuid4(),
            order_id=order.id,
            order_material_id=material.id,
            source_stock_id=source.id,
            source_reservation_id=material.reservation_id,
            source_warehouse_id=source.warehouse_id,
            destination_warehouse_id=destination_warehouse_id,
            from_stage=boundary.from_stage.value,
            to_stage=boundary.to_stage.value,
            weight_transferred=amount,
            transfer_category=boundary.category,
            requires_sequential_approval=boundary.requires_sequential_approval,
            status=TransferStatus.PENDING.value,
            requested_by=actor_id,
            created_by_id=actor_id,
        )
        self.session.add(transfer)
        self.session.flush()

        self._audit(
            transfer,
            TransferAuditAction.REQUESTED,
            actor_id,
            {
                "weight": amount,
                "category": boundary.category,
                "from_stage": boundary.from_stage.value,
                "to_stage": boundary.to_stage.value,
                "source_warehouse_id": source.warehouse_id,
                "destination_warehouse_id": destination_warehouse_id,
            },
        )

        for request_type, warehouse_id in (
            (InventoryRequestType.SOURCE_CHECK, source.warehouse_id),
            (InventoryRequestType.DESTINATION_CHECK, destination_warehouse_id),
        ):
            self.session.add(
                InventoryRequest(
                    weight_transfer_id=transfer.id,
                    request_type=request_type.value,
                    warehouse_id=warehouse_id,
                    weight=amount,
                    status=InventoryRequestStatus.PENDING.value,
                    created_by_id=actor_id,
                )
            )

        if boundary.category in self.config.auto_approved_categories:
            self._auto_approve(transfer, actor_id)
        elif boundary.requires_sequential_approval:
            self._create_sequential_steps(transfer, boundary.category, actor_id)
        else:
            self.session.add(
                WeightTransferApproval(
                    weight_transfer_id=transfer.id,
                    approval_sequence=1,
                    approver_role_level=self.config.role_for(boundary.to_stage),
                    approver_id=None,
                    warehouse_id=destination_warehouse_id,
                    is_final=True,
                    approval_status=ApprovalStepStatus.PENDING.value,
                    created_by_id=actor_id,
                )
            )
        self.session.flush()
        self.session.refresh(transfer, ["approvals", "inventory_requests"])

        logger.info(
            "transfer_requested",
            extra={
                "transfer_id": str(transfer.id),
                "order_id": str(order.id),
                "category": transfer.transfer_category,
                "weight": str(amount),
                "sequential": transfer.requires_sequential_approval,
                "status": transfer.status,
            },
        )
        if transfer.status == TransferStatus.PENDING.value:
            self._queue_next_approval(transfer)
        return transfer

    def _create_sequential_steps(
        self, transfer: WeightTransfer, category: str, actor_id: UUID
    ) -> None:
        warehouse_id = transfer.destination_warehouse_id
        for level in self.config.levels_for(category):
            try:
                approver_id = self.find_approver_for_level(level, warehouse_id)
            except ApproverUnresolvedError as exc:
                approver_id = None
                self._escalate_unresolved(transfer, level, exc, actor_id)
            self.session.add(
                WeightTransferApproval(
                    weight_transfer_id=transfer.id,
                    approval_sequence=level.sequence,
                    approver_role_level=level.role,
                    approver_id=approver_id,
                    warehouse_id=warehouse_id,
                    is_final=level.is_final,
                    approval_status=ApprovalStepStatus.PENDING.value,
                    created_by_id=actor_id,
                )
            )

    def _escalate_unresolved(
        self,
        transfer: WeightTransfer,
        level: ApprovalLevel,
        error: ApproverUnresolvedError,
        actor_id: UUID,
    ) -> None:
        logger.error(
            "approver_unresolved",
            extra={
                "transfer_id": str(transfer.id),
                "approval_sequence": level.sequence,
                "role": level.role,
                "warehouse_id": error.warehouse_id,
                "error_code": error.code,
            },
        )
        self._audit(
            transfer,
            TransferAuditAction.APPROVER_UNRESOLVED,
            actor_id,
            {
                "approval_sequence": level.sequence,
                "role": level.role,
                "warehouse_id": error.warehouse_id,
            },
        )
        self.outbox.queue(
            "approver_unresolved",
            transfer_id=str(transfer.id),
            order_id=str(transfer.order_id) if transfer.order_id else None,
            approval_sequence=level.sequence,
            role=level.role,
            warehouse_id=error.warehouse_id,
        )

    def _auto_approve(self, transfer: WeightTransfer, actor_id: UUID) -> None:
        now = self.clock.now()
        self.session.add(
            WeightTransferApproval(
                weight_transfer_id=transfer.id,
                approval_sequence=1,
                approver_role_level=AUTO_APPROVED_ROLE,
                approver_id=actor_id,
                warehouse_id=transfer.destination_warehouse_id,
                is_final=True,
                approval_status=ApprovalStepStatus.APPROVED.value,
                decided_at=now,
                decided_by=actor_id,
                comments="approved by policy",
                created_by_id=actor_id,
            )
        )
        self._set_status(transfer, TransferStatus.APPROVED)
        transfer.approved_at = now
        self._audit(
            transfer,
            TransferAuditAction.AUTO_APPROVED,
            actor_id,
            {"category": transfer.transfer_category},
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def can_user_approve(self, user_id: UUID, transfer: WeightTransfer) -> bool:
        """
        True when ``user_id`` may decide the transfer's current step.

        Non-sequential: the user holds the step's role (the destination
        stage's role).  Sequential: the user is the designated approver of
        the lowest pending step and every lower step is approved.
        """
        if transfer.status != TransferStatus.PENDING.value:
            return False
        step = next_pending_step(transfer.approvals)
        if step is None:
            return False
        if not transfer.requires_sequential_approval:
            return self.authorization.has_role(user_id, step.approver_role_level)
        return step.approver_id is not None and step.approver_id == user_id

    def _require_transition(self, transfer: WeightTransfer, target: TransferStatus) -> None:
        current = transfer.transfer_status
        if can_transition(current, target):
            return
        if current in TERMINAL_TRANSFER_STATUSES:
            if current == TransferStatus.REJECTED:
                raise AlreadyRejectedError(str(transfer.id))
            raise AlreadyCompletedError(str(transfer.id))
        if current == TransferStatus.APPROVED:
            raise AlreadyApprovedError(str(transfer.id))
        raise TransferNotApprovedError(str(transfer.id), transfer.status)

    def _set_status(self, transfer: WeightTransfer, target: TransferStatus) -> None:
        """Every status change goes through the transition table."""
        self._require_transition(transfer, target)
        transfer.status = target.value

    def _require_decider(self, user_id: UUID, transfer: WeightTransfer, action: str) -> WeightTransferApproval:
        if not self.can_user_approve(user_id, transfer):
            step = next_pending_step(transfer.approvals)
            reason = ""
            if step is not None:
                reason = (
                    f"step {step.approval_sequence} ({step.approver_role_level}) "
                    "is awaiting its approver"
                )
            logger.warning(
                "transfer_decision_refused",
                extra={
                    "transfer_id": str(transfer.id),
                    "actor_id": str(user_id),
                    "action": action,
                },
            )
            raise UnauthorizedError(str(user_id), f"{action} transfer {transfer.id}", reason)
        return next_pending_step(transfer.approvals)

    def approve(
        self, transfer_id: UUID, user_id: UUID, comments: str | None = None
    ) -> WeightTransfer:
        """
        Approve the current step.  The last step approves the transfer.

        Raises:
            AlreadyRejectedError / AlreadyCompletedError / AlreadyApprovedError
            UnauthorizedError: not this user's turn.
        """
        transfer = self._lock(transfer_id)
        self._require_transition(transfer, TransferStatus.APPROVED)
        step = self._require_decider(user_id, transfer, "approve")

        now = self.clock.now()
        step.approval_status = ApprovalStepStatus.APPROVED.value
        step.decided_at = now
        step.decided_by = user_id
        step.comments = comments
        step.updated_by_id = user_id
        self.session.flush()
        self._audit(
            transfer,
            TransferAuditAction.STEP_APPROVED,
            user_id,
            {"approval_sequence": step.approval_sequence, "role": step.approver_role_level},
        )
        logger.info(
            "transfer_step_approved",
            extra={
                "transfer_id": str(transfer.id),
                "approval_sequence": step.approval_sequence,
            },
        )

        if is_fully_approved(transfer.approvals):
            self._set_status(transfer, TransferStatus.APPROVED)
            transfer.approved_at = now
            transfer.updated_by_id = user_id
            self.session.flush()
            self._audit(transfer, TransferAuditAction.APPROVED, user_id, {})
            self.outbox.queue(
                "transfer_approved",
                transfer_id=str(transfer.id),
                order_id=str(transfer.order_id) if transfer.order_id else None,
            )
            logger.info("transfer_approved", extra={"transfer_id": str(transfer.id)})
        else:
            self._queue_next_approval(transfer)
        return transfer

    def reject(self, transfer_id: UUID, user_id: UUID, reason: str) -> WeightTransfer:
        """
        Reject at the current step.  Terminal for the whole transfer.

        Raises:
            InvalidRejectionReasonError: reason shorter than the configured minimum.
        """
        transfer = self._lock(transfer_id)
        self._require_transition(transfer, TransferStatus.REJECTED)
        step = self._require_decider(user_id, transfer, "reject")

        cleaned = (reason or "").strip()
        if len(cleaned) < self.config.min_rejection_reason_length:
            raise InvalidRejectionReasonError(self.config.min_rejection_reason_length)

        now = self.clock.now()
        step.approval_status = ApprovalStepStatus.REJECTED.value
        step.decided_at = now
        step.decided_by = user_id
        step.comments = cleaned
        step.updated_by_id = user_id

        self._set_status(transfer, TransferStatus.REJECTED)
        transfer.rejected_at = now
        transfer.rejected_by = user_id
        transfer.rejection_reason = cleaned
        transfer.updated_by_id = user_id

        for request in transfer.inventory_requests:
            if request.status in _OPEN_REQUEST_STATUSES:
                request.status = InventoryRequestStatus.CANCELLED.value
                request.updated_by_id = user_id
        self.session.flush()

        self._audit(
            transfer,
            TransferAuditAction.REJECTED,
            user_id,
            {"approval_sequence": step.approval_sequence, "reason": cleaned},
        )
        self.outbox.queue(
            "transfer_rejected",
            transfer_id=str(transfer.id),
            order_id=str(transfer.order_id) if transfer.order_id else None,
            requested_by=str(transfer.requested_by),
            rejected_by=str(user_id),
            reason=cleaned,
        )
        logger.info(
            "transfer_rejected",
            extra={
                "transfer_id": str(transfer.id),
                "approval_sequence": step.approval_sequence,
            },
        )
        return transfer

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(self, transfer_id: UUID, actor_id: UUID) -> WeightTransfer:
        """
        Move the weight in the ledger and close the transfer.

        All mutations run in one SAVEPOINT; on failure nothing is applied and
        the transfer stays approved (retryable).

        Raises:
            TransferNotApprovedError: approvals outstanding.
            AlreadyCompletedError / AlreadyRejectedError
            InventoryRequestsPendingError: confirmations required but missing.
        """
        transfer = self._lock(transfer_id)
        self._require_transition(transfer, TransferStatus.COMPLETED)
        if not is_fully_approved(transfer.approvals):
            raise TransferNotApprovedError(str(transfer.id), transfer.status)

        if self.config.require_inventory_confirmation:
            unconfirmed = [
                r
                for r in transfer.inventory_requests
                if r.status != InventoryRequestStatus.CONFIRMED.value
            ]
            if unconfirmed:
                raise InventoryRequestsPendingError(str(transfer.id), len(unconfirmed))

        now = self.clock.now()
        with self.session.begin_nested():
            source = self.ledger.get_stock(transfer.source_stock_id)
            destination = self.ledger.find_or_create_lot(
                source, transfer.destination_warehouse_id, actor_id
            )
            new_reservation = self.ledger.commit_movement(
                source.id,
                destination.id,
                transfer.weight_transferred,
                actor_id,
                reservation_id=transfer.source_reservation_id,
                re_reserve=transfer.order_material_id is not None,
                order_id=transfer.order_id,
                order_material_id=transfer.order_material_id,
            )
            transfer.destination_stock_id = destination.id

            if transfer.order_material_id is not None:
                material = self.session.get(OrderMaterial, transfer.order_material_id)
                material.stock_id = destination.id
                material.stock = destination
                material.reservation_id = new_reservation.id
                material.updated_by_id = actor_id
                self._mark_units_transferred(transfer, actor_id)

            for request in transfer.inventory_requests:
                request.status = InventoryRequestStatus.COMPLETED.value
                request.completed_at = now
                request.updated_by_id = actor_id

            self._set_status(transfer, TransferStatus.COMPLETED)
            transfer.completed_at = now
            transfer.completed_by = actor_id
            transfer.updated_by_id = actor_id
            self.session.flush()

            self._audit(
                transfer,
                TransferAuditAction.COMPLETED,
                actor_id,
                {
                    "weight": transfer.weight_transferred,
                    "source_stock_id": source.id,
                    "destination_stock_id": destination.id,
                },
            )

        self.outbox.queue(
            "transfer_completed",
            transfer_id=str(transfer.id),
            order_id=str(transfer.order_id) if transfer.order_id else None,
        )
        logger.info(
            "transfer_completed",
            extra={
                "transfer_id": str(transfer.id),
                "weight": str(transfer.weight_transferred),
                "destination_stock_id": str(transfer.destination_stock_id),
            },
        )
        return transfer

    def _mark_units_transferred(self, transfer: WeightTransfer, actor_id: UUID) -> None:
        units = self.session.execute(
            select(ProcessingUnit).where(
                ProcessingUnit.order_material_id == transfer.order_material_id,
                ProcessingUnit.stage == transfer.from_stage,
                ProcessingUnit.status == ProcessingUnitStatus.READY_FOR_TRANSFER.value,
            )
        ).scalars().all()
        for unit in units:
            unit.status = ProcessingUnitStatus.TRANSFERRED.value
            unit.updated_by_id = actor_id

    def record_completion_failure(
        self, transfer_id: UUID, actor_id: UUID, error: Exception
    ) -> TransferAuditEntry:
        """Audit a failed completion.  Run in its own transaction."""
        transfer = self.get(transfer_id)
        return self._audit(
            transfer,
            TransferAuditAction.COMPLETION_FAILED,
            actor_id,
            {
                "error_code": getattr(error, "code", type(error).__name__),
                "error": str(error),
            },
        )

    # ------------------------------------------------------------------
    # Inventory confirmations
    # ------------------------------------------------------------------

    def confirm_inventory_request(
        self,
        request_id: UUID,
        actor_id: UUID,
        counted_weight: Decimal | None = None,
    ) -> InventoryRequest:
        """Warehouse staff confirm the physical pick (source) or put (destination)."""
        request = self.session.execute(
            select(InventoryRequest)
            .where(InventoryRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if request is None:
            raise InventoryRequestNotFoundError(str(request_id))

        transfer = request.transfer
        if transfer.status == TransferStatus.REJECTED.value:
            raise AlreadyRejectedError(str(transfer.id))
        if transfer.status == TransferStatus.COMPLETED.value:
            raise AlreadyCompletedError(str(transfer.id))

        stage_name = (
            transfer.from_stage
            if request.request_type == InventoryRequestType.SOURCE_CHECK.value
            else transfer.to_stage
        )
        role = self.config.role_for(Stage(stage_name)) if stage_name else None
        if not (
            (role is not None and self.authorization.has_role(actor_id, role))
            or self.authorization.has_permission(actor_id, self.config.override_permission)
        ):
            raise UnauthorizedError(
                str(actor_id), f"confirm inventory request {request.id}", f"requires role {role}"
            )

        if counted_weight is not None:
            if not isinstance(counted_weight, Decimal) or not counted_weight.is_finite():
                raise InvalidQuantityError(counted_weight, "confirm_inventory_request")
            tolerance = self.config.weight_tolerance_percent
            if not within_tolerance(counted_weight, request.weight, tolerance):
                raise WeightBalanceMismatchError(
                    request.weight,
                    counted_weight,
                    abs(request.weight - counted_weight),
                    allowed_difference(request.weight, tolerance),
                )

        request.status = InventoryRequestStatus.CONFIRMED.value
        request.counted_weight = counted_weight
        request.confirmed_by = actor_id
        request.confirmed_at = self.clock.now()
        request.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "inventory_request_confirmed",
            extra={
                "transfer_id": str(transfer.id),
                "request_id": str(request.id),
                "request_type": request.request_type,
            },
        )
        return request

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def approval_status(self, transfer_id: UUID) -> ApprovalStatusSummary:
        transfer = self.get(transfer_id)
        steps = transfer.approvals
        step = next_pending_step(steps) if transfer.status == TransferStatus.PENDING.value else None
        return ApprovalStatusSummary(
            transfer_id=transfer.id,
            status=transfer.status,
            total_steps=len(steps),
            approved_steps=sum(
                1 for s in steps if s.approval_status == ApprovalStepStatus.APPROVED.value
            ),
            next_sequence=step.approval_sequence if step is not None else None,
            next_role=step.approver_role_level if step is not None else None,
            next_approver_id=step.approver_id if step is not None else None,
            unresolved_sequences=tuple(s.approval_sequence for s in steps if s.is_unresolved),
        )

    def pending_approvals_for(self, user_id: UUID) -> list[TransferInfo]:
        """Transfers whose current step ``user_id`` may decide now."""
        return [
            transfer.to_dto()
            for transfer in self._transfers.pending_candidates_for_approver(user_id)
            if self.can_user_approve(user_id, transfer)
        ]

    def audit_trail(self, transfer_id: UUID) -> list[TransferAuditEntry]:
        stmt = (
            select(TransferAuditEntry)
            .where(TransferAuditEntry.weight_transfer_id == transfer_id)
            .order_by(TransferAuditEntry.seq)
        )
        return list(self.session.execute(stmt).scalars().all())

    def verify_audit_chain(self, transfer_id: UUID) -> bool:
        """Recompute every hash of the transfer's audit chain."""
        prev_hash = None
        for entry in self.audit_trail(transfer_id):
            if entry.prev_hash != prev_hash:
                return False
            if hash_payload(entry.payload) != entry.payload_hash:
                return False
            expected = hash_audit_entry(
                "WeightTransfer",
                str(transfer_id),
                entry.action,
                entry.payload_hash,
                prev_hash,
            )
            if expected != entry.entry_hash:
                return False
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _queue_next_approval(self, transfer: WeightTransfer) -> None:
        step = next_pending_step(transfer.approvals)
        if step is None or step.is_unresolved:
            return
        self.outbox.queue(
            "transfer_approval_requested",
            transfer_id=str(transfer.id),
            order_id=str(transfer.order_id) if transfer.order_id else None,
            approval_sequence=step.approval_sequence,
            role=step.approver_role_level,
            approver_id=str(step.approver_id) if step.approver_id else None,
        )

    def _audit(
        self,
        transfer: WeightTransfer,
        action: TransferAuditAction,
        actor_id: UUID,
        payload: dict[str, Any],
    ) -> TransferAuditEntry:
        last = self.session.execute(
            select(TransferAuditEntry)
            .where(TransferAuditEntry.weight_transfer_id == transfer.id)
            .order_by(TransferAuditEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        prev_hash = last.entry_hash if last is not None else None

        # Canonical form so the stored JSON hashes the same after a round trip.
        stored = {
            key: (str(value) if isinstance(value, (Decimal, UUID)) else value)
            for key, value in payload.items()
        }
        payload_hash = hash_payload(stored)
        entry = TransferAuditEntry(
            weight_transfer_id=transfer.id,
            seq=(last.seq + 1) if last is not None else 1,
            action=action.value,
            actor_id=actor_id,
            payload=stored,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            entry_hash=hash_audit_entry(
                "WeightTransfer", str(transfer.id), action.value, payload_hash, prev_hash
            ),
            occurred_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

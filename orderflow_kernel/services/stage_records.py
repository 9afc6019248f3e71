"""
StageRecorder -- per-stage records and the stage history log.

Responsibility:
    Opens OrderStage rows when an order reaches a stage, closes them when
    their work is done (or parks them for approval) and appends to the
    OrderStageHistory log.  Shared by OrderStageMachine and
    SortingProcessor so neither has to call the other.

Architecture position:
    Kernel > Services.

Invariants enforced:
    - History rows get consecutive per-order sequence numbers; callers hold
      the order row lock while appending.
    - A stage that requires approval is never marked completed here; it is
      left in_progress with approval_status = pending.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock
from orderflow_kernel.domain.stages import (
    StageAction,
    Stage,
    StageApprovalStatus,
    StageStatus,
)
from orderflow_kernel.logging_config import get_logger
from orderflow_kernel.models.order import Order, OrderStage, OrderStageHistory
from orderflow_kernel.services.base import BaseService
from orderflow_kernel.services.notifications import NotificationOutbox

if TYPE_CHECKING:
    from orderflow_config.schema import WorkflowConfig

logger = get_logger("services.stage_records")


class StageRecorder(BaseService):
    """Writes OrderStage and OrderStageHistory rows."""

    def __init__(
        self,
        session: Session,
        config: WorkflowConfig,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        super().__init__(session, clock, outbox)
        self.config = config

    def open_stage(self, order: Order, stage: Stage, actor_id: UUID) -> OrderStage:
        """Create (or re-activate a pending) record for ``stage``, in progress."""
        record = order.stage_record(stage)
        if record is None:
            record = OrderStage(
                order_id=order.id,
                stage_name=stage.value,
                stage_order=self.config.stage_position(stage),
                created_by_id=actor_id,
            )
            self.session.add(record)
            order.stages.append(record)

        record.status = StageStatus.IN_PROGRESS.value
        record.started_at = self.clock.now()
        record.requires_approval = self.config.requires_approval(stage)
        record.approval_status = None
        record.updated_by_id = actor_id
        self.session.flush()
        return record

    def record_history(
        self,
        order: Order,
        action: StageAction,
        actor_id: UUID,
        from_stage: Stage | None = None,
        to_stage: Stage | None = None,
        reason: str | None = None,
    ) -> OrderStageHistory:
        last_seq = self.session.execute(
            select(func.coalesce(func.max(OrderStageHistory.seq), 0)).where(
                OrderStageHistory.order_id == order.id
            )
        ).scalar_one()
        entry = OrderStageHistory(
            order_id=order.id,
            seq=int(last_seq) + 1,
            action=action.value,
            from_stage=from_stage.value if from_stage is not None else None,
            to_stage=to_stage.value if to_stage is not None else None,
            actor_id=actor_id,
            reason=reason,
            occurred_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def finish_stage_work(self, order: Order, record: OrderStage, actor_id: UUID) -> bool:
        """
        The stage's work is done.

        Completes the record, or for approval-gated stages requests approval
        instead.  Returns True when the record is now completed.
        """
        stage = record.stage
        if record.requires_approval:
            if record.approval_status == StageApprovalStatus.PENDING.value:
                return False
            record.approval_status = StageApprovalStatus.PENDING.value
            record.updated_by_id = actor_id
            self.session.flush()
            self.record_history(
                order, StageAction.APPROVAL_REQUESTED, actor_id, from_stage=stage
            )
            self.outbox.queue(
                "stage_approval_requested",
                order_id=str(order.id),
                order_number=order.order_number,
                stage=stage.value,
                approver_role=self.config.stage_approver_role,
            )
            logger.info(
                "stage_approval_requested",
                extra={"order_id": str(order.id), "stage": stage.value},
            )
            return False

        self.complete_record(order, record, actor_id)
        return True

    def complete_record(self, order: Order, record: OrderStage, actor_id: UUID) -> None:
        record.status = StageStatus.COMPLETED.value
        record.completed_at = self.clock.now()
        record.updated_by_id = actor_id
        self.session.flush()
        self.record_history(order, StageAction.COMPLETED, actor_id, from_stage=record.stage)
        logger.info(
            "stage_completed",
            extra={"order_id": str(order.id), "stage": record.stage_name},
        )

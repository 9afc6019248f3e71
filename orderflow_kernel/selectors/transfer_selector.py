"""
Module: orderflow_kernel.selectors.transfer_selector
Responsibility: Read-only weight transfer queries: transfers by order and
    stage, open inbound transfers and approval queues.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select

from orderflow_kernel.domain.dtos import TransferInfo
from orderflow_kernel.domain.transfer import ApprovalStepStatus, TransferStatus
from orderflow_kernel.models.transfer import WeightTransfer, WeightTransferApproval
from orderflow_kernel.selectors.base import BaseSelector


class TransferSelector(BaseSelector):
    """Read-only access to weight transfers."""

    def for_order(self, order_id: UUID) -> list[TransferInfo]:
        stmt = (
            select(WeightTransfer)
            .where(WeightTransfer.order_id == order_id)
            .order_by(WeightTransfer.created_at, WeightTransfer.id)
        )
        return [t.to_dto() for t in self.session.execute(stmt).scalars().all()]

    def open_inbound(self, order_id: UUID, stage: str) -> list[TransferInfo]:
        """Transfers into ``stage`` for the order that are not yet completed.

        Rejected transfers count as open: the weight never arrived.
        """
        stmt = select(WeightTransfer).where(
            WeightTransfer.order_id == order_id,
            WeightTransfer.to_stage == stage,
            WeightTransfer.status != TransferStatus.COMPLETED.value,
        )
        return [t.to_dto() for t in self.session.execute(stmt).scalars().all()]

    def open_for_material(self, order_material_id: UUID, stage: str) -> list[TransferInfo]:
        stmt = select(WeightTransfer).where(
            WeightTransfer.order_material_id == order_material_id,
            WeightTransfer.to_stage == stage,
            WeightTransfer.status != TransferStatus.COMPLETED.value,
        )
        return [t.to_dto() for t in self.session.execute(stmt).scalars().all()]

    def pending_candidates_for_approver(self, approver_id: UUID) -> list[WeightTransfer]:
        """Pending transfers with a pending step designated to ``approver_id``.

        Returns ORM rows for the coordinator, which filters by turn.
        """
        stmt = (
            select(WeightTransfer)
            .join(
                WeightTransferApproval,
                WeightTransferApproval.weight_transfer_id == WeightTransfer.id,
            )
            .where(
                WeightTransfer.status == TransferStatus.PENDING.value,
                WeightTransferApproval.approval_status == ApprovalStepStatus.PENDING.value,
            )
            .where(
                (WeightTransferApproval.approver_id == approver_id)
                | (WeightTransferApproval.approver_id.is_(None))
            )
            .order_by(WeightTransfer.created_at, WeightTransfer.id)
            .distinct()
        )
        return list(self.session.execute(stmt).scalars().all())

"""
Module: orderflow_kernel.selectors.order_selector
Responsibility: Read-only order queries: snapshots and stage history.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select

from orderflow_kernel.domain.dtos import OrderInfo, StageHistoryInfo
from orderflow_kernel.models.order import Order, OrderStageHistory
from orderflow_kernel.selectors.base import BaseSelector


class OrderSelector(BaseSelector):
    """Read-only access to orders."""

    def get(self, order_id: UUID) -> OrderInfo | None:
        order = self.session.get(Order, order_id)
        return order.to_dto() if order is not None else None

    def by_number(self, order_number: str) -> OrderInfo | None:
        order = self.session.execute(
            select(Order).where(Order.order_number == order_number)
        ).scalar_one_or_none()
        return order.to_dto() if order is not None else None

    def history(self, order_id: UUID) -> list[StageHistoryInfo]:
        stmt = (
            select(OrderStageHistory)
            .where(OrderStageHistory.order_id == order_id)
            .order_by(OrderStageHistory.seq)
        )
        return [h.to_dto() for h in self.session.execute(stmt).scalars().all()]

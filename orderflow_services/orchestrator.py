"""
orderflow_services.orchestrator -- Central DI container for kernel services.

Responsibility:
    Creates every kernel service exactly once for one session and wires
    them together.  No kernel service constructs another; this is the only
    place the dependency graph is spelled out.

Architecture position:
    Services -- composition root over orderflow_kernel.

Invariants enforced:
    - Single-instance lifecycle: one StockLedger per unit of work, shared
      by the selector, the processor and the coordinator.
    - Every service shares the same Session, Clock and NotificationOutbox.

Usage:
    services = WorkflowOrchestrator(session, config, authorization, directory)
    services.stage_machine.move_to_next_stage(order_id, actor_id)
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from orderflow_config.schema import WorkflowConfig
from orderflow_kernel.domain.clock import Clock, SystemClock
from orderflow_kernel.domain.ports import ApproverDirectory, AuthorizationPort
from orderflow_kernel.domain.stages import Stage
from orderflow_kernel.selectors import OrderSelector, StockSelector, TransferSelector
from orderflow_kernel.services import (
    MaterialSelector,
    NotificationOutbox,
    OrderStageMachine,
    SortingProcessor,
    StageRecorder,
    StockLedger,
    TransferCoordinator,
)


class WorkflowOrchestrator:
    """Kernel services for one session, built in dependency order.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
    """

    def __init__(
        self,
        session: Session,
        config: WorkflowConfig,
        authorization: AuthorizationPort,
        directory: ApproverDirectory,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.clock = clock or SystemClock()
        self.outbox = outbox if outbox is not None else NotificationOutbox()

        # Read side
        self.orders = OrderSelector(session)
        self.stocks = StockSelector(session)
        self.transfers = TransferSelector(session)

        # Ledger first: everything below writes stock through it.
        warehouse_role = config.stage_roles.get(Stage.MATERIAL_RESERVATION)
        self.ledger = StockLedger(
            session,
            self.clock,
            self.outbox,
            config.low_stock_threshold,
            authorization=authorization,
            stock_roles=frozenset({warehouse_role}) if warehouse_role else frozenset(),
            stock_permissions=frozenset(
                {config.stock_permission, config.override_permission}
            ),
        )
        self.recorder = StageRecorder(session, config, self.clock, self.outbox)
        self.selector = MaterialSelector(session, self.ledger, self.clock, self.outbox)
        self.processor = SortingProcessor(
            session,
            self.ledger,
            self.recorder,
            config,
            authorization,
            self.clock,
            self.outbox,
        )
        self.coordinator = TransferCoordinator(
            session,
            self.ledger,
            config,
            authorization,
            directory,
            self.clock,
            self.outbox,
        )
        self.stage_machine = OrderStageMachine(
            session,
            config,
            authorization,
            self.recorder,
            self.selector,
            self.processor,
            self.coordinator,
            self.clock,
            self.outbox,
        )

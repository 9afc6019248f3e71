"""
SortingProcessor -- record the physical sorting and cutting of material.

Responsibility:
    Turns each reserved OrderMaterial into one ProcessingUnit per processing
    stage, then records the measured original weight, the derivative output
    weights (e.g. two rolls) and the waste.  The weight balance check here
    is the only guard between what happened on the floor and the stock
    ledger.

Architecture position:
    Kernel > Services.  ``prepare`` is called by OrderStageMachine when an
    order enters a processing stage; ``record`` is called by operators
    through the WorkflowEngine.

Invariants enforced:
    - |original - (sum(outputs) + waste)| <= original * tolerance / 100,
      where tolerance is WorkflowConfig.weight_tolerance_percent.  A
      mismatch raises; nothing is clamped and nothing is persisted.
    - The measured original weight matches the unit's expected weight (the
      material's outstanding reservation) within the same tolerance.
    - After recording, the material's reservation equals its outputs: the
      difference is written off with StockLedger.consume_reserved.
    - A unit is recorded exactly once.

Failure modes:
    - WeightBalanceMismatchError: balance or expected-weight check failed.
    - InvalidProcessingDataError: malformed weights or missing waste reason.
    - StagePreconditionNotMetError: wrong stage, unit already recorded, or
      the unit's inbound transfer is not completed yet.
    - UnauthorizedError: actor lacks the stage role.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock
from orderflow_kernel.domain.dtos import ProcessingResult
from orderflow_kernel.domain.ports import AuthorizationPort
from orderflow_kernel.domain.stages import PROCESSING_STAGES, Stage, StageStatus
from orderflow_kernel.domain.weights import (
    allowed_difference,
    check_weight_balance,
    within_tolerance,
)
from orderflow_kernel.exceptions import (
    InvalidProcessingDataError,
    OrderNotFoundError,
    ProcessingUnitNotFoundError,
    StagePreconditionNotMetError,
    UnauthorizedError,
    WeightBalanceMismatchError,
)
from orderflow_kernel.logging_config import get_logger
from orderflow_kernel.models.material import OrderMaterial, OrderMaterialStatus
from orderflow_kernel.models.order import Order
from orderflow_kernel.models.processing import (
    ProcessingUnit,
    ProcessingUnitStatus,
    Waste,
)
from orderflow_kernel.selectors.transfer_selector import TransferSelector
from orderflow_kernel.services.base import BaseService
from orderflow_kernel.services.notifications import NotificationOutbox
from orderflow_kernel.services.stage_records import StageRecorder
from orderflow_kernel.services.stock_ledger import StockLedger

if TYPE_CHECKING:
    from orderflow_config.schema import WorkflowConfig

logger = get_logger("services.sorting_processor")

_ZERO = Decimal("0")


def _require_decimal(field: str, value) -> None:
    if isinstance(value, float) or not isinstance(value, Decimal):
        raise InvalidProcessingDataError(field, "must be a Decimal")


def validate_processing_weights(
    original_weight: Decimal,
    output_weights: Sequence[Decimal],
    waste_weight: Decimal,
    waste_reason: str | None,
) -> None:
    """Shape checks that run before the balance check."""
    _require_decimal("original_weight", original_weight)
    _require_decimal("waste_weight", waste_weight)
    if original_weight <= _ZERO:
        raise InvalidProcessingDataError("original_weight", "must be greater than zero")
    if not output_weights:
        raise InvalidProcessingDataError("output_weights", "at least one output is required")
    for index, weight in enumerate(output_weights):
        _require_decimal(f"output_weights[{index}]", weight)
        if weight < _ZERO:
            raise InvalidProcessingDataError(f"output_weights[{index}]", "cannot be negative")
    if not any(weight > _ZERO for weight in output_weights):
        raise InvalidProcessingDataError("output_weights", "at least one output must be positive")
    if waste_weight < _ZERO:
        raise InvalidProcessingDataError("waste_weight", "cannot be negative")
    if waste_weight > _ZERO and not (waste_reason or "").strip():
        raise InvalidProcessingDataError("waste_reason", "required when waste is reported")


class SortingProcessor(BaseService):
    """
    Sorting/cutting work units and their weight records.

    Contract:
        Returns frozen ProcessingResult DTOs.  Flushes only.
    """

    def __init__(
        self,
        session: Session,
        ledger: StockLedger,
        recorder: StageRecorder,
        config: WorkflowConfig,
        authorization: AuthorizationPort,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        super().__init__(session, clock, outbox)
        self.ledger = ledger
        self.recorder = recorder
        self.config = config
        self.authorization = authorization
        self._transfers = TransferSelector(session)

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def units_for(self, order_id: UUID, stage: Stage) -> list[ProcessingUnit]:
        stmt = (
            select(ProcessingUnit)
            .where(ProcessingUnit.order_id == order_id, ProcessingUnit.stage == stage.value)
            .order_by(ProcessingUnit.created_at, ProcessingUnit.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def all_recorded(self, order_id: UUID, stage: Stage) -> bool:
        units = self.units_for(order_id, stage)
        return bool(units) and all(
            u.status != ProcessingUnitStatus.AWAITING_WEIGHTS.value for u in units
        )

    def prepare(self, order: Order, stage: Stage, actor_id: UUID) -> list[ProcessingUnit]:
        """One awaiting unit per reserved material.  Idempotent."""
        if stage not in PROCESSING_STAGES:
            raise ValueError(f"{stage.value} is not a processing stage")

        existing = {u.order_material_id: u for u in self.units_for(order.id, stage)}
        materials = self.session.execute(
            select(OrderMaterial)
            .where(
                OrderMaterial.order_id == order.id,
                OrderMaterial.status == OrderMaterialStatus.RESERVED.value,
                OrderMaterial.reserved_weight > _ZERO,
            )
            .order_by(OrderMaterial.created_at, OrderMaterial.id)
        ).scalars().all()

        created = 0
        for material in materials:
            if material.id in existing:
                continue
            unit = ProcessingUnit(
                order_id=order.id,
                order_material_id=material.id,
                stage=stage.value,
                expected_weight=material.reserved_weight,
                status=ProcessingUnitStatus.AWAITING_WEIGHTS.value,
                created_by_id=actor_id,
            )
            self.session.add(unit)
            existing[material.id] = unit
            created += 1
        self.session.flush()

        logger.info(
            "processing_units_prepared",
            extra={
                "order_id": str(order.id),
                "stage": stage.value,
                "created_count": created,
                "total": len(existing),
            },
        )
        return self.units_for(order.id, stage)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        unit_id: UUID,
        actor_id: UUID,
        original_weight: Decimal,
        output_weights: Sequence[Decimal],
        waste_weight: Decimal = _ZERO,
        waste_reason: str | None = None,
    ) -> ProcessingResult:
        """
        Record the measured weights of one unit.

        Every check runs before anything is written.

        Raises:
            WeightBalanceMismatchError: outputs + waste do not account for
                the original weight, or the original weight differs from
                the expected weight, beyond tolerance.
        """
        unit = self._lock_unit(unit_id)
        stage = Stage(unit.stage)
        order = self.session.get(Order, unit.order_id)
        if order is None:
            raise OrderNotFoundError(str(unit.order_id))
        self._require_stage_actor(actor_id, stage)

        if unit.status != ProcessingUnitStatus.AWAITING_WEIGHTS.value:
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "unit weights are already recorded"
            )
        record = order.stage_record(stage)
        if (
            order.current_stage != stage.value
            or record is None
            or record.status != StageStatus.IN_PROGRESS.value
        ):
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "order is not working on this stage"
            )
        if self._transfers.open_for_material(unit.order_material_id, stage.value):
            raise StagePreconditionNotMetError(
                str(order.id), stage.value, "inbound weight transfer is not completed"
            )

        outputs = list(output_weights)
        validate_processing_weights(original_weight, outputs, waste_weight, waste_reason)

        tolerance = self.config.weight_tolerance_percent
        balance = check_weight_balance(original_weight, outputs, waste_weight, tolerance)
        if not balance.balanced:
            logger.warning(
                "weight_balance_mismatch",
                extra={
                    "unit_id": str(unit.id),
                    "original_weight": str(original_weight),
                    "total_accounted": str(balance.total_accounted),
                    "difference": str(balance.difference),
                    "allowed_difference": str(balance.allowed_difference),
                },
            )
            raise WeightBalanceMismatchError(
                original_weight,
                balance.total_accounted,
                balance.difference,
                balance.allowed_difference,
            )
        if not within_tolerance(original_weight, unit.expected_weight, tolerance):
            logger.warning(
                "expected_weight_mismatch",
                extra={
                    "unit_id": str(unit.id),
                    "expected_weight": str(unit.expected_weight),
                    "original_weight": str(original_weight),
                },
            )
            raise WeightBalanceMismatchError(
                unit.expected_weight,
                original_weight,
                abs(unit.expected_weight - original_weight),
                allowed_difference(unit.expected_weight, tolerance),
            )

        waste_id = None
        with self.session.begin_nested():
            material = self.session.get(OrderMaterial, unit.order_material_id)
            loss = unit.expected_weight - balance.total_output
            if loss > _ZERO:
                self.ledger.consume_reserved(
                    material.stock_id,
                    loss,
                    actor_id,
                    reservation_id=material.reservation_id,
                    reason=f"{stage.value} loss",
                )
                material.reserved_weight = material.reserved_weight - loss
                material.updated_by_id = actor_id

            unit.original_weight = original_weight
            unit.output_weights = [str(w) for w in outputs]
            unit.total_output_weight = balance.total_output
            unit.waste_weight = waste_weight
            unit.waste_reason = waste_reason
            unit.status = ProcessingUnitStatus.READY_FOR_TRANSFER.value
            unit.performed_by = actor_id
            unit.recorded_at = self.clock.now()
            unit.updated_by_id = actor_id

            if waste_weight > _ZERO:
                waste = Waste(
                    product_id=material.product_id,
                    order_id=order.id,
                    processing_unit_id=unit.id,
                    stage=stage.value,
                    quantity=waste_weight,
                    reason=waste_reason,
                    reported_by=actor_id,
                    created_by_id=actor_id,
                )
                self.session.add(waste)
                self.session.flush()
                waste_id = waste.id

            record.weight_input = record.weight_input + original_weight
            record.weight_output = record.weight_output + balance.total_output
            record.waste_weight = record.waste_weight + waste_weight
            record.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "processing_recorded",
            extra={
                "unit_id": str(unit.id),
                "order_id": str(order.id),
                "stage": stage.value,
                "original_weight": str(original_weight),
                "total_output": str(balance.total_output),
                "waste_weight": str(waste_weight),
            },
        )

        stage_completed = False
        if self.all_recorded(order.id, stage):
            stage_completed = self.recorder.finish_stage_work(order, record, actor_id)

        return ProcessingResult(
            unit=unit.to_dto(), waste_id=waste_id, stage_completed=stage_completed
        )

    def record_two_roll_split(
        self,
        unit_id: UUID,
        actor_id: UUID,
        original_weight: Decimal,
        roll1_weight: Decimal,
        roll2_weight: Decimal,
        waste_weight: Decimal = _ZERO,
        waste_reason: str | None = None,
    ) -> ProcessingResult:
        """The common case: one original roll cut into two."""
        return self.record(
            unit_id,
            actor_id,
            original_weight,
            [roll1_weight, roll2_weight],
            waste_weight,
            waste_reason,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_unit(self, unit_id: UUID) -> ProcessingUnit:
        unit = self.session.execute(
            select(ProcessingUnit)
            .where(ProcessingUnit.id == unit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if unit is None:
            raise ProcessingUnitNotFoundError(str(unit_id))
        return unit

    def _require_stage_actor(self, actor_id: UUID, stage: Stage) -> None:
        role = self.config.role_for(stage)
        if self.authorization.has_role(actor_id, role):
            return
        if self.authorization.has_permission(actor_id, self.config.override_permission):
            return
        raise UnauthorizedError(
            str(actor_id), f"record {stage.value} weights", f"requires role {role}"
        )

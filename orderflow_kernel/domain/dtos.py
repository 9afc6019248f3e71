"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable snapshots that leave the kernel: services hand these back to
    the WorkflowEngine, which places them in ``OperationResult.data``.  ORM
    rows never cross that boundary.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``to_dto()`` on the ORM models is
    the only producer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


# =========================================================================
# Inputs
# =========================================================================


@dataclass(frozen=True)
class MaterialSelectionLine:
    """One manually chosen stock lot for an order."""

    stock_id: UUID
    allocated_weight: Decimal
    specifications: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.allocated_weight, float):
            raise TypeError("allocated_weight must be Decimal, not float")


# =========================================================================
# Stock
# =========================================================================


@dataclass(frozen=True)
class StockInfo:
    id: UUID
    product_id: UUID
    warehouse_id: UUID
    quantity: Decimal
    reserved_quantity: Decimal
    available_quantity: Decimal
    unit_cost: Decimal
    batch_number: str | None
    expiry_date: date | None
    is_active: bool


@dataclass(frozen=True)
class ReservationInfo:
    id: UUID
    stock_id: UUID
    order_id: UUID | None
    quantity: Decimal
    status: str


# =========================================================================
# Orders
# =========================================================================


@dataclass(frozen=True)
class OrderStageInfo:
    stage_name: str
    stage_order: int
    status: str
    requires_approval: bool
    approval_status: str | None
    started_at: datetime | None
    completed_at: datetime | None
    weight_input: Decimal
    weight_output: Decimal
    waste_weight: Decimal
    notes: str | None = None


@dataclass(frozen=True)
class OrderInfo:
    id: UUID
    order_number: str
    status: str
    current_stage: str
    is_urgent: bool
    required_weight: Decimal
    selected_materials: bool
    pricing_calculated: bool
    estimated_material_cost: Decimal | None
    stages: tuple[OrderStageInfo, ...] = ()


@dataclass(frozen=True)
class StageHistoryInfo:
    action: str
    from_stage: str | None
    to_stage: str | None
    actor_id: UUID
    reason: str | None
    occurred_at: datetime


# =========================================================================
# Materials
# =========================================================================


@dataclass(frozen=True)
class MaterialAllocation:
    order_material_id: UUID
    stock_id: UUID
    allocated_weight: Decimal
    unit_cost: Decimal
    expiry_date: date | None


@dataclass(frozen=True)
class SelectionResult:
    order_id: UUID
    mode: str
    allocations: tuple[MaterialAllocation, ...]
    total_weight: Decimal
    estimated_cost: Decimal


@dataclass(frozen=True)
class AvailabilityReport:
    order_id: UUID
    required_weight: Decimal
    available_weight: Decimal
    candidate_count: int

    @property
    def shortage(self) -> Decimal:
        return max(self.required_weight - self.available_weight, Decimal("0"))

    @property
    def sufficient(self) -> bool:
        return self.available_weight >= self.required_weight


# =========================================================================
# Processing
# =========================================================================


@dataclass(frozen=True)
class ProcessingUnitInfo:
    id: UUID
    order_id: UUID
    order_material_id: UUID
    stage: str
    expected_weight: Decimal
    original_weight: Decimal | None
    output_weights: tuple[Decimal, ...]
    waste_weight: Decimal | None
    status: str


@dataclass(frozen=True)
class ProcessingResult:
    unit: ProcessingUnitInfo
    waste_id: UUID | None
    stage_completed: bool


# =========================================================================
# Transfers
# =========================================================================


@dataclass(frozen=True)
class ApprovalStepInfo:
    approval_sequence: int
    approver_role_level: str
    approver_id: UUID | None
    approval_status: str
    decided_at: datetime | None
    is_final: bool


@dataclass(frozen=True)
class TransferInfo:
    id: UUID
    transfer_group_id: UUID
    order_id: UUID | None
    order_material_id: UUID | None
    source_warehouse_id: UUID
    destination_warehouse_id: UUID
    weight_transferred: Decimal
    transfer_category: str
    requires_sequential_approval: bool
    status: str
    steps: tuple[ApprovalStepInfo, ...] = ()


@dataclass(frozen=True)
class ApprovalStatusSummary:
    transfer_id: UUID
    status: str
    total_steps: int
    approved_steps: int
    next_sequence: int | None
    next_role: str | None
    next_approver_id: UUID | None
    unresolved_sequences: tuple[int, ...]

    @property
    def progress_percent(self) -> int:
        if self.total_steps == 0:
            return 0
        return int(self.approved_steps * 100 / self.total_steps)

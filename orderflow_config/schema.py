"""
WorkflowConfig schema.

The explicit configuration value handed to the workflow services at
construction time: the ordered stage list, the role that owns each stage,
which stages need approval or may be skipped, transfer boundaries between
stages and the approval chain for each transfer category.  No service reads
configuration from anywhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any
from uuid import UUID

from orderflow_kernel.domain.stages import (
    FINAL_STAGE,
    FIRST_STAGE,
    STAGE_SEQUENCE,
    Stage,
    build_transition_table,
)
from orderflow_kernel.domain.transfer import ApprovalLevel
from orderflow_kernel.logging_config import get_logger

logger = get_logger("config.schema")


DEFAULT_STAGE_ROLES: dict[Stage, str] = {
    Stage.CREATION: "موظف_مبيعات",
    Stage.REVIEW: "مدير_مبيعات",
    Stage.MATERIAL_RESERVATION: "مسؤول_مستودع",
    Stage.SORTING: "مسؤول_فرازة",
    Stage.CUTTING: "مسؤول_قصاصة",
    Stage.PACKAGING: "مسؤول_تعبئة",
    Stage.INVOICING: "محاسب",
    Stage.DELIVERY: "مسؤول_تسليم",
}


@dataclass(frozen=True)
class TransferBoundary:
    """Moving from ``from_stage`` to ``to_stage`` implies a weight transfer."""

    from_stage: Stage
    to_stage: Stage
    category: str
    requires_sequential_approval: bool = False


@dataclass(frozen=True)
class WorkflowConfig:
    """
    Configuration for the order stage workflow.

    Override at instantiation or load from YAML:

        config = WorkflowConfig(weight_tolerance_percent=Decimal("1.0"))
        config = load_workflow_config(Path("workflow.yaml"))
    """

    name: str = "default"
    version: int = 1

    # Stage model
    stages: tuple[Stage, ...] = STAGE_SEQUENCE
    stage_roles: dict[Stage, str] = field(
        default_factory=lambda: dict(DEFAULT_STAGE_ROLES)
    )
    approval_required_stages: frozenset[Stage] = frozenset()
    stage_approver_role: str = "مدير_إنتاج"
    skippable_stages: frozenset[Stage] = frozenset()

    # Permissions
    skip_permission: str = "orders.skip_stage"
    override_permission: str = "orders.override_stage"
    cancel_permission: str = "orders.cancel"
    select_materials_permission: str = "orders.select_materials"
    stock_permission: str = "stock.manage"

    # Sorting / cutting
    weight_tolerance_percent: Decimal = Decimal("0.5")

    # Transfers
    transfer_boundaries: tuple[TransferBoundary, ...] = ()
    approval_levels: dict[str, tuple[ApprovalLevel, ...]] = field(default_factory=dict)
    auto_approved_categories: frozenset[str] = frozenset({"waste"})
    stage_warehouses: dict[Stage, UUID] = field(default_factory=dict)
    min_rejection_reason_length: int = 10
    require_inventory_confirmation: bool = False
    auto_complete_transfers: bool = False

    # Materials and stock
    auto_select_materials: bool = True
    low_stock_threshold: Decimal = Decimal("0")

    checksum: str | None = None

    def __post_init__(self):
        if not self.stages:
            raise ValueError("stages cannot be empty")
        if self.stages[0] != FIRST_STAGE or self.stages[-1] != FINAL_STAGE:
            raise ValueError(
                f"stages must start with {FIRST_STAGE.value} and end with "
                f"{FINAL_STAGE.value}"
            )
        if len(set(self.stages)) != len(self.stages):
            raise ValueError("stages must not repeat")
        positions = [STAGE_SEQUENCE.index(s) for s in self.stages]
        if positions != sorted(positions):
            raise ValueError("stages must follow the canonical stage order")

        missing = [s.value for s in self.stages if s not in self.stage_roles]
        if missing:
            raise ValueError(f"stage_roles missing for stages: {missing}")

        for stage in self.approval_required_stages | self.skippable_stages:
            if stage not in self.stages:
                raise ValueError(f"stage {stage.value} is not configured")
        if FIRST_STAGE in self.skippable_stages or FINAL_STAGE in self.skippable_stages:
            raise ValueError("the first and final stages cannot be skippable")

        if self.weight_tolerance_percent < 0:
            raise ValueError("weight_tolerance_percent cannot be negative")
        if self.weight_tolerance_percent > Decimal("100"):
            raise ValueError("weight_tolerance_percent cannot exceed 100%")
        if self.min_rejection_reason_length < 0:
            raise ValueError("min_rejection_reason_length cannot be negative")
        if self.low_stock_threshold < 0:
            raise ValueError("low_stock_threshold cannot be negative")

        table = build_transition_table(self.stages)
        for boundary in self.transfer_boundaries:
            if boundary.to_stage not in table.get(boundary.from_stage, frozenset()):
                raise ValueError(
                    f"transfer boundary {boundary.from_stage.value} -> "
                    f"{boundary.to_stage.value} is not a stage transition"
                )
            if boundary.requires_sequential_approval:
                if not self.approval_levels.get(boundary.category):
                    raise ValueError(
                        f"sequential category {boundary.category!r} has no "
                        "approval_levels"
                    )

        for category, levels in self.approval_levels.items():
            sequences = [level.sequence for level in levels]
            if sequences != list(range(1, len(levels) + 1)):
                raise ValueError(
                    f"approval_levels for {category!r} must be numbered 1..N, "
                    f"got {sequences}"
                )

        logger.info(
            "workflow_config_initialized",
            extra={
                "config_name": self.name,
                "config_version": self.version,
                "stage_count": len(self.stages),
                "weight_tolerance_percent": str(self.weight_tolerance_percent),
                "transfer_boundaries": len(self.transfer_boundaries),
            },
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def transition_table(self) -> dict[Stage, frozenset[Stage]]:
        return build_transition_table(self.stages)

    def next_stage(self, stage: Stage) -> Stage | None:
        index = self.stages.index(stage)
        if index + 1 < len(self.stages):
            return self.stages[index + 1]
        return None

    def stage_position(self, stage: Stage) -> int:
        return self.stages.index(stage) + 1

    def role_for(self, stage: Stage) -> str:
        return self.stage_roles[stage]

    def requires_approval(self, stage: Stage) -> bool:
        return stage in self.approval_required_stages

    def boundary_between(self, from_stage: Stage, to_stage: Stage) -> TransferBoundary | None:
        for boundary in self.transfer_boundaries:
            if boundary.from_stage == from_stage and boundary.to_stage == to_stage:
                return boundary
        return None

    def levels_for(self, category: str) -> tuple[ApprovalLevel, ...]:
        return self.approval_levels.get(category, ())

    def warehouse_for(self, stage: Stage) -> UUID | None:
        return self.stage_warehouses.get(stage)

    def with_overrides(self, **changes: Any) -> WorkflowConfig:
        """Copy of this config with ``changes`` applied (and re-validated)."""
        return replace(self, **changes)

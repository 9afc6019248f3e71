"""
Order stage domain types (``orderflow_kernel.domain.stages``).

Responsibility
--------------
The explicit, enumerated stage model of an order's physical fulfilment:
the ordered stage list, the one-step-forward transition table, order
status ranks and the per-stage record statuses.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Stage names are members of ``Stage``; free-form strings are parsed once
  at the boundary by ``parse_stage`` and never compared as text afterwards.
* ``build_transition_table`` allows exactly one outgoing edge per stage
  (the next stage in the configured sequence).  There are no backward edges.
* Order status is monotonic by ``ORDER_STATUS_RANK``, except CANCELLED.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from orderflow_kernel.exceptions import InvalidStageError


class Stage(str, Enum):
    """Physical fulfilment stages, in total order."""

    CREATION = "إنشاء"
    REVIEW = "مراجعة"
    MATERIAL_RESERVATION = "حجز_المواد"
    SORTING = "فرز"
    CUTTING = "قص"
    PACKAGING = "تعبئة"
    INVOICING = "فوترة"
    DELIVERY = "تسليم"

    @property
    def position(self) -> int:
        """1-based position in the canonical sequence."""
        return STAGE_SEQUENCE.index(self) + 1


STAGE_SEQUENCE: tuple[Stage, ...] = (
    Stage.CREATION,
    Stage.REVIEW,
    Stage.MATERIAL_RESERVATION,
    Stage.SORTING,
    Stage.CUTTING,
    Stage.PACKAGING,
    Stage.INVOICING,
    Stage.DELIVERY,
)

# Stages whose work is recorded through the sorting/cutting processor.
PROCESSING_STAGES: frozenset[Stage] = frozenset({Stage.SORTING, Stage.CUTTING})

FIRST_STAGE = Stage.CREATION
FINAL_STAGE = Stage.DELIVERY


def parse_stage(value: str | Stage) -> Stage:
    """
    Resolve a stage from its Arabic value or its English member name.

    Raises:
        InvalidStageError: For anything else.
    """
    if isinstance(value, Stage):
        return value
    try:
        return Stage(value)
    except ValueError:
        pass
    try:
        return Stage[str(value).upper()]
    except KeyError:
        raise InvalidStageError(str(value)) from None


def build_transition_table(
    stages: Iterable[Stage] = STAGE_SEQUENCE,
) -> dict[Stage, frozenset[Stage]]:
    """Each stage may move only to its successor; the last has no edges."""
    ordered = tuple(stages)
    table: dict[Stage, frozenset[Stage]] = {}
    for index, stage in enumerate(ordered):
        if index + 1 < len(ordered):
            table[stage] = frozenset({ordered[index + 1]})
        else:
            table[stage] = frozenset()
    return table


STAGE_TRANSITIONS: dict[Stage, frozenset[Stage]] = build_transition_table()


def next_stage(stage: Stage, stages: tuple[Stage, ...] = STAGE_SEQUENCE) -> Stage | None:
    """Successor of ``stage`` in ``stages``, or None for the final stage."""
    index = stages.index(stage)
    if index + 1 < len(stages):
        return stages[index + 1]
    return None


# =========================================================================
# Order status
# =========================================================================


class OrderStatus(str, Enum):
    DRAFT = "draft"
    UNDER_REVIEW = "under_review"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ORDER_STATUS_RANK: dict[OrderStatus, int] = {
    OrderStatus.DRAFT: 0,
    OrderStatus.UNDER_REVIEW: 1,
    OrderStatus.CONFIRMED: 2,
    OrderStatus.IN_PROGRESS: 3,
    OrderStatus.COMPLETED: 4,
}

CANCELLABLE_ORDER_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.DRAFT,
    OrderStatus.UNDER_REVIEW,
    OrderStatus.CONFIRMED,
})

TERMINAL_ORDER_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
})

# Minimum order status implied by having reached a stage.
STAGE_STATUS_FLOOR: dict[Stage, OrderStatus] = {
    Stage.CREATION: OrderStatus.DRAFT,
    Stage.REVIEW: OrderStatus.UNDER_REVIEW,
    Stage.MATERIAL_RESERVATION: OrderStatus.CONFIRMED,
    Stage.SORTING: OrderStatus.IN_PROGRESS,
    Stage.CUTTING: OrderStatus.IN_PROGRESS,
    Stage.PACKAGING: OrderStatus.IN_PROGRESS,
    Stage.INVOICING: OrderStatus.IN_PROGRESS,
    Stage.DELIVERY: OrderStatus.IN_PROGRESS,
}


def advance_status(current: OrderStatus, target: OrderStatus) -> OrderStatus:
    """Raise ``current`` to ``target`` without ever lowering it."""
    if current in TERMINAL_ORDER_STATUSES:
        return current
    if ORDER_STATUS_RANK[target] > ORDER_STATUS_RANK[current]:
        return target
    return current


# =========================================================================
# Per-stage record statuses
# =========================================================================


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# A stage that has been left (completed or skipped) never changes status.
CLOSED_STAGE_STATUSES: frozenset[StageStatus] = frozenset({
    StageStatus.COMPLETED,
    StageStatus.SKIPPED,
})


class StageApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StageAction(str, Enum):
    """Actions recorded in the append-only stage history."""

    CREATED = "created"
    COMPLETED = "completed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    MOVED = "moved"
    SKIPPED = "skipped"
    MATERIALS_SELECTED = "materials_selected"
    CANCELLED = "cancelled"
    CLOSED = "closed"

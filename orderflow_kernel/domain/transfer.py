"""
Weight transfer domain types (``orderflow_kernel.domain.transfer``).

Responsibility
--------------
Pure lifecycle model for inter-warehouse weight transfers and their
sequential approval chain.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``TRANSFER_TRANSITIONS`` defines the only valid status transitions:
  pending -> approved | rejected, approved -> completed.  Rejected and
  completed are terminal.
* An approval step at sequence *k* is actionable only when every step at
  a lower sequence is approved (``next_pending_step``).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol
from uuid import UUID


class TransferStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({
        TransferStatus.APPROVED,
        TransferStatus.REJECTED,
    }),
    TransferStatus.APPROVED: frozenset({TransferStatus.COMPLETED}),
    TransferStatus.REJECTED: frozenset(),
    TransferStatus.COMPLETED: frozenset(),
}

TERMINAL_TRANSFER_STATUSES: frozenset[TransferStatus] = frozenset({
    TransferStatus.REJECTED,
    TransferStatus.COMPLETED,
})


def can_transition(current: TransferStatus, target: TransferStatus) -> bool:
    return target in TRANSFER_TRANSITIONS[current]


class ApprovalStepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InventoryRequestType(str, Enum):
    SOURCE_CHECK = "source_check"
    DESTINATION_CHECK = "destination_check"


class InventoryRequestStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransferAuditAction(str, Enum):
    REQUESTED = "requested"
    AUTO_APPROVED = "auto_approved"
    STEP_APPROVED = "step_approved"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    COMPLETION_FAILED = "completion_failed"
    APPROVER_UNRESOLVED = "approver_unresolved"


class ApprovalStepLike(Protocol):
    """Anything shaped like an approval step (ORM row or DTO)."""

    approval_sequence: int
    approval_status: str
    approver_id: UUID | None


@dataclass(frozen=True)
class ApprovalLevel:
    """One configured level of a sequential approval chain."""

    sequence: int
    role: str
    is_final: bool = False


def _status(step: ApprovalStepLike) -> ApprovalStepStatus:
    return ApprovalStepStatus(step.approval_status)


def next_pending_step(steps: Iterable[ApprovalStepLike]) -> ApprovalStepLike | None:
    """
    The lowest-sequence pending step, if every lower step is approved.

    Returns None when the chain is fully approved or contains a rejection.
    """
    for step in sorted(steps, key=lambda s: s.approval_sequence):
        status = _status(step)
        if status == ApprovalStepStatus.APPROVED:
            continue
        if status == ApprovalStepStatus.PENDING:
            return step
        return None
    return None


def is_fully_approved(steps: Iterable[ApprovalStepLike]) -> bool:
    """True when the chain is non-empty and every step is approved."""
    statuses = [_status(s) for s in steps]
    return bool(statuses) and all(s == ApprovalStepStatus.APPROVED for s in statuses)


def has_rejection(steps: Iterable[ApprovalStepLike]) -> bool:
    return any(_status(s) == ApprovalStepStatus.REJECTED for s in steps)

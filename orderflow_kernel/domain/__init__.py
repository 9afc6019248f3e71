"""
Pure domain layer.

Stage model, transfer lifecycle, weight balance, ports and DTOs, with NO
dependencies on the ORM, the database or I/O.
"""

from orderflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from orderflow_kernel.domain.ports import (
    ApproverDirectory,
    AuthorizationPort,
    NotificationPort,
)
from orderflow_kernel.domain.results import OperationResult
from orderflow_kernel.domain.stages import (
    STAGE_SEQUENCE,
    STAGE_TRANSITIONS,
    OrderStatus,
    Stage,
    StageApprovalStatus,
    StageStatus,
    next_stage,
    parse_stage,
)
from orderflow_kernel.domain.transfer import (
    ApprovalLevel,
    ApprovalStepStatus,
    TransferStatus,
    is_fully_approved,
    next_pending_step,
)
from orderflow_kernel.domain.weights import WeightBalanceCheck, check_weight_balance

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "AuthorizationPort",
    "ApproverDirectory",
    "NotificationPort",
    "OperationResult",
    "Stage",
    "STAGE_SEQUENCE",
    "STAGE_TRANSITIONS",
    "OrderStatus",
    "StageStatus",
    "StageApprovalStatus",
    "next_stage",
    "parse_stage",
    "ApprovalLevel",
    "ApprovalStepStatus",
    "TransferStatus",
    "is_fully_approved",
    "next_pending_step",
    "WeightBalanceCheck",
    "check_weight_balance",
]

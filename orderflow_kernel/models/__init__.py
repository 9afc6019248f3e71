"""ORM models for the orderflow kernel."""

from orderflow_kernel.models.audit import TransferAuditEntry
from orderflow_kernel.models.material import OrderMaterial, OrderMaterialStatus
from orderflow_kernel.models.order import Order, OrderStage, OrderStageHistory
from orderflow_kernel.models.processing import (
    ProcessingUnit,
    ProcessingUnitStatus,
    Waste,
)
from orderflow_kernel.models.stock import (
    MovementType,
    ReservationStatus,
    Stock,
    StockMovement,
    StockReservation,
)
from orderflow_kernel.models.transfer import (
    InventoryRequest,
    WeightTransfer,
    WeightTransferApproval,
)

__all__ = [
    "Order",
    "OrderStage",
    "OrderStageHistory",
    "Stock",
    "StockReservation",
    "StockMovement",
    "ReservationStatus",
    "MovementType",
    "OrderMaterial",
    "OrderMaterialStatus",
    "ProcessingUnit",
    "ProcessingUnitStatus",
    "Waste",
    "WeightTransfer",
    "WeightTransferApproval",
    "InventoryRequest",
    "TransferAuditEntry",
]

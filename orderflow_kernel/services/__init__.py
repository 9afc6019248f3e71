"""Services for the orderflow kernel (write side)."""

from orderflow_kernel.services.material_selector import MaterialSelector
from orderflow_kernel.services.notifications import Notification, NotificationOutbox
from orderflow_kernel.services.sorting_processor import (
    SortingProcessor,
    validate_processing_weights,
)
from orderflow_kernel.services.stage_machine import OrderStageMachine
from orderflow_kernel.services.stage_records import StageRecorder
from orderflow_kernel.services.stock_ledger import StockLedger
from orderflow_kernel.services.transfer_coordinator import TransferCoordinator

__all__ = [
    "MaterialSelector",
    "Notification",
    "NotificationOutbox",
    "OrderStageMachine",
    "SortingProcessor",
    "StageRecorder",
    "StockLedger",
    "TransferCoordinator",
    "validate_processing_weights",
]

"""Read-only query selectors."""

from orderflow_kernel.selectors.order_selector import OrderSelector
from orderflow_kernel.selectors.stock_selector import StockSelector, specifications_match
from orderflow_kernel.selectors.transfer_selector import TransferSelector

__all__ = [
    "OrderSelector",
    "StockSelector",
    "TransferSelector",
    "specifications_match",
]

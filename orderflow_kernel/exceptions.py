"""
Typed Exception Hierarchy for the Orderflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the workflow engine (controllers, UIs, batch jobs) must be able to
react to a failure without parsing message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        ledger.reserve(stock, Decimal("40"))
    except InsufficientStockError as e:
        api_response(code=e.code, available=e.available)

The WorkflowEngine boundary (orderflow_services.workflow_engine) converts
every OrderflowError into an OperationResult, so nothing escapes to the
calling layer as an uncaught exception.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    OrderflowError (base)
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- OverReleaseError
    |   +-- InvalidQuantityError
    |   +-- StockNotFoundError
    |   +-- ReservationNotFoundError
    |
    +-- MaterialError
    |   +-- InsufficientMaterialError
    |   +-- InvalidMaterialSelectionError
    |
    +-- ProcessingError
    |   +-- WeightBalanceMismatchError
    |   +-- InvalidProcessingDataError
    |   +-- ProcessingUnitNotFoundError
    |
    +-- AuthorizationError
    |   +-- UnauthorizedError
    |
    +-- WorkflowError
    |   +-- StagePreconditionNotMetError
    |   +-- OrderNotFoundError
    |   +-- OrderNotCancellableError
    |   +-- DuplicateOrderNumberError
    |   +-- InvalidStageError
    |   +-- InvalidStageTransitionError
    |
    +-- TransferError
    |   +-- TransferNotFoundError
    |   +-- AlreadyApprovedError
    |   +-- AlreadyRejectedError
    |   +-- AlreadyCompletedError
    |   +-- TransferNotApprovedError
    |   +-- InvalidRejectionReasonError
    |   +-- ApproverUnresolvedError
    |   +-- InventoryRequestsPendingError
    |   +-- InventoryRequestNotFoundError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                        | When Raised
-----------|-----------------------------|------------------------------------------
Stock      | INSUFFICIENT_STOCK          | reserve/remove exceeds what is available
           | OVER_RELEASE                | release exceeds reserved_quantity
           | INVALID_QUANTITY            | quantity is zero or negative
           | STOCK_NOT_FOUND             | stock id does not exist
           | RESERVATION_NOT_FOUND       | reservation id does not exist / inactive
-----------|-----------------------------|------------------------------------------
Material   | INSUFFICIENT_MATERIAL       | eligible stock cannot cover requirement
           | INVALID_MATERIAL_SELECTION  | manual selection line is unusable
-----------|-----------------------------|------------------------------------------
Processing | WEIGHT_BALANCE_MISMATCH     | outputs + waste != original (tolerance)
           | INVALID_PROCESSING_DATA     | negative weights, missing waste reason
           | PROCESSING_UNIT_NOT_FOUND   | unit id does not exist
-----------|-----------------------------|------------------------------------------
Auth       | UNAUTHORIZED                | actor lacks the role / is not next
-----------|-----------------------------|------------------------------------------
Workflow   | STAGE_PRECONDITION_NOT_MET  | stage not completed / approval pending
           | ORDER_NOT_FOUND             | order id does not exist
           | ORDER_NOT_CANCELLABLE       | status past confirmed
           | DUPLICATE_ORDER_NUMBER      | order_number already in use
           | INVALID_STAGE               | unknown stage name
           | INVALID_STAGE_TRANSITION    | backward or out-of-table transition
-----------|-----------------------------|------------------------------------------
Transfer   | TRANSFER_NOT_FOUND          | transfer id does not exist
           | ALREADY_APPROVED            | transfer fully approved already
           | ALREADY_REJECTED            | transfer rejected (terminal)
           | ALREADY_COMPLETED           | transfer completed (terminal)
           | TRANSFER_NOT_APPROVED       | complete() before full approval
           | INVALID_REJECTION_REASON    | reason shorter than configured minimum
           | APPROVER_UNRESOLVED         | no user holds the level's role
           | INVENTORY_REQUESTS_PENDING  | pick/put not yet confirmed
           | INVENTORY_REQUEST_NOT_FOUND | request id does not exist
-----------|-----------------------------|------------------------------------------
Immutable  | IMMUTABILITY_VIOLATION      | update/delete of append-only rows
===============================================================================
"""

from decimal import Decimal


class OrderflowError(Exception):
    """
    Base exception for all orderflow kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ORDERFLOW_ERROR"


# Stock ledger exceptions


class StockError(OrderflowError):
    """Base exception for stock ledger errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """Requested quantity exceeds what the stock row can give."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, stock_id: str, requested: Decimal, available: Decimal):
        self.stock_id = stock_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock on {stock_id}: "
            f"requested {requested}, available {available}"
        )


class OverReleaseError(StockError):
    """Release quantity exceeds the reserved quantity."""

    code: str = "OVER_RELEASE"

    def __init__(self, stock_id: str, requested: Decimal, reserved: Decimal):
        self.stock_id = stock_id
        self.requested = requested
        self.reserved = reserved
        super().__init__(
            f"Cannot release {requested} from stock {stock_id}: "
            f"only {reserved} reserved"
        )


class InvalidQuantityError(StockError):
    """Quantity must be strictly positive."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, quantity: Decimal, operation: str):
        self.quantity = quantity
        self.operation = operation
        super().__init__(f"Invalid quantity {quantity} for {operation}")


class StockNotFoundError(StockError):
    """Stock row with given ID was not found."""

    code: str = "STOCK_NOT_FOUND"

    def __init__(self, stock_id: str):
        self.stock_id = stock_id
        super().__init__(f"Stock not found: {stock_id}")


class ReservationNotFoundError(StockError):
    """Reservation with given ID was not found or is no longer active."""

    code: str = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"Active reservation not found: {reservation_id}")


# Material selection exceptions


class MaterialError(OrderflowError):
    """Base exception for material selection errors."""

    code: str = "MATERIAL_ERROR"


class InsufficientMaterialError(MaterialError):
    """Eligible stock cannot cover the order's required weight."""

    code: str = "INSUFFICIENT_MATERIAL"

    def __init__(self, order_id: str, required: Decimal, available: Decimal):
        self.order_id = order_id
        self.required = required
        self.available = available
        self.shortage = required - available
        super().__init__(
            f"Insufficient material for order {order_id}: "
            f"required {required}, available {available}"
        )


class InvalidMaterialSelectionError(MaterialError):
    """A manual selection line cannot be used for this order."""

    code: str = "INVALID_MATERIAL_SELECTION"

    def __init__(self, stock_id: str, reason: str):
        self.stock_id = stock_id
        self.reason = reason
        super().__init__(f"Invalid material selection {stock_id}: {reason}")


# Sorting / cutting exceptions


class ProcessingError(OrderflowError):
    """Base exception for sorting/cutting errors."""

    code: str = "PROCESSING_ERROR"


class WeightBalanceMismatchError(ProcessingError):
    """
    Outputs plus waste do not equal the original weight within tolerance.

    Raised before anything is persisted; weights are never clamped.
    """

    code: str = "WEIGHT_BALANCE_MISMATCH"

    def __init__(
        self,
        original_weight: Decimal,
        total_accounted: Decimal,
        difference: Decimal,
        allowed_difference: Decimal,
    ):
        self.original_weight = original_weight
        self.total_accounted = total_accounted
        self.difference = difference
        self.allowed_difference = allowed_difference
        super().__init__(
            f"Weight balance mismatch: original {original_weight}, "
            f"outputs+waste {total_accounted}, difference {difference} "
            f"exceeds allowed {allowed_difference}"
        )


class InvalidProcessingDataError(ProcessingError):
    """Recorded weights are malformed (negative, all zero, missing reason)."""

    code: str = "INVALID_PROCESSING_DATA"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid processing data for {field}: {reason}")


class ProcessingUnitNotFoundError(ProcessingError):
    """Processing unit with given ID was not found."""

    code: str = "PROCESSING_UNIT_NOT_FOUND"

    def __init__(self, unit_id: str):
        self.unit_id = unit_id
        super().__init__(f"Processing unit not found: {unit_id}")


# Authorization exceptions


class AuthorizationError(OrderflowError):
    """Base exception for authorization errors."""

    code: str = "AUTHORIZATION_ERROR"


class UnauthorizedError(AuthorizationError):
    """Actor may not perform the action."""

    code: str = "UNAUTHORIZED"

    def __init__(self, actor_id: str, action: str, reason: str = ""):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        msg = f"Actor {actor_id} is not authorized to {action}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


# Workflow exceptions


class WorkflowError(OrderflowError):
    """Base exception for order stage workflow errors."""

    code: str = "WORKFLOW_ERROR"


class StagePreconditionNotMetError(WorkflowError):
    """The stage cannot be left or acted on yet."""

    code: str = "STAGE_PRECONDITION_NOT_MET"

    def __init__(self, order_id: str, stage: str, reason: str):
        self.order_id = order_id
        self.stage = stage
        self.reason = reason
        super().__init__(
            f"Stage precondition not met for order {order_id} at {stage}: {reason}"
        )


class OrderNotFoundError(WorkflowError):
    """Order with given ID was not found."""

    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderNotCancellableError(WorkflowError):
    """Order status no longer permits cancellation."""

    code: str = "ORDER_NOT_CANCELLABLE"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} cannot be cancelled in status {status}")


class DuplicateOrderNumberError(WorkflowError):
    """Another order already uses this order number."""

    code: str = "DUPLICATE_ORDER_NUMBER"

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order number already in use: {order_number}")


class InvalidStageError(WorkflowError):
    """Stage name is not one of the configured stages."""

    code: str = "INVALID_STAGE"

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Unknown stage: {stage!r}")


class InvalidStageTransitionError(WorkflowError):
    """Transition is not in the stage transition table."""

    code: str = "INVALID_STAGE_TRANSITION"

    def __init__(self, from_stage: str, to_stage: str):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid stage transition: {from_stage} -> {to_stage}")


# Weight transfer exceptions


class TransferError(OrderflowError):
    """Base exception for weight transfer errors."""

    code: str = "TRANSFER_ERROR"


class TransferNotFoundError(TransferError):
    """Weight transfer with given ID was not found."""

    code: str = "TRANSFER_NOT_FOUND"

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"Weight transfer not found: {transfer_id}")


class AlreadyApprovedError(TransferError):
    """Transfer is already fully approved."""

    code: str = "ALREADY_APPROVED"

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"Weight transfer {transfer_id} is already approved")


class AlreadyRejectedError(TransferError):
    """Transfer was rejected; rejection is terminal."""

    code: str = "ALREADY_REJECTED"

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"Weight transfer {transfer_id} is already rejected")


class AlreadyCompletedError(TransferError):
    """Transfer was completed; completion is terminal."""

    code: str = "ALREADY_COMPLETED"

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"Weight transfer {transfer_id} is already completed")


class TransferNotApprovedError(TransferError):
    """Transfer cannot be completed before every approval is granted."""

    code: str = "TRANSFER_NOT_APPROVED"

    def __init__(self, transfer_id: str, status: str):
        self.transfer_id = transfer_id
        self.status = status
        super().__init__(
            f"Weight transfer {transfer_id} is {status}, not fully approved"
        )


class InvalidRejectionReasonError(TransferError):
    """Rejection reason is missing or too short."""

    code: str = "INVALID_REJECTION_REASON"

    def __init__(self, min_length: int):
        self.min_length = min_length
        super().__init__(
            f"Rejection reason must be at least {min_length} characters"
        )


class ApproverUnresolvedError(TransferError):
    """
    No user holds the role configured for an approval level.

    Not a hard failure of the triggering operation: the coordinator catches
    it, persists the step unassigned and escalates an operational alert.
    """

    code: str = "APPROVER_UNRESOLVED"

    def __init__(self, role: str, warehouse_id: str | None, sequence: int):
        self.role = role
        self.warehouse_id = warehouse_id
        self.sequence = sequence
        super().__init__(
            f"No approver found for level {sequence} ({role}) "
            f"at warehouse {warehouse_id}"
        )


class InventoryRequestsPendingError(TransferError):
    """Pick/put confirmations are outstanding."""

    code: str = "INVENTORY_REQUESTS_PENDING"

    def __init__(self, transfer_id: str, pending: int):
        self.transfer_id = transfer_id
        self.pending = pending
        super().__init__(
            f"Weight transfer {transfer_id} has {pending} unconfirmed "
            "inventory request(s)"
        )


class InventoryRequestNotFoundError(TransferError):
    """Inventory request with given ID was not found."""

    code: str = "INVENTORY_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Inventory request not found: {request_id}")


# Immutability exceptions


class ImmutabilityError(OrderflowError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only or completed record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )

"""
ORM-Level Immutability Enforcement.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                  | When Immutable                   | Mutable fields
------------------------|----------------------------------|---------------------
OrderStageHistory       | ALWAYS (from creation)           | none
TransferAuditEntry      | ALWAYS (from creation)           | none
StockMovement           | ALWAYS (from creation)           | none
OrderStage              | After status = completed/skipped | notes, updated_*

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below check the row's attribute history and raise
ImmutabilityViolationError, which aborts the flush.

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

"WAS closed" is decided from history, not the current value: the flush that
moves a stage to completed is allowed, any later change is not.

===============================================================================
USAGE
===============================================================================

    from orderflow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent

Tests that must bypass the rules call unregister_immutability_listeners().
===============================================================================
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from orderflow_kernel.exceptions import ImmutabilityViolationError
from orderflow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})
_STAGE_MUTABLE_AFTER_CLOSE = _AUDIT_FIELDS | {"notes"}
_CLOSED_STAGE_VALUES = frozenset({"completed", "skipped"})


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _append_only_update(mapper, connection, target):
    """Prevent any update to an append-only row."""
    name = type(target).__name__
    _block(name, target, "UPDATE", f"{name} rows are append-only and cannot be modified")


def _append_only_delete(mapper, connection, target):
    """Prevent deletion of an append-only row."""
    name = type(target).__name__
    _block(name, target, "DELETE", f"{name} rows are append-only and cannot be deleted")


def _stage_was_closed(target) -> bool:
    status_history = get_history(target, "status")
    if status_history.deleted:
        return status_history.deleted[0] in _CLOSED_STAGE_VALUES
    if not status_history.added:
        return target.status in _CLOSED_STAGE_VALUES
    return False


def _check_order_stage_immutability(mapper, connection, target):
    """
    Prevent changes to a completed or skipped OrderStage.

    Corrective audit notes remain writable.
    """
    if not _stage_was_closed(target):
        return

    for attr in inspect(target).attrs:
        if attr.key in _STAGE_MUTABLE_AFTER_CLOSE:
            continue
        if attr.history.has_changes():
            _block(
                "OrderStage",
                target,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on closed stage {target.stage_name}",
                field=attr.key,
            )


def _check_order_stage_delete(mapper, connection, target):
    """Stage records are never deleted."""
    _block("OrderStage", target, "DELETE", "Order stage records cannot be deleted")


def _listeners():
    from orderflow_kernel.models.audit import TransferAuditEntry
    from orderflow_kernel.models.order import OrderStage, OrderStageHistory
    from orderflow_kernel.models.stock import StockMovement

    pairs = []
    for model in (OrderStageHistory, TransferAuditEntry, StockMovement):
        pairs.append((model, "before_update", _append_only_update))
        pairs.append((model, "before_delete", _append_only_delete))
    pairs.append((OrderStage, "before_update", _check_order_stage_immutability))
    pairs.append((OrderStage, "before_delete", _check_order_stage_delete))
    return pairs


def register_immutability_listeners() -> None:
    """Register all immutability listeners.  Safe to call more than once."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability listeners.

    WARNING: Only use this in tests that intentionally violate the rules.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)

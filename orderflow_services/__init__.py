"""
orderflow_services -- Outer boundary of the order workflow.

WorkflowEngine is the public entry point: it owns transactions, logging
context and notification dispatch, and answers every operation with an
OperationResult.  WorkflowOrchestrator wires the kernel services for one
session.  StaticAuthorization and LoggingNotifier are ready-made adapters
for the kernel's ports.
"""

from orderflow_services.authorization import StaticAuthorization, UserGrant
from orderflow_services.notifier import LoggingNotifier
from orderflow_services.orchestrator import WorkflowOrchestrator
from orderflow_services.workflow_engine import WorkflowEngine, http_status_for

__all__ = [
    "LoggingNotifier",
    "StaticAuthorization",
    "UserGrant",
    "WorkflowEngine",
    "WorkflowOrchestrator",
    "http_status_for",
]

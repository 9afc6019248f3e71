"""
orderflow_config -- workflow configuration.

Responsibility:
    Provides the ``WorkflowConfig`` value and the ways to obtain one.
    Services never read configuration files or globals; they receive a
    WorkflowConfig at construction time.

Architecture position:
    Configuration -- sits above ``orderflow_kernel`` (it uses kernel domain
    types) and below ``orderflow_services``.  The kernel never imports from
    this package at runtime.
"""

from __future__ import annotations

from pathlib import Path

from orderflow_config.loader import compute_checksum, load_workflow_config
from orderflow_config.schema import TransferBoundary, WorkflowConfig

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "workflow.yaml"


def default_workflow_config() -> WorkflowConfig:
    """The packaged default workflow (defaults/workflow.yaml)."""
    return load_workflow_config(_DEFAULT_CONFIG_PATH)


__all__ = [
    "WorkflowConfig",
    "TransferBoundary",
    "load_workflow_config",
    "default_workflow_config",
    "compute_checksum",
]

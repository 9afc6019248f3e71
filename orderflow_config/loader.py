"""
Configuration Loader (``orderflow_config.loader``).

Responsibility
--------------
Loads a workflow YAML file and parses it into a validated, frozen
``WorkflowConfig``.  Stage keys may be given as the Arabic stage value or
the English member name (``SORTING``).

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown stage names -> ``InvalidStageError``.
* Structural problems -> ``ValueError`` from ``WorkflowConfig.__post_init__``.

Audit relevance
---------------
``compute_checksum`` gives every loaded configuration a deterministic
identity; it is logged with ``workflow_config_loaded``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from orderflow_config.schema import TransferBoundary, WorkflowConfig
from orderflow_kernel.domain.stages import Stage, parse_stage
from orderflow_kernel.domain.transfer import ApprovalLevel
from orderflow_kernel.logging_config import get_logger

logger = get_logger("config.loader")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _decimal(value: Any) -> Decimal:
    # YAML gives floats for 0.5; go through str to keep the written digits.
    return Decimal(str(value))


def _stage_set(values: list[Any] | None) -> frozenset[Stage]:
    return frozenset(parse_stage(v) for v in values or ())


def parse_approval_levels(data: dict[str, Any]) -> dict[str, tuple[ApprovalLevel, ...]]:
    """
    Parse ``{category: [role, role, ...]}`` into numbered levels.

    The last role of each list is the final level.
    """
    levels: dict[str, tuple[ApprovalLevel, ...]] = {}
    for category, roles in (data or {}).items():
        roles = list(roles or ())
        levels[category] = tuple(
            ApprovalLevel(sequence=i + 1, role=role, is_final=(i == len(roles) - 1))
            for i, role in enumerate(roles)
        )
    return levels


def parse_boundary(data: dict[str, Any]) -> TransferBoundary:
    return TransferBoundary(
        from_stage=parse_stage(data["from_stage"]),
        to_stage=parse_stage(data["to_stage"]),
        category=data["category"],
        requires_sequential_approval=bool(data.get("sequential", False)),
    )


def parse_workflow_config(data: dict[str, Any], checksum: str | None = None) -> WorkflowConfig:
    """Build a WorkflowConfig from a parsed YAML mapping."""
    kwargs: dict[str, Any] = {}

    if "name" in data:
        kwargs["name"] = str(data["name"])
    if "version" in data:
        kwargs["version"] = int(data["version"])
    if "stages" in data:
        kwargs["stages"] = tuple(parse_stage(s) for s in data["stages"])
    if "stage_roles" in data:
        kwargs["stage_roles"] = {
            parse_stage(stage): role for stage, role in data["stage_roles"].items()
        }
    if "approval_required_stages" in data:
        kwargs["approval_required_stages"] = _stage_set(data["approval_required_stages"])
    if "skippable_stages" in data:
        kwargs["skippable_stages"] = _stage_set(data["skippable_stages"])
    if "stage_warehouses" in data:
        kwargs["stage_warehouses"] = {
            parse_stage(stage): UUID(str(wh))
            for stage, wh in (data["stage_warehouses"] or {}).items()
        }
    if "transfer_boundaries" in data:
        kwargs["transfer_boundaries"] = tuple(
            parse_boundary(b) for b in data["transfer_boundaries"] or ()
        )
    if "approval_levels" in data:
        kwargs["approval_levels"] = parse_approval_levels(data["approval_levels"])
    if "auto_approved_categories" in data:
        kwargs["auto_approved_categories"] = frozenset(data["auto_approved_categories"] or ())

    for key in ("weight_tolerance_percent", "low_stock_threshold"):
        if key in data:
            kwargs[key] = _decimal(data[key])
    for key in (
        "stage_approver_role",
        "skip_permission",
        "override_permission",
        "cancel_permission",
        "select_materials_permission",
        "stock_permission",
    ):
        if key in data:
            kwargs[key] = str(data[key])
    for key in (
        "require_inventory_confirmation",
        "auto_complete_transfers",
        "auto_select_materials",
    ):
        if key in data:
            kwargs[key] = bool(data[key])
    if "min_rejection_reason_length" in data:
        kwargs["min_rejection_reason_length"] = int(data["min_rejection_reason_length"])

    return WorkflowConfig(checksum=checksum, **kwargs)


def load_workflow_config(path: Path) -> WorkflowConfig:
    """
    Load and validate a workflow configuration file.

    Postconditions:
        - Returns a frozen, validated WorkflowConfig carrying the file's
          checksum.
        - Emits a ``workflow_config_loaded`` log entry.
    """
    data = load_yaml_file(path)
    checksum = compute_checksum(data)
    config = parse_workflow_config(data, checksum=checksum)
    logger.info(
        "workflow_config_loaded",
        extra={
            "path": str(path),
            "config_name": config.name,
            "config_version": config.version,
            "checksum": checksum,
        },
    )
    return config

"""
Tests for WorkflowConfig and the YAML loader.

Covers:
- The packaged default workflow (stages, roles, boundaries, levels)
- Structural validation in WorkflowConfig.__post_init__
- parse_workflow_config(): English stage names, approval level numbering
- load_workflow_config(): checksum and log entry
"""

from decimal import Decimal
from uuid import uuid4

import pytest
import yaml

from orderflow_config import compute_checksum, default_workflow_config, load_workflow_config
from orderflow_config.loader import parse_approval_levels, parse_workflow_config
from orderflow_config.schema import TransferBoundary, WorkflowConfig
from orderflow_kernel.domain.stages import STAGE_SEQUENCE, Stage
from orderflow_kernel.domain.transfer import ApprovalLevel
from orderflow_kernel.exceptions import InvalidStageError


class TestDefaultWorkflow:
    """The packaged defaults/workflow.yaml."""

    def test_loads_all_eight_stages(self):
        config = default_workflow_config()
        assert config.stages == STAGE_SEQUENCE
        assert config.checksum is not None

    def test_every_stage_has_a_role(self):
        config = default_workflow_config()
        assert config.role_for(Stage.SORTING) == "مسؤول_فرازة"
        assert config.role_for(Stage.DELIVERY) == "مسؤول_تسليم"

    def test_review_requires_approval(self):
        config = default_workflow_config()
        assert config.requires_approval(Stage.REVIEW)
        assert not config.requires_approval(Stage.CUTTING)

    def test_default_tolerance_is_half_a_percent(self):
        assert default_workflow_config().weight_tolerance_percent == Decimal("0.5")

    def test_cut_material_has_three_sequential_levels(self):
        config = default_workflow_config()
        levels = config.levels_for("cut_material")
        assert [level.role for level in levels] == [
            "cutting_warehouse_manager",
            "delivery_manager",
            "packaging_warehouse_manager",
        ]
        assert [level.sequence for level in levels] == [1, 2, 3]
        assert [level.is_final for level in levels] == [False, False, True]

    def test_boundaries(self):
        config = default_workflow_config()
        sorted_boundary = config.boundary_between(Stage.SORTING, Stage.CUTTING)
        cut_boundary = config.boundary_between(Stage.CUTTING, Stage.PACKAGING)
        assert sorted_boundary.category == "sorted_material"
        assert not sorted_boundary.requires_sequential_approval
        assert cut_boundary.requires_sequential_approval
        assert config.boundary_between(Stage.REVIEW, Stage.MATERIAL_RESERVATION) is None

    def test_checksum_is_stable(self):
        assert default_workflow_config().checksum == default_workflow_config().checksum


class TestValidation:
    """Structural problems are rejected at construction."""

    def test_defaults_construct(self):
        config = WorkflowConfig()
        assert config.next_stage(Stage.CREATION) is Stage.REVIEW
        assert config.next_stage(Stage.DELIVERY) is None

    def test_stages_must_start_and_end_correctly(self):
        with pytest.raises(ValueError, match="must start with"):
            WorkflowConfig(stages=(Stage.REVIEW, Stage.DELIVERY))

    def test_stages_must_follow_canonical_order(self):
        with pytest.raises(ValueError, match="canonical stage order"):
            WorkflowConfig(
                stages=(Stage.CREATION, Stage.CUTTING, Stage.SORTING, Stage.DELIVERY)
            )

    def test_stages_can_be_dropped(self):
        config = WorkflowConfig(
            stages=(Stage.CREATION, Stage.MATERIAL_RESERVATION, Stage.DELIVERY)
        )
        assert config.next_stage(Stage.CREATION) is Stage.MATERIAL_RESERVATION

    def test_first_stage_is_not_skippable(self):
        with pytest.raises(ValueError, match="cannot be skippable"):
            WorkflowConfig(skippable_stages=frozenset({Stage.CREATION}))

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError, match="weight_tolerance_percent"):
            default_workflow_config().with_overrides(weight_tolerance_percent=Decimal("-1"))

    def test_boundary_must_be_a_transition(self):
        with pytest.raises(ValueError, match="is not a stage transition"):
            WorkflowConfig(
                transfer_boundaries=(
                    TransferBoundary(Stage.SORTING, Stage.PACKAGING, "bad"),
                )
            )

    def test_sequential_category_needs_levels(self):
        with pytest.raises(ValueError, match="has no approval_levels"):
            WorkflowConfig(
                transfer_boundaries=(
                    TransferBoundary(Stage.CUTTING, Stage.PACKAGING, "cut_material", True),
                )
            )

    def test_levels_must_be_numbered_from_one(self):
        with pytest.raises(ValueError, match="numbered 1..N"):
            WorkflowConfig(
                approval_levels={"x": (ApprovalLevel(2, "a", True),)}
            )

    def test_with_overrides_returns_a_new_config(self):
        base = default_workflow_config()
        warehouse = uuid4()
        changed = base.with_overrides(stage_warehouses={Stage.CUTTING: warehouse})
        assert changed.warehouse_for(Stage.CUTTING) == warehouse
        assert base.warehouse_for(Stage.CUTTING) is None


class TestParsing:
    """YAML mapping -> WorkflowConfig."""

    def test_english_stage_names_accepted(self):
        config = parse_workflow_config(
            {
                "approval_required_stages": ["CUTTING"],
                "skippable_stages": ["sorting"],
                "weight_tolerance_percent": 1.25,
            }
        )
        assert config.requires_approval(Stage.CUTTING)
        assert Stage.SORTING in config.skippable_stages
        assert config.weight_tolerance_percent == Decimal("1.25")

    def test_unknown_stage_rejected(self):
        with pytest.raises(InvalidStageError):
            parse_workflow_config({"skippable_stages": ["polishing"]})

    def test_approval_levels_numbered_in_list_order(self):
        levels = parse_approval_levels({"cat": ["first", "second"]})
        assert levels["cat"] == (
            ApprovalLevel(1, "first", False),
            ApprovalLevel(2, "second", True),
        )

    def test_permissions_parsed(self):
        config = parse_workflow_config(
            {"stock_permission": "inventory.write", "cancel_permission": "orders.kill"}
        )
        assert config.stock_permission == "inventory.write"
        assert config.cancel_permission == "orders.kill"
        assert default_workflow_config().stock_permission == "stock.manage"

    def test_stage_warehouses_parsed_as_uuids(self):
        warehouse = uuid4()
        config = parse_workflow_config({"stage_warehouses": {"قص": str(warehouse)}})
        assert config.warehouse_for(Stage.CUTTING) == warehouse

    def test_load_from_file(self, tmp_path, captured_logs):
        data = {"name": "custom", "version": 3, "min_rejection_reason_length": 4}
        path = tmp_path / "workflow.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")

        config = load_workflow_config(path)

        assert config.name == "custom"
        assert config.version == 3
        assert config.min_rejection_reason_length == 4
        assert config.checksum == compute_checksum(data)
        logs = captured_logs()
        loaded = [r for r in logs if r["message"] == "workflow_config_loaded"]
        assert loaded and loaded[0]["checksum"] == config.checksum

    def test_missing_file_propagates(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow_config(tmp_path / "missing.yaml")

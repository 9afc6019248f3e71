"""
Tests for OrderStageMachine.

Covers:
- create_order(): draft at the first stage, duplicate numbers, role gate
- move_to_next_stage(): incomplete stage refused and stage unchanged,
  role of the current stage required, one step forward only
- Stage approval: parked as pending, approve / reject by the approver role
- Material reservation on entering حجز_المواد (auto and manual), shortage
  undoes the whole move
- skip_stage(), cancel_order() releasing every reservation
- The full walk to delivery closes the order and consumes its material
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from orderflow_kernel.domain.dtos import MaterialSelectionLine
from orderflow_kernel.domain.stages import (
    OrderStatus,
    Stage,
    StageAction,
    StageApprovalStatus,
    StageStatus,
)
from orderflow_kernel.exceptions import (
    DuplicateOrderNumberError,
    InsufficientMaterialError,
    InvalidRejectionReasonError,
    OrderNotCancellableError,
    OrderNotFoundError,
    StagePreconditionNotMetError,
    UnauthorizedError,
)
from orderflow_kernel.models.order import OrderStageHistory
from orderflow_kernel.models.stock import ReservationStatus, StockReservation

D = Decimal


def _history(session, order):
    return (
        session.execute(
            select(OrderStageHistory)
            .where(OrderStageHistory.order_id == order.id)
            .order_by(OrderStageHistory.seq)
        )
        .scalars()
        .all()
    )


class TestCreateOrder:
    def test_new_order_is_a_draft_at_creation(self, services, make_order):
        order = make_order(D("100"))

        assert order.status == OrderStatus.DRAFT.value
        assert order.stage is Stage.CREATION
        record = order.stage_record(Stage.CREATION)
        assert record.status == StageStatus.IN_PROGRESS.value
        assert record.stage_order == 1

    def test_duplicate_order_number(self, make_order):
        make_order(order_number="ORD-1")
        with pytest.raises(DuplicateOrderNumberError):
            make_order(order_number="ORD-1")

    def test_creation_needs_the_sales_role(self, services, staff):
        with pytest.raises(UnauthorizedError):
            services.stage_machine.create_order(staff.cutter, "ORD-X")

    def test_history_starts_with_created(self, session, make_order):
        order = make_order()
        (entry,) = _history(session, order)
        assert entry.action == StageAction.CREATED.value
        assert entry.to_stage == Stage.CREATION.value

    def test_unknown_order(self, services, staff):
        with pytest.raises(OrderNotFoundError):
            services.stage_machine.move_to_next_stage(uuid4(), staff.sales)


class TestMoveToNextStage:
    """An incomplete stage cannot be left."""

    def test_incomplete_stage_refused_and_unchanged(self, services, staff, make_order):
        order = make_order()

        with pytest.raises(StagePreconditionNotMetError) as exc_info:
            services.stage_machine.move_to_next_stage(order.id, staff.sales)

        assert exc_info.value.code == "STAGE_PRECONDITION_NOT_MET"
        assert order.stage is Stage.CREATION
        assert order.status == OrderStatus.DRAFT.value

    def test_completed_stage_moves_one_step(self, services, staff, make_order):
        order = make_order()
        services.stage_machine.complete_stage(order.id, staff.sales)

        services.stage_machine.move_to_next_stage(order.id, staff.sales)

        assert order.stage is Stage.REVIEW
        assert order.status == OrderStatus.UNDER_REVIEW.value
        assert order.stage_record(Stage.CREATION).status == StageStatus.COMPLETED.value
        assert order.stage_record(Stage.REVIEW).status == StageStatus.IN_PROGRESS.value

    def test_move_needs_the_current_stage_role(self, services, staff, make_order):
        order = make_order()
        services.stage_machine.complete_stage(order.id, staff.sales)

        with pytest.raises(UnauthorizedError):
            services.stage_machine.move_to_next_stage(order.id, staff.warehouse)

        assert order.stage is Stage.CREATION

    def test_override_permission_may_act(self, services, staff, make_order):
        order = make_order()
        services.stage_machine.complete_stage(order.id, staff.admin)
        services.stage_machine.move_to_next_stage(order.id, staff.admin)
        assert order.stage is Stage.REVIEW

    def test_stage_change_is_queued_for_the_next_role(self, services, outbox, staff, make_order):
        order = make_order()
        services.stage_machine.complete_stage(order.id, staff.sales)
        services.stage_machine.move_to_next_stage(order.id, staff.sales)

        changes = [n.payload for n in outbox.pending if n.event == "order_stage_changed"]
        assert changes[-1]["to_stage"] == Stage.REVIEW.value
        assert changes[-1]["assigned_role"] == "مدير_مبيعات"

    def test_history_records_the_move(self, session, services, staff, make_order):
        order = make_order()
        services.stage_machine.complete_stage(order.id, staff.sales)
        services.stage_machine.move_to_next_stage(order.id, staff.sales)

        actions = [(e.action, e.from_stage, e.to_stage) for e in _history(session, order)]
        assert actions == [
            ("created", None, Stage.CREATION.value),
            ("completed", Stage.CREATION.value, None),
            ("moved", Stage.CREATION.value, Stage.REVIEW.value),
        ]


class TestStageApproval:
    """مراجعة requires approval by the production manager."""

    @pytest.fixture
    def review_order(self, services, staff, make_order):
        order = make_order()
        services.stage_machine.complete_stage(order.id, staff.sales)
        services.stage_machine.move_to_next_stage(order.id, staff.sales)
        return order

    def test_complete_parks_the_stage_for_approval(self, services, outbox, staff, review_order):
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(review_order.id, reviewer)

        record = review_order.stage_record(Stage.REVIEW)
        assert record.status == StageStatus.IN_PROGRESS.value
        assert record.approval_status == StageApprovalStatus.PENDING.value
        assert any(n.event == "stage_approval_requested" for n in outbox.pending)

    def test_pending_approval_blocks_the_move(self, services, staff, review_order):
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(review_order.id, reviewer)

        with pytest.raises(StagePreconditionNotMetError) as exc_info:
            services.stage_machine.move_to_next_stage(review_order.id, reviewer)

        assert "approval is pending" in exc_info.value.reason
        assert review_order.stage is Stage.REVIEW

    def test_approver_completes_the_stage(self, services, staff, review_order):
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(review_order.id, reviewer)

        services.stage_machine.approve_stage(review_order.id, staff.production_manager)

        record = review_order.stage_record(Stage.REVIEW)
        assert record.status == StageStatus.COMPLETED.value
        assert record.approved_by == staff.production_manager

    def test_only_the_approver_role_may_approve(self, services, staff, review_order):
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(review_order.id, reviewer)

        with pytest.raises(UnauthorizedError):
            services.stage_machine.approve_stage(review_order.id, reviewer)

    def test_nothing_to_approve(self, services, staff, review_order):
        with pytest.raises(StagePreconditionNotMetError):
            services.stage_machine.approve_stage(review_order.id, staff.production_manager)

    def test_rejection_keeps_the_stage_open(self, services, staff, review_order):
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(review_order.id, reviewer)

        services.stage_machine.reject_stage(
            review_order.id, staff.production_manager, "customer details incomplete"
        )

        record = review_order.stage_record(Stage.REVIEW)
        assert record.status == StageStatus.IN_PROGRESS.value
        assert record.approval_status == StageApprovalStatus.REJECTED.value

        # Reworked and resubmitted.
        services.stage_machine.complete_stage(review_order.id, reviewer)
        assert record.approval_status == StageApprovalStatus.PENDING.value

    def test_rejection_needs_a_reason(self, services, staff, review_order):
        services.stage_machine.complete_stage(review_order.id, staff.for_stage(Stage.REVIEW))
        with pytest.raises(InvalidRejectionReasonError):
            services.stage_machine.reject_stage(review_order.id, staff.production_manager, "no")


class TestMaterialReservation:
    def test_entering_reserves_and_completes(self, services, staff, make_stock, make_order, advance):
        stock = make_stock(D("500"))
        order = make_order(D("100"))

        advance(services, staff, order.id, Stage.MATERIAL_RESERVATION)

        assert order.selected_materials
        assert order.status == OrderStatus.CONFIRMED.value
        assert stock.reserved_quantity == D("100")
        record = order.stage_record(Stage.MATERIAL_RESERVATION)
        assert record.status == StageStatus.COMPLETED.value

    def test_shortage_undoes_the_move(self, services, staff, make_stock, make_order, advance):
        stock = make_stock(D("40"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.REVIEW)
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(order.id, reviewer)
        services.stage_machine.approve_stage(order.id, staff.production_manager)

        with pytest.raises(InsufficientMaterialError):
            services.stage_machine.move_to_next_stage(order.id, reviewer)

        assert order.stage is Stage.REVIEW
        assert order.status == OrderStatus.UNDER_REVIEW.value
        assert order.stage_record(Stage.MATERIAL_RESERVATION) is None
        assert stock.reserved_quantity == D("0")

    def test_manual_selection_on_move(self, services, staff, make_stock, make_order, advance):
        a = make_stock(D("100"), expiry_date=date(2024, 2, 1))
        b = make_stock(D("100"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.REVIEW)
        reviewer = staff.for_stage(Stage.REVIEW)
        services.stage_machine.complete_stage(order.id, reviewer)
        services.stage_machine.approve_stage(order.id, staff.production_manager)

        services.stage_machine.move_to_next_stage(
            order.id, reviewer, material_selections=[MaterialSelectionLine(b.id, D("100"))]
        )

        assert a.reserved_quantity == D("0")
        assert b.reserved_quantity == D("100")

    def test_explicit_selection_when_auto_is_off(
        self, make_services, workflow_config, staff, make_stock, make_order, advance
    ):
        svc = make_services(workflow_config.with_overrides(auto_select_materials=False))
        stock = make_stock(D("500"))
        order = make_order(D("100"))
        advance(svc, staff, order.id, Stage.MATERIAL_RESERVATION)
        assert not order.selected_materials

        with pytest.raises(StagePreconditionNotMetError):
            svc.stage_machine.complete_stage(order.id, staff.warehouse)

        result = svc.stage_machine.select_materials(order.id, staff.warehouse)

        assert result.total_weight == D("100")
        assert stock.reserved_quantity == D("100")
        assert order.stage_record(Stage.MATERIAL_RESERVATION).status == StageStatus.COMPLETED.value

    def test_select_materials_only_at_the_material_stage(self, services, staff, make_order):
        order = make_order()
        with pytest.raises(StagePreconditionNotMetError):
            services.stage_machine.select_materials(order.id, staff.warehouse)


class TestSkipStage:
    def test_skip_sorting(self, services, staff, make_stock, make_order, advance):
        make_stock(D("500"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.SORTING)

        services.stage_machine.skip_stage(order.id, staff.admin, "pre-sorted by supplier")

        assert order.stage is Stage.CUTTING
        record = order.stage_record(Stage.SORTING)
        assert record.status == StageStatus.SKIPPED.value
        assert record.skip_reason == "pre-sorted by supplier"

    def test_skip_needs_permission(self, services, staff, make_stock, make_order, advance):
        make_stock(D("500"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.SORTING)

        with pytest.raises(UnauthorizedError):
            services.stage_machine.skip_stage(order.id, staff.sorter, "pre-sorted by supplier")

    def test_non_skippable_stage(self, services, staff, make_order):
        order = make_order()
        with pytest.raises(StagePreconditionNotMetError):
            services.stage_machine.skip_stage(order.id, staff.admin, "no time for this")

    def test_skip_needs_a_reason(self, services, staff, make_stock, make_order, advance):
        make_stock(D("500"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.SORTING)
        with pytest.raises(StagePreconditionNotMetError):
            services.stage_machine.skip_stage(order.id, staff.admin, "  ")


class TestCancelOrder:
    def test_cancel_releases_every_reservation(
        self, session, services, staff, make_stock, make_order, advance
    ):
        first = make_stock(D("60"), expiry_date=date(2024, 2, 1))
        second = make_stock(D("100"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.MATERIAL_RESERVATION)
        assert first.reserved_quantity == D("60")
        assert second.reserved_quantity == D("40")

        services.stage_machine.cancel_order(order.id, staff.admin, "customer withdrew")

        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancel_reason == "customer withdrew"
        assert first.reserved_quantity == D("0")
        assert second.reserved_quantity == D("0")
        reservations = session.execute(
            select(StockReservation).where(StockReservation.order_id == order.id)
        ).scalars().all()
        assert len(reservations) == 2
        assert {r.status for r in reservations} == {ReservationStatus.RELEASED.value}

    def test_cancelled_order_is_closed(self, services, staff, make_order):
        order = make_order()
        services.stage_machine.cancel_order(order.id, staff.admin)

        with pytest.raises(StagePreconditionNotMetError):
            services.stage_machine.complete_stage(order.id, staff.sales)

    def test_in_progress_order_cannot_be_cancelled(
        self, services, staff, make_stock, make_order, advance
    ):
        make_stock(D("500"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.SORTING)

        with pytest.raises(OrderNotCancellableError):
            services.stage_machine.cancel_order(order.id, staff.admin)

        assert order.status == OrderStatus.IN_PROGRESS.value

    def test_cancel_needs_permission(self, services, staff, make_order):
        order = make_order()
        with pytest.raises(UnauthorizedError):
            services.stage_machine.cancel_order(order.id, staff.sales)


class TestFullWorkflow:
    def test_walk_to_delivery_closes_the_order(
        self, services, outbox, staff, make_stock, make_order, advance
    ):
        stock = make_stock(D("500"))
        order = make_order(D("100"))

        advance(services, staff, order.id, Stage.DELIVERY)
        services.stage_machine.complete_stage(order.id, staff.for_stage(Stage.DELIVERY))

        assert order.status == OrderStatus.COMPLETED.value
        assert order.pricing_calculated
        assert stock.quantity == D("400")
        assert stock.reserved_quantity == D("0")
        assert [r.stage_name for r in order.stages] == [s.value for s in services.config.stages]
        assert any(n.event == "order_completed" for n in outbox.pending)

    def test_final_stage_has_no_successor(self, services, staff, make_stock, make_order, advance):
        make_stock(D("500"))
        order = make_order(D("100"))
        advance(services, staff, order.id, Stage.DELIVERY)
        services.stage_machine.complete_stage(order.id, staff.for_stage(Stage.DELIVERY))

        with pytest.raises(StagePreconditionNotMetError):
            services.stage_machine.move_to_next_stage(
                order.id, staff.for_stage(Stage.DELIVERY)
            )

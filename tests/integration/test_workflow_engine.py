"""
End-to-end tests for WorkflowEngine.

Each engine call runs in its own committed transaction, so these tests use
the committing session factory instead of the rollback-isolated session.

Covers:
- OperationResult shape and HTTP-equivalent statuses (403 / 404 / 409 / 422 / 503)
- Notifications dispatched only after commit, discarded on any failure
- A failed move is rolled back completely
- Full cutting -> packaging flow with the three-level transfer chain
- Failed transfer completions audited in a separate transaction
- Auto-completion committed separately from the final approval
- Direct stock entries gated by role or permission; bad quantities are 422
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from orderflow_kernel.domain.stages import Stage
from orderflow_kernel.domain.transfer import TransferAuditAction
from orderflow_kernel.services.notifications import NotificationOutbox
from orderflow_services.orchestrator import WorkflowOrchestrator
from orderflow_services.workflow_engine import STORAGE_ERROR, WorkflowEngine

D = Decimal


class RecordingNotifier:
    """NotificationPort that keeps what it was asked to deliver."""

    def __init__(self):
        self.sent = []

    def notify(self, event, payload):
        self.sent.append((event, payload))

    def events(self):
        return [event for event, _ in self.sent]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def in_transaction(committed_session_factory, authorization, deterministic_clock):
    """``in_transaction(config, work)`` -> result of ``work(services)``, committed."""

    def _run(config, work):
        session = committed_session_factory()
        try:
            services = WorkflowOrchestrator(
                session, config, authorization, authorization, deterministic_clock,
                NotificationOutbox(),
            )
            result = work(services)
            session.commit()
            return result
        finally:
            session.close()

    return _run


@pytest.fixture
def make_engine(committed_session_factory, authorization, deterministic_clock, notifier):
    def _make(config, session_factory=None):
        return WorkflowEngine(
            authorization,
            authorization,
            session_factory=session_factory or committed_session_factory,
            config=config,
            notifier=notifier,
            clock=deterministic_clock,
        )

    return _make


@pytest.fixture
def engine(make_engine, workflow_config):
    return make_engine(workflow_config)


@pytest.fixture
def lot(engine, test_actor_id, product_id, source_warehouse_id):
    """A committed lot of 500 at the source warehouse."""
    result = engine.receive_stock(test_actor_id, product_id, source_warehouse_id, D("500"))
    assert result.success
    return result.data


class TestResultShape:
    def test_success_carries_data(self, engine, staff, product_id):
        result = engine.create_order(
            staff.sales, "ENG-0001", product_id=product_id, required_weight=D("100")
        )

        assert result.success
        assert result.http_status == 200
        assert result.data.order_number == "ENG-0001"
        assert result.data.current_stage == Stage.CREATION.value
        assert set(result.to_dict()) == {"success", "data", "message"}

    def test_not_found_is_404(self, engine):
        result = engine.get_order(uuid4())

        assert not result.success
        assert result.error_code == "ORDER_NOT_FOUND"
        assert result.http_status == 404
        assert set(result.to_dict()) == {"success", "error_code", "message"}

    def test_unauthorized_is_403(self, engine, staff, product_id):
        result = engine.create_order(staff.outsider, "ENG-0002", product_id=product_id)

        assert result.error_code == "UNAUTHORIZED"
        assert result.http_status == 403

    def test_duplicate_order_number_is_409(self, engine, staff, product_id):
        assert engine.create_order(staff.sales, "ENG-0003", product_id=product_id).success

        result = engine.create_order(staff.sales, "ENG-0003", product_id=product_id)

        assert result.error_code == "DUPLICATE_ORDER_NUMBER"
        assert result.http_status == 409

    def test_insufficient_stock_is_422_with_details(self, engine, lot, test_actor_id):
        result = engine.reserve_stock(lot.id, D("600"), test_actor_id)

        assert result.error_code == "INSUFFICIENT_STOCK"
        assert result.http_status == 422
        assert D(result.details["available"]) == D("500")
        assert engine.get_stock(lot.id).data.reserved_quantity == D("0")

    def test_incomplete_stage_is_409_and_unchanged(self, engine, staff, product_id):
        order = engine.create_order(staff.sales, "ENG-0004", product_id=product_id).data

        result = engine.move_to_next_stage(order.id, staff.sales)

        assert result.error_code == "STAGE_PRECONDITION_NOT_MET"
        assert result.http_status == 409
        assert engine.get_order(order.id).data.current_stage == Stage.CREATION.value

    def test_failures_are_logged_with_their_status(self, engine, captured_logs):
        engine.get_order(uuid4())

        failed = [r for r in captured_logs() if r["message"] == "operation_failed"]
        assert failed
        assert failed[-1]["error_code"] == "ORDER_NOT_FOUND"
        assert failed[-1]["http_status"] == 404
        assert failed[-1]["operation"] == "get_order"


class TestNotificationDispatch:
    def test_dispatched_after_commit(self, engine, staff, product_id, notifier):
        engine.create_order(staff.sales, "ENG-0100", product_id=product_id)

        assert notifier.events() == ["order_created"]
        assert notifier.sent[0][1]["order_number"] == "ENG-0100"

    def test_nothing_dispatched_on_failure(self, engine, staff, product_id, notifier):
        engine.create_order(staff.sales, "ENG-0101", product_id=product_id)
        notifier.sent.clear()

        engine.create_order(staff.sales, "ENG-0101", product_id=product_id)

        assert notifier.sent == []

    def test_storage_failure_rolls_back_and_discards(
        self, make_engine, workflow_config, committed_session_factory, in_transaction,
        staff, product_id, notifier,
    ):
        def failing_factory():
            session = committed_session_factory()

            def commit():
                raise OperationalError("COMMIT", {}, Exception("database is locked"))

            session.commit = commit
            return session

        engine = make_engine(workflow_config, session_factory=failing_factory)

        result = engine.create_order(staff.sales, "ENG-0102", product_id=product_id)

        assert result.error_code == STORAGE_ERROR
        assert result.http_status == 503
        assert notifier.sent == []
        assert in_transaction(
            workflow_config, lambda s: s.orders.by_number("ENG-0102")
        ) is None

    def test_shortage_undoes_the_whole_move(
        self, engine, workflow_config, in_transaction, staff, advance, product_id, notifier,
    ):
        def prepare(services):
            order = services.stage_machine.create_order(
                staff.sales, "ENG-0103", product_id=product_id, required_weight=D("100")
            )
            advance(services, staff, order.id, Stage.REVIEW)
            return order.id

        order_id = in_transaction(workflow_config, prepare)
        reviewer = staff.for_stage(Stage.REVIEW)
        assert engine.complete_stage(order_id, reviewer).success
        assert engine.approve_stage(order_id, staff.production_manager).success
        notifier.sent.clear()

        result = engine.move_to_next_stage(order_id, reviewer)

        assert result.error_code == "INSUFFICIENT_MATERIAL"
        assert result.http_status == 422
        assert D(result.details["shortage"]) == D("100")
        assert notifier.sent == []
        order = engine.get_order(order_id).data
        assert order.current_stage == Stage.REVIEW.value
        assert not order.selected_materials


class TestTransferFlow:
    """Sorted material into cutting, cut material into packaging."""

    @pytest.fixture
    def transfer_engine(self, make_engine, transfer_config):
        return make_engine(transfer_config)

    @pytest.fixture
    def cutting_order_id(
        self, in_transaction, transfer_config, staff, advance, product_id, lot
    ):
        def prepare(services):
            order = services.stage_machine.create_order(
                staff.sales, "ENG-0200", product_id=product_id, required_weight=D("100")
            )
            advance(services, staff, order.id, Stage.CUTTING)
            return order.id

        return in_transaction(transfer_config, prepare)

    def _transfer(self, engine, order_id, category):
        (info,) = [
            t for t in engine.transfers_for_order(order_id).data
            if t.transfer_category == category
        ]
        return info

    def test_cut_material_reaches_packaging(
        self, transfer_engine, cutting_order_id, staff, lot, notifier
    ):
        engine = transfer_engine
        order_id = cutting_order_id

        sorted_transfer = self._transfer(engine, order_id, "sorted_material")
        assert engine.approve_transfer(sorted_transfer.id, staff.cutter).success
        assert engine.complete_transfer(sorted_transfer.id, staff.cutter).success

        (unit,) = engine.processing_units(order_id, Stage.CUTTING.value).data
        recorded = engine.record_processing(
            unit.id, staff.cutter, unit.expected_weight, [D("50"), D("50")]
        )
        assert recorded.success
        assert recorded.data.stage_completed
        assert engine.move_to_next_stage(order_id, staff.cutter).success

        cut = self._transfer(engine, order_id, "cut_material")
        assert cut.requires_sequential_approval
        assert [t.id for t in engine.pending_approvals(staff.cutting_warehouse_manager).data] == [
            cut.id
        ]

        early = engine.approve_transfer(cut.id, staff.delivery_manager)
        assert early.error_code == "UNAUTHORIZED"
        assert early.http_status == 403

        for approver in (
            staff.cutting_warehouse_manager,
            staff.delivery_manager,
            staff.packaging_warehouse_manager,
        ):
            assert engine.approve_transfer(cut.id, approver).success

        status = engine.transfer_approval_status(cut.id).data
        assert status.status == "approved"
        assert status.approved_steps == status.total_steps == 3

        completed = engine.complete_transfer(cut.id, staff.packer)
        assert completed.success
        assert completed.data.status == "completed"

        again = engine.complete_transfer(cut.id, staff.packer)
        assert again.error_code == "ALREADY_COMPLETED"
        assert again.http_status == 409

        source = engine.get_stock(lot.id).data
        assert source.quantity == D("400")
        assert source.reserved_quantity == D("0")
        assert notifier.events().count("transfer_completed") == 2
        assert "transfer_approval_requested" in notifier.events()

    def test_rejected_transfer_is_final(self, transfer_engine, cutting_order_id, staff):
        engine = transfer_engine
        sorted_transfer = self._transfer(engine, cutting_order_id, "sorted_material")

        rejected = engine.reject_transfer(
            sorted_transfer.id, staff.cutter, "rolls arrived wet from the yard"
        )
        assert rejected.success
        assert rejected.data.status == "rejected"

        retry = engine.approve_transfer(sorted_transfer.id, staff.cutter)
        assert retry.error_code == "ALREADY_REJECTED"
        assert engine.complete_transfer(sorted_transfer.id, staff.cutter).http_status == 409

    def test_can_approve_transfer_follows_the_turn(self, transfer_engine, cutting_order_id, staff):
        engine = transfer_engine
        sorted_transfer = self._transfer(engine, cutting_order_id, "sorted_material")

        assert engine.can_approve_transfer(sorted_transfer.id, staff.cutter).data is True
        assert engine.can_approve_transfer(sorted_transfer.id, staff.outsider).data is False

        assert engine.approve_transfer(sorted_transfer.id, staff.cutter).success
        assert engine.can_approve_transfer(sorted_transfer.id, staff.cutter).data is False

        missing = engine.can_approve_transfer(uuid4(), staff.cutter)
        assert missing.error_code == "TRANSFER_NOT_FOUND"
        assert missing.http_status == 404

    def test_auto_complete_runs_after_the_approval_commits(
        self, make_engine, transfer_config, cutting_order_id, staff, lot
    ):
        engine = make_engine(transfer_config.with_overrides(auto_complete_transfers=True))
        sorted_transfer = self._transfer(engine, cutting_order_id, "sorted_material")

        result = engine.approve_transfer(sorted_transfer.id, staff.cutter)

        assert result.success
        assert result.data.status == "completed"
        assert engine.get_stock(lot.id).data.quantity == D("400")


class TestCompletionFailureAudit:
    @pytest.fixture
    def confirming_config(self, transfer_config):
        return transfer_config.with_overrides(require_inventory_confirmation=True)

    @pytest.fixture
    def sorted_transfer_id(
        self, in_transaction, confirming_config, staff, advance, product_id, lot
    ):
        def prepare(services):
            order = services.stage_machine.create_order(
                staff.sales, "ENG-0300", product_id=product_id, required_weight=D("100")
            )
            advance(services, staff, order.id, Stage.CUTTING)
            (transfer,) = services.transfers.for_order(order.id)
            return transfer.id

        return in_transaction(confirming_config, prepare)

    def _actions(self, in_transaction, config, transfer_id):
        return in_transaction(
            config,
            lambda s: (
                [e.action for e in s.coordinator.audit_trail(transfer_id)],
                s.coordinator.verify_audit_chain(transfer_id),
            ),
        )

    def test_failed_completion_is_audited(
        self, make_engine, confirming_config, in_transaction, sorted_transfer_id, staff,
        captured_logs,
    ):
        engine = make_engine(confirming_config)
        assert engine.approve_transfer(sorted_transfer_id, staff.cutter).success

        result = engine.complete_transfer(sorted_transfer_id, staff.cutter)

        assert result.error_code == "INVENTORY_REQUESTS_PENDING"
        assert result.http_status == 409
        actions, chain_ok = self._actions(in_transaction, confirming_config, sorted_transfer_id)
        assert actions[-1] == TransferAuditAction.COMPLETION_FAILED.value
        assert chain_ok
        assert engine.transfer_approval_status(sorted_transfer_id).data.status == "approved"
        assert any(r["message"] == "transfer_completion_failed" for r in captured_logs())

    def test_refused_completion_is_not_audited(
        self, make_engine, confirming_config, in_transaction, sorted_transfer_id, staff,
    ):
        engine = make_engine(confirming_config)

        result = engine.complete_transfer(sorted_transfer_id, staff.cutter)

        assert result.error_code == "TRANSFER_NOT_APPROVED"
        actions, _ = self._actions(in_transaction, confirming_config, sorted_transfer_id)
        assert TransferAuditAction.COMPLETION_FAILED.value not in actions

    def test_failed_auto_completion_keeps_the_approval(
        self, make_engine, confirming_config, in_transaction, sorted_transfer_id, staff,
    ):
        config = confirming_config.with_overrides(auto_complete_transfers=True)
        engine = make_engine(config)

        result = engine.approve_transfer(sorted_transfer_id, staff.cutter)

        assert result.success
        assert result.data.status == "approved"
        assert engine.transfer_approval_status(sorted_transfer_id).data.status == "approved"
        actions, chain_ok = self._actions(in_transaction, config, sorted_transfer_id)
        assert TransferAuditAction.APPROVED.value in actions
        assert actions[-1] == TransferAuditAction.COMPLETION_FAILED.value
        assert chain_ok

        retry = engine.complete_transfer(sorted_transfer_id, staff.cutter)
        assert retry.error_code == "INVENTORY_REQUESTS_PENDING"


class TestStockEntries:
    """Direct stock operations at the boundary."""

    @pytest.mark.parametrize("operation", ["reserve", "add", "remove"])
    def test_outsider_is_refused(self, engine, lot, staff, operation):
        call = {
            "reserve": lambda: engine.reserve_stock(lot.id, D("10"), staff.outsider),
            "add": lambda: engine.add_stock(lot.id, D("999"), staff.outsider),
            "remove": lambda: engine.remove_stock(lot.id, D("100"), staff.outsider),
        }[operation]

        result = call()

        assert result.error_code == "UNAUTHORIZED"
        assert result.http_status == 403
        unchanged = engine.get_stock(lot.id).data
        assert unchanged.quantity == D("500")
        assert unchanged.reserved_quantity == D("0")

    def test_outsider_cannot_receive_or_release(
        self, engine, lot, staff, test_actor_id, product_id, source_warehouse_id
    ):
        received = engine.receive_stock(staff.outsider, product_id, source_warehouse_id, D("50"))
        assert received.error_code == "UNAUTHORIZED"

        held = engine.reserve_stock(lot.id, D("10"), test_actor_id).data
        released = engine.release_reservation(held.id, staff.outsider)
        assert released.error_code == "UNAUTHORIZED"
        assert engine.get_stock(lot.id).data.reserved_quantity == D("10")

    def test_warehouse_role_may_reserve(self, engine, lot, staff):
        result = engine.reserve_stock(lot.id, D("10"), staff.warehouse)

        assert result.success
        assert engine.get_stock(lot.id).data.reserved_quantity == D("10")

    def test_float_quantity_is_422(self, engine, lot, test_actor_id):
        result = engine.reserve_stock(lot.id, 5.0, test_actor_id)

        assert result.error_code == "INVALID_QUANTITY"
        assert result.http_status == 422
        assert engine.get_stock(lot.id).data.reserved_quantity == D("0")

    def test_negative_receipt_is_422(self, engine, test_actor_id, product_id, source_warehouse_id):
        result = engine.receive_stock(test_actor_id, product_id, source_warehouse_id, D("-50"))

        assert result.error_code == "INVALID_QUANTITY"
        assert result.http_status == 422
        assert engine.low_stock(D("1000000")).data == []

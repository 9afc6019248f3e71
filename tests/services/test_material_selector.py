"""
Tests for MaterialSelector.

Covers:
- Automatic selection: soonest expiry, then lowest cost, then id; expired,
  inactive-warehouse and non-matching lots skipped
- Shortage: InsufficientMaterialError and nothing reserved
- Manual selection: validation of every line, all-or-nothing reservation
- availability_report(), release and consumption of an order's materials
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from orderflow_kernel.domain.dtos import MaterialSelectionLine
from orderflow_kernel.exceptions import (
    InsufficientMaterialError,
    InvalidMaterialSelectionError,
    StagePreconditionNotMetError,
)
from orderflow_kernel.models.material import OrderMaterialStatus

D = Decimal


class TestAutoSelection:
    """Allocation order and first-fit across lots."""

    def test_soonest_expiry_first(self, services, make_stock, make_order, test_actor_id):
        later = make_stock(D("60"), expiry_date=date(2024, 3, 1), unit_cost=D("3"))
        sooner = make_stock(D("30"), expiry_date=date(2024, 2, 1), unit_cost=D("5"))
        no_expiry = make_stock(D("100"), unit_cost=D("1"))
        order = make_order(D("100"))

        result = services.selector.select(order, test_actor_id)

        assert [(a.stock_id, a.allocated_weight) for a in result.allocations] == [
            (sooner.id, D("30")),
            (later.id, D("60")),
            (no_expiry.id, D("10")),
        ]
        assert result.mode == "auto"
        assert result.total_weight == D("100")
        assert result.estimated_cost == D("30") * 5 + D("60") * 3 + D("10") * 1
        assert order.selected_materials
        assert no_expiry.available_quantity == D("90")

    def test_lowest_cost_breaks_expiry_ties(self, services, make_stock, make_order, test_actor_id):
        expiry = date(2024, 6, 1)
        dear = make_stock(D("100"), expiry_date=expiry, unit_cost=D("9"))
        cheap = make_stock(D("100"), expiry_date=expiry, unit_cost=D("2"))
        order = make_order(D("50"))

        result = services.selector.select(order, test_actor_id)

        assert [a.stock_id for a in result.allocations] == [cheap.id]
        assert dear.reserved_quantity == D("0")

    def test_expired_lots_are_skipped(self, services, make_stock, make_order, test_actor_id):
        expired = make_stock(D("500"), expiry_date=date(2023, 12, 31))
        fresh = make_stock(D("100"))
        order = make_order(D("80"))

        result = services.selector.select(order, test_actor_id)

        assert [a.stock_id for a in result.allocations] == [fresh.id]
        assert expired.reserved_quantity == D("0")

    def test_other_products_are_ignored(self, services, make_stock, make_order, test_actor_id):
        make_stock(D("500"), product=uuid4())
        mine = make_stock(D("100"))
        order = make_order(D("100"))

        result = services.selector.select(order, test_actor_id)

        assert [a.stock_id for a in result.allocations] == [mine.id]

    def test_order_specifications_filter_lots(self, services, make_stock, make_order, test_actor_id):
        make_stock(D("500"), specifications={"width": 80}, unit_cost=D("1"))
        wide = make_stock(D("200"), specifications={"width": 120}, unit_cost=D("4"))
        order = make_order(D("100"), specifications={"min_width": 100})

        result = services.selector.select(order, test_actor_id)

        assert [a.stock_id for a in result.allocations] == [wide.id]

    def test_source_warehouse_restricts_lots(
        self, services, make_stock, make_order, test_actor_id, cutting_warehouse_id
    ):
        make_stock(D("500"), unit_cost=D("1"))
        there = make_stock(D("100"), warehouse_id=cutting_warehouse_id, unit_cost=D("8"))
        order = make_order(D("100"), source_warehouse_id=cutting_warehouse_id)

        result = services.selector.select(order, test_actor_id)

        assert [a.stock_id for a in result.allocations] == [there.id]

    def test_reservations_carry_the_order(self, services, make_stock, make_order, test_actor_id):
        make_stock(D("40"), expiry_date=date(2024, 2, 1))
        make_stock(D("100"))
        order = make_order(D("100"))

        services.selector.select(order, test_actor_id)

        reservations = services.stocks.active_reservations_for_order(order.id)
        assert len(reservations) == 2
        assert services.stocks.reserved_total_for_order(order.id) == D("100")


class TestShortage:
    def test_shortage_raises_and_reserves_nothing(self, services, make_stock, make_order, test_actor_id):
        first = make_stock(D("30"))
        second = make_stock(D("40"))
        order = make_order(D("100"))

        with pytest.raises(InsufficientMaterialError) as exc_info:
            services.selector.select(order, test_actor_id)

        assert exc_info.value.required == D("100")
        assert exc_info.value.available == D("70")
        assert exc_info.value.shortage == D("30")
        assert first.reserved_quantity == D("0")
        assert second.reserved_quantity == D("0")
        assert not order.selected_materials

    def test_existing_reservations_reduce_availability(
        self, services, make_stock, make_order, test_actor_id
    ):
        stock = make_stock(D("100"))
        services.ledger.reserve(stock, D("50"), test_actor_id)
        order = make_order(D("60"))

        with pytest.raises(InsufficientMaterialError):
            services.selector.select(order, test_actor_id)

    def test_selecting_twice_is_refused(self, services, make_stock, make_order, test_actor_id):
        make_stock(D("500"))
        order = make_order(D("100"))
        services.selector.select(order, test_actor_id)

        with pytest.raises(StagePreconditionNotMetError):
            services.selector.select(order, test_actor_id)


class TestManualSelection:
    """Explicit (stock, weight) lines."""

    def test_manual_lines_are_reserved(self, services, make_stock, make_order, test_actor_id):
        a = make_stock(D("100"))
        b = make_stock(D("100"))
        order = make_order(D("100"))

        result = services.selector.select(
            order,
            test_actor_id,
            auto=False,
            selections=[
                MaterialSelectionLine(a.id, D("70")),
                MaterialSelectionLine(b.id, D("30")),
            ],
        )

        assert result.mode == "manual"
        assert a.reserved_quantity == D("70")
        assert b.reserved_quantity == D("30")

    def test_lines_must_cover_the_requirement(self, services, make_stock, make_order, test_actor_id):
        a = make_stock(D("100"))
        order = make_order(D("100"))

        with pytest.raises(InsufficientMaterialError):
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[MaterialSelectionLine(a.id, D("50"))],
            )
        assert a.reserved_quantity == D("0")

    def test_line_above_lot_availability(self, services, make_stock, make_order, test_actor_id):
        a = make_stock(D("40"))
        b = make_stock(D("100"))
        order = make_order(D("100"))

        with pytest.raises(InsufficientMaterialError):
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[
                    MaterialSelectionLine(b.id, D("50")),
                    MaterialSelectionLine(a.id, D("50")),
                ],
            )
        assert a.reserved_quantity == D("0")
        assert b.reserved_quantity == D("0")

    def test_unknown_lot(self, services, make_order, test_actor_id):
        order = make_order(D("10"))
        with pytest.raises(InvalidMaterialSelectionError):
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[MaterialSelectionLine(uuid4(), D("10"))],
            )

    def test_expired_lot(self, services, make_stock, make_order, test_actor_id):
        stale = make_stock(D("100"), expiry_date=date(2023, 6, 1))
        order = make_order(D("10"))
        with pytest.raises(InvalidMaterialSelectionError) as exc_info:
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[MaterialSelectionLine(stale.id, D("10"))],
            )
        assert "expired" in exc_info.value.reason

    def test_wrong_product(self, services, make_stock, make_order, test_actor_id):
        other = make_stock(D("100"), product=uuid4())
        order = make_order(D("10"))
        with pytest.raises(InvalidMaterialSelectionError):
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[MaterialSelectionLine(other.id, D("10"))],
            )

    def test_non_positive_weight(self, services, make_stock, make_order, test_actor_id):
        a = make_stock(D("100"))
        order = make_order(D("10"))
        with pytest.raises(InvalidMaterialSelectionError):
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[
                    MaterialSelectionLine(a.id, D("20")),
                    MaterialSelectionLine(a.id, D("0")),
                ],
            )

    def test_float_weight(self, services, make_stock, make_order, test_actor_id):
        a = make_stock(D("100"))
        order = make_order(D("10"))
        with pytest.raises(InvalidMaterialSelectionError) as exc_info:
            services.selector.select(
                order, test_actor_id, auto=False,
                selections=[MaterialSelectionLine(a.id, 10.0)],
            )
        assert "Decimal" in exc_info.value.reason
        assert a.reserved_quantity == D("0")


class TestReportingAndRelease:
    def test_availability_report(self, services, make_stock, make_order, test_actor_id):
        make_stock(D("30"))
        make_stock(D("45"))
        order = make_order(D("100"))

        report = services.selector.availability_report(order)

        assert report.required_weight == D("100")
        assert report.available_weight == D("75")
        assert report.candidate_count == 2

    def test_release_order_materials(self, services, make_stock, make_order, test_actor_id):
        a = make_stock(D("60"), expiry_date=date(2024, 2, 1))
        b = make_stock(D("100"))
        order = make_order(D("100"))
        services.selector.select(order, test_actor_id)

        released = services.selector.release_order_materials(order, test_actor_id)

        assert released == D("100")
        assert a.reserved_quantity == D("0")
        assert b.reserved_quantity == D("0")
        statuses = {m.status for m in services.selector.materials_for(order)}
        assert statuses == {OrderMaterialStatus.RELEASED.value}

    def test_consume_order_materials(self, services, make_stock, make_order, test_actor_id):
        stock = make_stock(D("150"))
        order = make_order(D("100"))
        services.selector.select(order, test_actor_id)

        consumed = services.selector.consume_order_materials(order, test_actor_id)

        assert consumed == D("100")
        assert stock.quantity == D("50")
        assert stock.reserved_quantity == D("0")

from datetime import date
from decimal import Decimal

import pytest

from steelmelt_core.app.errors import ConstraintError, NotFoundError, ValidationError
from steelmelt_core.app.models import Order, OrderItem, OrderStatus
from steelmelt_core.app.services import DispatchLineInput, OrderLineInput


def line(item_id, quantity, rate, id=None):
    return OrderLineInput(item_id=item_id, quantity=Decimal(quantity), rate=Decimal(rate), id=id)


class TestCreateOrder:

    def test_prices_lines_with_same_state_gst(self, order_service, masters):
        order = order_service.create_order(
            customer_id=masters.local_customer_id,
            order_date=date(2025, 4, 1),
            items=[line(masters.shot_id, "500", "10")],
            po_no="PO-77",
        )

        assert order.order_no.startswith("ORD/")
        assert order.status == OrderStatus.PENDING
        oi = order.items[0]
        assert oi.amount == Decimal("5000.00")
        assert oi.cgst == Decimal("450.00")
        assert oi.sgst == Decimal("450.00")
        assert oi.igst == Decimal("0.00")
        assert oi.total_amount == Decimal("5900.00")
        assert oi.bag_count == Decimal("20.000")

    def test_interstate_customer_pays_igst(self, order_service, masters):
        order = order_service.create_order(
            customer_id=masters.outstation_customer_id,
            order_date=date(2025, 4, 1),
            items=[line(masters.grit_id, "100", "40")],
        )

        oi = order.items[0]
        assert oi.igst == Decimal("200.00")
        assert oi.cgst == oi.sgst == Decimal("0.00")
        assert oi.total_amount == Decimal("4200.00")

    def test_customer_without_state_pays_igst(self, order_service, masters):
        order = order_service.create_order(
            customer_id=masters.stateless_customer_id,
            order_date=date(2025, 4, 1),
            items=[line(masters.shot_id, "10", "10")],
        )

        assert order.items[0].igst == Decimal("18.00")

    def test_bag_count_keeps_three_decimals(self, order_service, masters):
        order = order_service.create_order(
            customer_id=masters.local_customer_id,
            order_date=date(2025, 4, 1),
            items=[line(masters.shot_id, "10", "10")],
        )

        assert order.items[0].bag_count == Decimal("0.400")

    def test_order_numbers_are_sequential(self, order_service, masters):
        first = order_service.create_order(
            masters.local_customer_id, date(2025, 4, 1), [line(masters.shot_id, "1", "1")]
        )
        second = order_service.create_order(
            masters.local_customer_id, date(2025, 4, 1), [line(masters.shot_id, "1", "1")]
        )

        assert int(second.order_no.rsplit("/", 1)[1]) == int(first.order_no.rsplit("/", 1)[1]) + 1

    def test_unknown_item_rolls_back_whole_order(self, db, order_service, masters):
        with pytest.raises(ConstraintError) as exc:
            order_service.create_order(
                customer_id=masters.local_customer_id,
                order_date=date(2025, 4, 1),
                items=[line(masters.shot_id, "5", "10"), line(99999, "5", "10")],
            )

        assert "99999" in exc.value.message
        assert db.query(Order).count() == 0
        assert db.query(OrderItem).count() == 0

    def test_unknown_customer(self, order_service, masters):
        with pytest.raises(ConstraintError) as exc:
            order_service.create_order(99999, date(2025, 4, 1), [line(masters.shot_id, "5", "10")])
        assert exc.value.field == "customerId"

    @pytest.mark.parametrize("quantity,rate,field", [
        ("0", "10", "items[0].quantity"),
        ("-1", "10", "items[0].quantity"),
        ("5", "-0.01", "items[0].rate"),
    ])
    def test_invalid_lines(self, db, order_service, masters, quantity, rate, field):
        with pytest.raises(ValidationError) as exc:
            order_service.create_order(
                masters.local_customer_id, date(2025, 4, 1), [line(masters.shot_id, quantity, rate)]
            )

        assert exc.value.field == field
        assert db.query(Order).count() == 0

    def test_empty_item_list(self, order_service, masters):
        with pytest.raises(ValidationError):
            order_service.create_order(masters.local_customer_id, date(2025, 4, 1), [])


class TestOrderQueries:

    def test_get_missing_order(self, order_service, masters):
        with pytest.raises(NotFoundError):
            order_service.get_order(12345)

    def test_balance_of_fresh_order(self, order_service, shot_order):
        rows = order_service.order_balance(shot_order.id)

        assert len(rows) == 1
        assert rows[0]['ordered_qty'] == Decimal("500.000")
        assert rows[0]['dispatched_qty'] == Decimal("0.000")
        assert rows[0]['balance_qty'] == Decimal("500.000")

    def test_pending_orders_excludes_completed(self, order_service, shot_order, masters):
        other = order_service.create_order(
            masters.outstation_customer_id, date(2025, 4, 2), [line(masters.grit_id, "50", "40")]
        )
        order_service.create_dispatch(
            shot_order.id, date(2025, 4, 3),
            [DispatchLineInput(shot_order.items[0].id, Decimal("500"))],
        )

        pending = order_service.pending_orders()

        assert [o.id for o in pending] == [other.id]

    def test_list_orders_filters(self, order_service, shot_order, masters):
        order_service.create_order(
            masters.outstation_customer_id, date(2025, 5, 2), [line(masters.grit_id, "50", "40")]
        )

        assert len(order_service.list_orders()) == 2
        assert [o.id for o in order_service.list_orders(customer_id=masters.local_customer_id)] == [shot_order.id]
        assert len(order_service.list_orders(from_date=date(2025, 5, 1))) == 1
        assert len(order_service.list_orders(status=OrderStatus.PENDING)) == 2


class TestUpdateOrder:

    def test_revise_quantity_and_rate_recomputes_gst(self, order_service, shot_order, masters):
        oi_id = shot_order.items[0].id

        order = order_service.update_order(
            shot_order.id, items=[line(masters.shot_id, "600", "12", id=oi_id)]
        )

        oi = order.items[0]
        assert oi.id == oi_id
        assert oi.amount == Decimal("7200.00")
        assert oi.cgst == oi.sgst == Decimal("648.00")
        assert oi.bag_count == Decimal("24.000")

    def test_add_and_remove_lines(self, order_service, shot_order, masters):
        order = order_service.update_order(
            shot_order.id, items=[line(masters.grit_id, "40", "30")]
        )

        assert [oi.item_id for oi in order.items] == [masters.grit_id]

    def test_quantity_cannot_drop_below_dispatched(self, order_service, shot_order, masters):
        oi_id = shot_order.items[0].id
        order_service.create_dispatch(shot_order.id, date(2025, 4, 2), [DispatchLineInput(oi_id, Decimal("300"))])

        with pytest.raises(ConstraintError):
            order_service.update_order(shot_order.id, items=[line(masters.shot_id, "299", "10", id=oi_id)])

        order = order_service.update_order(shot_order.id, items=[line(masters.shot_id, "300", "10", id=oi_id)])
        assert order.status == OrderStatus.COMPLETED

    def test_dispatched_line_cannot_be_removed(self, order_service, shot_order, masters):
        oi_id = shot_order.items[0].id
        order_service.create_dispatch(shot_order.id, date(2025, 4, 2), [DispatchLineInput(oi_id, Decimal("1"))])

        with pytest.raises(ConstraintError):
            order_service.update_order(shot_order.id, items=[line(masters.grit_id, "40", "30")])

        assert [oi.id for oi in order_service.get_order(shot_order.id).items] == [oi_id]

    def test_customer_change_reprices(self, order_service, shot_order, masters):
        order = order_service.update_order(
            shot_order.id, changes={"customer_id": masters.outstation_customer_id}
        )

        oi = order.items[0]
        assert oi.igst == Decimal("900.00")
        assert oi.cgst == Decimal("0.00")

    def test_line_from_another_order(self, order_service, shot_order, masters):
        other = order_service.create_order(
            masters.local_customer_id, date(2025, 4, 2), [line(masters.grit_id, "50", "40")]
        )

        with pytest.raises(ConstraintError):
            order_service.update_order(
                shot_order.id, items=[line(masters.grit_id, "50", "40", id=other.items[0].id)]
            )


class TestDeleteOrder:

    def test_delete_undispatched_order(self, db, order_service, shot_order):
        order_service.delete_order(shot_order.id)

        assert db.query(Order).count() == 0
        assert db.query(OrderItem).count() == 0

    def test_order_with_dispatches_cannot_be_deleted(self, order_service, shot_order):
        order_service.create_dispatch(
            shot_order.id, date(2025, 4, 2), [DispatchLineInput(shot_order.items[0].id, Decimal("10"))]
        )

        with pytest.raises(ConstraintError):
            order_service.delete_order(shot_order.id)

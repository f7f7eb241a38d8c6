"""
Concurrency tests for the dispatch balance check.

Each worker runs in its own thread with its own session against the same
database file, so the order-item lock is exercised for real.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from threading import Barrier

import pytest
from sqlalchemy import func

from steelmelt_core.app.errors import ConcurrencyConflict, OverDispatchError
from steelmelt_core.app.models import (
    DispatchItem, OrderStatus, ReferenceType, StockTransaction, TransactionType
)
from steelmelt_core.app.services import (
    DispatchLineInput, OrderFulfillmentService, OrderLineInput, StockLedger
)


def _dispatch_worker(database, settings, barrier, order_id, order_item_id, quantity):
    session = database.session()
    try:
        service = OrderFulfillmentService(session, settings, StockLedger(session))
        barrier.wait(timeout=30)
        service.create_dispatch(
            order_id, date(2025, 4, 5), [DispatchLineInput(order_item_id, Decimal(quantity))]
        )
        return "ok"
    except OverDispatchError:
        return "over"
    except ConcurrencyConflict:
        return "conflict"
    finally:
        session.close()


class TestConcurrentDispatch:

    @pytest.fixture
    def small_order(self, order_service, masters):
        return order_service.create_order(
            masters.local_customer_id, date(2025, 4, 1),
            [OrderLineInput(masters.shot_id, Decimal("100"), Decimal("10"))],
        )

    def test_concurrent_dispatches_never_overshoot(self, db, database, settings, small_order):
        """Eight dispatches of 25 race for a balance of 100: exactly four fit"""
        workers = 8
        order_id = small_order.id
        oi_id = small_order.items[0].id
        barrier = Barrier(workers)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(_dispatch_worker, database, settings, barrier, order_id, oi_id, "25")
                for _ in range(workers)
            ]
            results = [f.result(timeout=120) for f in futures]

        assert results.count("ok") == 4
        assert results.count("over") == 4

        db.expire_all()
        dispatched = db.query(func.sum(DispatchItem.quantity_dispatched)).filter(
            DispatchItem.order_item_id == oi_id
        ).scalar()
        assert Decimal(str(dispatched)) == Decimal("100")

        issues = db.query(StockTransaction).filter(
            StockTransaction.transaction_type == TransactionType.ISSUE
        ).count()
        assert issues == 4

    def test_unrelated_order_items_do_not_interfere(self, db, database, settings, order_service, masters):
        orders = [
            order_service.create_order(
                masters.local_customer_id, date(2025, 4, 1),
                [OrderLineInput(masters.shot_id, Decimal("50"), Decimal("10"))],
            )
            for _ in range(4)
        ]
        targets = [(o.id, o.items[0].id) for o in orders]
        barrier = Barrier(len(targets))

        with ThreadPoolExecutor(max_workers=len(targets)) as pool:
            futures = [
                pool.submit(_dispatch_worker, database, settings, barrier, order_id, oi_id, "50")
                for order_id, oi_id in targets
            ]
            results = [f.result(timeout=120) for f in futures]

        assert results == ["ok"] * len(targets)
        db.expire_all()
        for order_id, _ in targets:
            assert order_service.get_order(order_id).status == OrderStatus.COMPLETED


def _dispatched_total(db, order_item_id):
    db.expire_all()
    total = db.query(func.sum(DispatchItem.quantity_dispatched)).filter(
        DispatchItem.order_item_id == order_item_id
    ).scalar()
    return Decimal(str(total or 0))


def _dispatch_issue_total(db):
    total = db.query(func.sum(StockTransaction.quantity)).filter(
        StockTransaction.reference_type == ReferenceType.DISPATCH.value
    ).scalar()
    return Decimal(str(total or 0))


def _edit_worker(database, settings, barrier, dispatch_id, order_item_id, quantity):
    session = database.session()
    try:
        service = OrderFulfillmentService(session, settings, StockLedger(session))
        barrier.wait(timeout=30)
        service.update_dispatch(dispatch_id, [DispatchLineInput(order_item_id, Decimal(quantity))])
        return "ok"
    except OverDispatchError:
        return "over"
    except ConcurrencyConflict:
        return "conflict"
    finally:
        session.close()


class TestEditsOfTheSameDispatch:
    """Order of 500 with two dispatches, 300 and 10; both sessions target the first"""

    @pytest.fixture
    def dispatched(self, order_service, shot_order):
        oi_id = shot_order.items[0].id
        first = order_service.create_dispatch(
            shot_order.id, date(2025, 4, 5), [DispatchLineInput(oi_id, Decimal("300"))]
        )
        order_service.create_dispatch(
            shot_order.id, date(2025, 4, 6), [DispatchLineInput(oi_id, Decimal("10"))]
        )
        return first.id, oi_id

    @pytest.fixture
    def other_session(self, database):
        session = database.session()
        yield session
        session.close()

    def test_edit_from_a_stale_session_sees_the_committed_edit(
        self, db, other_session, settings, order_service, dispatched
    ):
        dispatch_id, oi_id = dispatched
        other = OrderFulfillmentService(other_session, settings, StockLedger(other_session))
        assert len(other.get_dispatch(dispatch_id).items) == 1

        order_service.update_dispatch(dispatch_id, [DispatchLineInput(oi_id, Decimal("400"))])
        other.update_dispatch(dispatch_id, [DispatchLineInput(oi_id, Decimal("450"))])

        assert _dispatched_total(db, oi_id) == Decimal("460")
        assert _dispatch_issue_total(db) == Decimal("460")
        assert db.query(DispatchItem).filter(DispatchItem.dispatch_id == dispatch_id).count() == 1

    def test_stale_edit_is_still_balance_checked(
        self, db, other_session, settings, order_service, dispatched
    ):
        dispatch_id, oi_id = dispatched
        other = OrderFulfillmentService(other_session, settings, StockLedger(other_session))
        other.get_dispatch(dispatch_id).items

        order_service.update_dispatch(dispatch_id, [DispatchLineInput(oi_id, Decimal("400"))])
        with pytest.raises(OverDispatchError):
            other.update_dispatch(dispatch_id, [DispatchLineInput(oi_id, Decimal("491"))])

        assert _dispatched_total(db, oi_id) == Decimal("410")

    def test_delete_from_a_stale_session(self, db, other_session, settings, order_service, dispatched):
        dispatch_id, oi_id = dispatched
        other = OrderFulfillmentService(other_session, settings, StockLedger(other_session))
        other.get_dispatch(dispatch_id).items

        order_service.update_dispatch(dispatch_id, [DispatchLineInput(oi_id, Decimal("400"))])
        other.delete_dispatch(dispatch_id)

        assert _dispatched_total(db, oi_id) == Decimal("10")
        assert _dispatch_issue_total(db) == Decimal("10")

    def test_concurrent_edits_never_overshoot(self, db, database, settings, dispatched):
        dispatch_id, oi_id = dispatched
        barrier = Barrier(2)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(_edit_worker, database, settings, barrier, dispatch_id, oi_id, quantity)
                for quantity in ("400", "450")
            ]
            results = [f.result(timeout=120) for f in futures]

        assert "ok" in results
        total = _dispatched_total(db, oi_id)
        assert total in (Decimal("410"), Decimal("460"))
        assert _dispatch_issue_total(db) == total

"""
Database failures surface as ledger errors: a held lock is a retryable
409, anything else is a 503.
"""

from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from steelmelt_core.app.db import Database, transaction
from steelmelt_core.app.errors import ConcurrencyConflict, StorageError
from steelmelt_core.app.main import create_app
from steelmelt_core.app.models import Dispatch
from steelmelt_core.app.services import DispatchLineInput, OrderFulfillmentService, StockLedger


@pytest.fixture
def impatient_settings(settings):
    return settings.model_copy(update={"LOCK_TIMEOUT_SECONDS": 0})


@pytest.fixture
def writer_lock(database):
    """Another connection holding the SQLite writer lock until the test ends"""
    def hold():
        conn = database.engine.connect()
        conn.execute(text("UPDATE order_items SET lock_version = lock_version + 1"))
        held.append(conn)

    held = []
    yield hold
    for conn in held:
        conn.rollback()
        conn.close()


class TestLockConflict:

    def test_dispatch_against_a_held_lock_is_retryable(
        self, db, impatient_settings, shot_order, writer_lock
    ):
        impatient = Database(impatient_settings.DATABASE_URL, lock_timeout=0)
        session = impatient.session()
        try:
            service = OrderFulfillmentService(session, impatient_settings, StockLedger(session))
            writer_lock()

            with pytest.raises(ConcurrencyConflict) as exc:
                service.create_dispatch(
                    shot_order.id, date(2025, 4, 5),
                    [DispatchLineInput(shot_order.items[0].id, Decimal("10"))],
                )
            assert exc.value.retryable is True
            assert exc.value.status_code == 409
        finally:
            session.close()
            impatient.dispose()

        assert db.query(Dispatch).count() == 0

    def test_api_returns_409_with_retryable(self, impatient_settings, masters, writer_lock):
        with TestClient(create_app(impatient_settings)) as client:
            order = client.post("/orders", json={
                "customerId": masters.local_customer_id,
                "orderDate": "2025-04-01",
                "items": [{"itemId": masters.shot_id, "quantity": 100, "rate": 10}],
            }).json()
            writer_lock()

            response = client.post("/dispatches", json={
                "orderId": order["id"],
                "dispatchDate": "2025-04-05",
                "items": [{"orderItemId": order["items"][0]["id"], "quantityDispatched": 10}],
            })

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["retryable"] is True


class TestStorageFailure:

    def test_non_lock_operational_error_is_storage_error(self, db, masters):
        with pytest.raises(StorageError) as exc:
            with transaction(db):
                db.execute(text("SELECT * FROM no_such_table"))

        assert exc.value.status_code == 503
        assert exc.value.retryable is False
        assert isinstance(exc.value.__cause__, OperationalError)

    def test_lock_message_is_recognised(self, db):
        with pytest.raises(ConcurrencyConflict):
            with transaction(db):
                raise OperationalError("UPDATE order_items", {}, Exception("database is locked"))

    def test_api_write_returns_503(self, client, database, masters):
        with database.engine.begin() as conn:
            conn.execute(text("DROP TABLE stock_transactions"))

        response = client.post("/stock-reports/stock-transactions", json={
            "transactionDate": "2025-03-15",
            "transactionType": "OPENING",
            "itemId": masters.scrap_id,
            "quantity": 100,
            "rate": 20,
        })

        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "Database unavailable"}

    def test_api_read_returns_503(self, client, database, masters):
        with database.engine.begin() as conn:
            conn.execute(text("DROP TABLE stock_transactions"))

        response = client.get("/stock-reports/stock-transactions")

        assert response.status_code == 503
        assert response.json()["success"] is False

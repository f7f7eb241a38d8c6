"""
Pytest fixtures for the order fulfillment and stock ledger tests.

Provides:
- A file-backed SQLite database per test (tmp_path), so threads in the
  concurrency tests share real locks
- Seeded master data (categories, items, parties)
- Service instances and a FastAPI TestClient bound to the same database
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from steelmelt_core.app.config import Settings
from steelmelt_core.app.db import Database
from steelmelt_core.app.main import create_app
from steelmelt_core.app import models
from steelmelt_core.app.services import (
    OrderFulfillmentService,
    OrderLineInput,
    ProductionEventService,
    StockLedger,
    StockStatementService,
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{(tmp_path / 'steelmelt_test.db').as_posix()}",
        LOCK_TIMEOUT_SECONDS=30,
        COMPANY_STATE="Maharashtra",
        CORS_ORIGINS=[],
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def database(settings):
    database = Database(settings.DATABASE_URL, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def masters(db):
    """Categories, items and parties used across the suite"""
    categories = {}
    for name in models.CategoryName:
        category = models.Category(name=name.value)
        db.add(category)
        categories[name] = category
    db.flush()

    def item(name, category, gst_rate="18"):
        row = models.Item(
            name=name, category_id=categories[category].id, uom="KG", gst_rate=Decimal(gst_rate)
        )
        db.add(row)
        return row

    scrap = item("MS Scrap", models.CategoryName.RAW_MATERIAL)
    carbon = item("CARBON", models.CategoryName.MINERALS)
    wip = item("Liquid Metal", models.CategoryName.WIP)
    shot = item("Steel Shot S-170", models.CategoryName.FINISHED_PRODUCT)
    grit = item("Steel Grit G-25", models.CategoryName.FINISHED_PRODUCT, gst_rate="5")

    local = models.Customer(name="Pune Foundry", state="Maharashtra")
    outstation = models.Customer(name="Surat Castings", state="Gujarat")
    stateless = models.Customer(name="Walk-in Buyer", state=None)
    supplier = models.Supplier(name="Nashik Scrap Traders", state="maharashtra ")
    transporter = models.Transporter(name="VRL Logistics")
    db.add_all([local, outstation, stateless, supplier, transporter])
    db.commit()

    return SimpleNamespace(
        raw_material_category_id=categories[models.CategoryName.RAW_MATERIAL].id,
        minerals_category_id=categories[models.CategoryName.MINERALS].id,
        wip_category_id=categories[models.CategoryName.WIP].id,
        finished_category_id=categories[models.CategoryName.FINISHED_PRODUCT].id,
        scrap_id=scrap.id,
        carbon_id=carbon.id,
        wip_id=wip.id,
        shot_id=shot.id,
        grit_id=grit.id,
        local_customer_id=local.id,
        outstation_customer_id=outstation.id,
        stateless_customer_id=stateless.id,
        supplier_id=supplier.id,
        transporter_id=transporter.id,
    )


@pytest.fixture
def ledger(db) -> StockLedger:
    return StockLedger(db)


@pytest.fixture
def order_service(db, settings, ledger) -> OrderFulfillmentService:
    return OrderFulfillmentService(db, settings, ledger)


@pytest.fixture
def production_service(db, settings, ledger) -> ProductionEventService:
    return ProductionEventService(db, settings, ledger)


@pytest.fixture
def statement_service(db, settings) -> StockStatementService:
    return StockStatementService(db, settings)


@pytest.fixture
def shot_order(order_service, masters):
    """Order for 500 of the finished item at rate 10, same-state customer"""
    return order_service.create_order(
        customer_id=masters.local_customer_id,
        order_date=date(2025, 4, 1),
        items=[OrderLineInput(item_id=masters.shot_id, quantity=Decimal("500"), rate=Decimal("10"))],
    )


@pytest.fixture
def client(settings, masters):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client

from typing import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .config import Settings
from .services import (
    OrderFulfillmentService, ProductionEventService, StockLedger, StockReportService,
    StockStatementService
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Generator:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def get_order_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> OrderFulfillmentService:
    return OrderFulfillmentService(db, settings, StockLedger(db))


def get_production_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ProductionEventService:
    return ProductionEventService(db, settings, StockLedger(db))


def get_statement_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> StockStatementService:
    return StockStatementService(db, settings)


def get_report_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> StockReportService:
    return StockReportService(db, settings)

"""
Stock Reports API Router
========================
- Stock statement (opening / receipt / issue / closing) and its Excel export
- Manual stock ledger entries (opening stock, adjustments)
- Ledger listing
- Ledger reports: movement, raw material, finished goods, WIP, consumption, production
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import Field
from sqlalchemy.orm import Session

from ..db import transaction
from ..deps import get_db, get_report_service, get_statement_service
from ..models import ReferenceType, StockTransaction, TransactionType
from ..schemas import CamelModel, MessageOut
from ..services import LedgerEntry, StockLedger, StockReportService, StockStatementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stock-reports", tags=["Stock Reports"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# =============================================================================
# SCHEMAS
# =============================================================================

class StockTransactionCreate(CamelModel):
    """Manual ledger entry"""
    transaction_date: date
    transaction_type: TransactionType
    item_id: int
    quantity: float = Field(..., gt=0)
    rate: float = Field(..., gt=0)
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    remarks: Optional[str] = None


class StockTransactionOut(CamelModel):
    id: int
    transaction_date: date
    transaction_type: str
    item_id: int
    item_name: Optional[str] = None
    quantity: float
    rate: float
    amount: float
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    remarks: Optional[str] = None
    created_at: Optional[datetime] = None


class StatementRowOut(CamelModel):
    item_id: int
    item_name: str
    uom: Optional[str] = None
    category_id: int
    category_name: str
    opening_qty: float
    opening_rate: float
    opening_amount: float
    receipt_qty: float
    receipt_rate: float
    receipt_amount: float
    issue_qty: float
    issue_rate: float
    issue_amount: float
    closing_qty: float
    closing_rate: float
    closing_amount: float


class StatementTotalsOut(CamelModel):
    opening_qty: float
    opening_rate: float
    opening_amount: float
    receipt_qty: float
    receipt_rate: float
    receipt_amount: float
    issue_qty: float
    issue_rate: float
    issue_amount: float
    closing_qty: float
    closing_rate: float
    closing_amount: float


class StatementFiltersOut(CamelModel):
    start_date: date
    end_date: date
    category_id: Optional[int] = None
    include_zero: bool


class StockStatementOut(CamelModel):
    items: List[StatementRowOut]
    totals: StatementTotalsOut
    filters: StatementFiltersOut


class MovementOut(CamelModel):
    id: int
    movement_date: date
    movement_type: str
    transaction_type: str
    item_id: int
    item_name: str
    category_name: str
    in_qty: Optional[float] = None
    out_qty: Optional[float] = None
    rate: float
    amount: float
    reference: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None


class RawMaterialStockOut(CamelModel):
    item_id: int
    item_name: str
    category_name: str
    uom: Optional[str] = None
    total_received: float
    total_consumed: float
    current_stock: float


class FinishedGoodsStockOut(CamelModel):
    item_id: int
    item_name: str
    uom: Optional[str] = None
    total_produced: float
    total_dispatched: float
    total_produced_bags: float
    total_dispatched_bags: float
    current_stock_kg: float
    current_stock_bags: float


class WipRowOut(CamelModel):
    wip_date: date
    melted_qty: float
    heat_treated_qty: float
    net_qty: float
    wip_balance: float


class ConsumptionRowOut(CamelModel):
    melting_process_id: int
    melting_date: date
    heat_no: str
    item_id: int
    item_name: str
    category_name: str
    quantity: float
    rate: float
    amount: float


class ProductionRowOut(CamelModel):
    id: int
    treatment_date: date
    furnace_no: int
    size_item_id: int
    size_name: str
    temperature: float
    bags_produced: int
    quantity: float
    rate: float
    amount: float


def transaction_out(txn: StockTransaction) -> StockTransactionOut:
    return StockTransactionOut(
        id=txn.id,
        transaction_date=txn.transaction_date,
        transaction_type=txn.transaction_type.value,
        item_id=txn.item_id,
        item_name=txn.item.name if txn.item else None,
        quantity=float(txn.quantity),
        rate=float(txn.rate),
        amount=float(txn.amount),
        reference_type=txn.reference_type,
        reference_id=txn.reference_id,
        remarks=txn.remarks,
        created_at=txn.created_at,
    )


# =============================================================================
# STOCK STATEMENT
# =============================================================================

@router.get("/stock-statement", response_model=StockStatementOut)
def stock_statement(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    include_zero: Optional[bool] = Query(None, alias="includeZero"),
    service: StockStatementService = Depends(get_statement_service),
):
    """
    Stock statement for an inclusive date range.

    Re-derived from the ledger on every call; dates are YYYY-MM-DD.
    """
    return service.generate(start_date, end_date, category_id=category_id, include_zero=include_zero)


@router.get("/stock-statement/export")
def export_stock_statement(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    include_zero: Optional[bool] = Query(None, alias="includeZero"),
    service: StockStatementService = Depends(get_statement_service),
):
    statement = service.generate(start_date, end_date, category_id=category_id, include_zero=include_zero)
    content = service.export_excel(statement)
    filename = f"stock_statement_{start_date.isoformat()}_{end_date.isoformat()}.xlsx"
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# =============================================================================
# LEDGER
# =============================================================================

@router.post("/stock-transactions", response_model=StockTransactionOut, status_code=201)
def create_stock_transaction(data: StockTransactionCreate, db: Session = Depends(get_db)):
    """Manual ledger entry; quantity and rate must be positive"""
    ledger = StockLedger(db)
    with transaction(db):
        txn = ledger.record_manual(LedgerEntry(
            transaction_date=data.transaction_date,
            transaction_type=data.transaction_type,
            item_id=data.item_id,
            quantity=data.quantity,
            rate=data.rate,
            reference_type=data.reference_type or ReferenceType.MANUAL.value,
            reference_id=data.reference_id,
            remarks=data.remarks,
        ))
    logger.info(
        "Manual %s of %s for item %s recorded", txn.transaction_type.value, txn.quantity, txn.item_id
    )
    return transaction_out(txn)


@router.get("/stock-transactions", response_model=List[StockTransactionOut])
def list_stock_transactions(
    item_id: Optional[int] = Query(None, alias="itemId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    transaction_type: Optional[TransactionType] = Query(None, alias="transactionType"),
    reference_type: Optional[str] = Query(None, alias="referenceType"),
    db: Session = Depends(get_db),
):
    rows = StockLedger(db).list_transactions(
        item_id=item_id,
        start_date=start_date,
        end_date=end_date,
        transaction_type=transaction_type,
        reference_type=reference_type,
    )
    return [transaction_out(t) for t in rows]


@router.delete("/stock-transactions/{transaction_id}", response_model=MessageOut)
def delete_stock_transaction(transaction_id: int, db: Session = Depends(get_db)):
    """Only manual entries; event rows follow their event"""
    with transaction(db):
        StockLedger(db).delete_manual(transaction_id)
    logger.info("Manual stock transaction %s deleted", transaction_id)
    return MessageOut(message="Stock transaction deleted successfully")


# =============================================================================
# LEDGER REPORTS
# =============================================================================

@router.get("/movement", response_model=List[MovementOut])
def stock_movement(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    item_name: Optional[str] = Query(None, alias="itemName"),
    movement_type: Optional[str] = Query(None, alias="movementType"),
    service: StockReportService = Depends(get_report_service),
):
    """Every ledger row, newest first; movementType is GRN, Melting, Dispatch, ..."""
    return service.movement(from_date, to_date, item_name=item_name, movement_type=movement_type)


@router.get("/raw-material", response_model=List[RawMaterialStockOut])
def raw_material_stock(
    category: Optional[str] = Query(None),
    item_name: Optional[str] = Query(None, alias="itemName"),
    service: StockReportService = Depends(get_report_service),
):
    return service.raw_material(category=category, item_name=item_name)


@router.get("/finished-goods", response_model=List[FinishedGoodsStockOut])
def finished_goods_stock(
    item_name: Optional[str] = Query(None, alias="itemName"),
    service: StockReportService = Depends(get_report_service),
):
    return service.finished_goods(item_name=item_name)


@router.get("/wip", response_model=List[WipRowOut])
def wip_report(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    service: StockReportService = Depends(get_report_service),
):
    return service.wip(from_date, to_date)


@router.get("/consumption", response_model=List[ConsumptionRowOut])
def consumption_report(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    heat_no: Optional[str] = Query(None, alias="heatNo"),
    service: StockReportService = Depends(get_report_service),
):
    return service.consumption(from_date, to_date, heat_no=heat_no)


@router.get("/production", response_model=List[ProductionRowOut])
def production_report(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    furnace_no: Optional[int] = Query(None, alias="furnaceNo"),
    service: StockReportService = Depends(get_report_service),
):
    return service.production(from_date, to_date, furnace_no=furnace_no)

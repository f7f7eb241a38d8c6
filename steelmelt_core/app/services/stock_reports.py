"""
Ledger Reports
==============
Operational views derived from the stock ledger:

- Movement:       every ledger row, labelled by the event that wrote it
- Raw material:   received / consumed / on hand for raw material and minerals
- Finished goods: produced / dispatched / on hand, in kg and bags
- WIP:            melted vs heat-treated quantity per day, running balance
- Consumption:    melting issues per heat
- Production:     heat-treatment batches with their ledger valuation
"""

import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import ValidationError
from ..models import (
    Category, CategoryName, HeatTreatment, Item, MeltingProcess,
    ReferenceType, StockTransaction, TransactionType
)
from .gst import money

logger = logging.getLogger(__name__)

THREE_PLACES = Decimal('0.001')

MOVEMENT_LABELS = {
    ReferenceType.GRN.value: "GRN",
    ReferenceType.MELTING.value: "Melting",
    ReferenceType.MELTING_OUTPUT.value: "Melting Output",
    ReferenceType.HEAT_TREATMENT.value: "Heat Treatment",
    ReferenceType.DISPATCH.value: "Dispatch",
    ReferenceType.MANUAL.value: "Manual",
}

REFERENCE_PREFIXES = {
    ReferenceType.GRN.value: "GRN",
    ReferenceType.MELTING.value: "MP",
    ReferenceType.MELTING_OUTPUT.value: "MP",
    ReferenceType.HEAT_TREATMENT.value: "HT",
    ReferenceType.DISPATCH.value: "DISP",
}


def _qty(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(THREE_PLACES, rounding=ROUND_HALF_UP)


def _check_range(from_date: Optional[date], to_date: Optional[date]) -> None:
    if from_date and to_date and to_date < from_date:
        raise ValidationError("To date must be after or equal to from date", field="toDate")


def movement_label(reference_type: str) -> str:
    return MOVEMENT_LABELS.get(reference_type, reference_type)


class StockReportService:
    """Read-only reports; each method is one query over the ledger"""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    # =========================================================================
    # MOVEMENT
    # =========================================================================

    def movement(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        item_name: Optional[str] = None,
        movement_type: Optional[str] = None,
    ) -> List[dict]:
        """
        Ledger rows newest first. ``movement_type`` takes the labels of
        MOVEMENT_LABELS ("GRN", "Melting", "Dispatch", ...).
        """
        _check_range(from_date, to_date)
        txn = StockTransaction

        query = self.db.query(
            txn, Item.name.label("item_name"), Category.name.label("category_name")
        ).join(Item, Item.id == txn.item_id).join(Category, Category.id == Item.category_id)

        if from_date:
            query = query.filter(txn.transaction_date >= from_date)
        if to_date:
            query = query.filter(txn.transaction_date <= to_date)
        if item_name:
            query = query.filter(Item.name.ilike(f"%{item_name}%"))
        if movement_type:
            reference_types = [ref for ref, label in MOVEMENT_LABELS.items() if label == movement_type]
            if not reference_types:
                raise ValidationError(
                    f"Unknown movement type {movement_type}. Must be one of: "
                    + ", ".join(MOVEMENT_LABELS.values()),
                    field="movementType"
                )
            query = query.filter(txn.reference_type.in_(reference_types))

        rows = query.order_by(txn.transaction_date.desc(), txn.id.desc()).all()

        movements = []
        for row, name, category_name in rows:
            inward = row.transaction_type != TransactionType.ISSUE
            prefix = REFERENCE_PREFIXES.get(row.reference_type)
            movements.append({
                "id": row.id,
                "movement_date": row.transaction_date,
                "movement_type": movement_label(row.reference_type),
                "transaction_type": row.transaction_type.value,
                "item_id": row.item_id,
                "item_name": name,
                "category_name": category_name,
                "in_qty": _qty(row.quantity) if inward else None,
                "out_qty": None if inward else _qty(row.quantity),
                "rate": money(row.rate),
                "amount": money(row.amount),
                "reference": f"{prefix}-{row.reference_id}" if prefix and row.reference_id else None,
                "reference_type": row.reference_type,
                "reference_id": row.reference_id,
            })
        return movements

    # =========================================================================
    # ITEM STOCK
    # =========================================================================

    def _item_totals(self, categories: Iterable[str], item_name: Optional[str] = None):
        txn = StockTransaction
        inward = txn.transaction_type.in_([TransactionType.OPENING, TransactionType.RECEIPT])
        issue = txn.transaction_type == TransactionType.ISSUE

        def total(condition):
            return func.coalesce(func.sum(case((condition, txn.quantity), else_=0)), 0)

        query = self.db.query(
            Item.id.label("item_id"),
            Item.name.label("item_name"),
            Item.uom.label("uom"),
            Category.name.label("category_name"),
            total(inward).label("inward_qty"),
            total(issue).label("issue_qty"),
            total(and_(inward, txn.reference_type == ReferenceType.HEAT_TREATMENT.value)).label("produced_qty"),
            total(and_(issue, txn.reference_type == ReferenceType.DISPATCH.value)).label("dispatched_qty"),
        ).join(
            Category, Category.id == Item.category_id
        ).outerjoin(
            txn, txn.item_id == Item.id
        ).filter(Category.name.in_(list(categories)))

        if item_name:
            query = query.filter(Item.name.ilike(f"%{item_name}%"))

        return query.group_by(
            Item.id, Item.name, Item.uom, Category.name
        ).order_by(Item.name, Item.id).all()

    def raw_material(self, category: Optional[str] = None, item_name: Optional[str] = None) -> List[dict]:
        """Raw material and mineral stock: everything received less everything issued"""
        categories = [CategoryName.RAW_MATERIAL.value, CategoryName.MINERALS.value]
        if category:
            if category not in categories:
                raise ValidationError(
                    "Category must be Raw Material or Minerals", field="category"
                )
            categories = [category]

        return [
            {
                "item_id": r.item_id,
                "item_name": r.item_name,
                "category_name": r.category_name,
                "uom": r.uom,
                "total_received": _qty(r.inward_qty),
                "total_consumed": _qty(r.issue_qty),
                "current_stock": _qty(r.inward_qty) - _qty(r.issue_qty),
            }
            for r in self._item_totals(categories, item_name)
        ]

    def finished_goods(self, item_name: Optional[str] = None) -> List[dict]:
        """Finished product stock in kg and in bags of BAG_WEIGHT"""
        bag_weight = self.settings.BAG_WEIGHT

        def bags(quantity: Decimal) -> Decimal:
            return (quantity / bag_weight).quantize(THREE_PLACES, rounding=ROUND_HALF_UP)

        rows = []
        for r in self._item_totals([CategoryName.FINISHED_PRODUCT.value], item_name):
            stock = _qty(r.inward_qty) - _qty(r.issue_qty)
            rows.append({
                "item_id": r.item_id,
                "item_name": r.item_name,
                "uom": r.uom,
                "total_produced": _qty(r.produced_qty),
                "total_dispatched": _qty(r.dispatched_qty),
                "total_produced_bags": bags(_qty(r.produced_qty)),
                "total_dispatched_bags": bags(_qty(r.dispatched_qty)),
                "current_stock_kg": stock,
                "current_stock_bags": bags(stock),
            })
        return rows

    # =========================================================================
    # WIP
    # =========================================================================

    def wip(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> List[dict]:
        """
        Liquid metal in process per day: quantity melted (melting issues) less
        quantity heat treated (heat-treatment receipts), with the running
        balance carried in from before ``from_date``.
        """
        _check_range(from_date, to_date)
        txn = StockTransaction
        melted = and_(
            txn.reference_type == ReferenceType.MELTING.value,
            txn.transaction_type == TransactionType.ISSUE
        )
        treated = and_(
            txn.reference_type == ReferenceType.HEAT_TREATMENT.value,
            txn.transaction_type == TransactionType.RECEIPT
        )

        def total(condition):
            return func.coalesce(func.sum(case((condition, txn.quantity), else_=0)), 0)

        query = self.db.query(
            txn.transaction_date.label("wip_date"),
            total(melted).label("melted_qty"),
            total(treated).label("heat_treated_qty"),
        ).filter(
            txn.reference_type.in_([ReferenceType.MELTING.value, ReferenceType.HEAT_TREATMENT.value])
        )
        if to_date:
            query = query.filter(txn.transaction_date <= to_date)

        balance = Decimal('0.000')
        rows = []
        for r in query.group_by(txn.transaction_date).order_by(txn.transaction_date).all():
            melted_qty = _qty(r.melted_qty)
            treated_qty = _qty(r.heat_treated_qty)
            balance += melted_qty - treated_qty
            if from_date and r.wip_date < from_date:
                continue
            rows.append({
                "wip_date": r.wip_date,
                "melted_qty": melted_qty,
                "heat_treated_qty": treated_qty,
                "net_qty": melted_qty - treated_qty,
                "wip_balance": balance,
            })
        return rows

    # =========================================================================
    # CONSUMPTION & PRODUCTION
    # =========================================================================

    def consumption(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        heat_no: Optional[str] = None,
    ) -> List[dict]:
        """Material issued to each heat, at the rate it was issued"""
        _check_range(from_date, to_date)
        txn = StockTransaction

        query = self.db.query(
            MeltingProcess.id.label("melting_process_id"),
            MeltingProcess.melting_date,
            MeltingProcess.heat_no,
            Item.id.label("item_id"),
            Item.name.label("item_name"),
            Category.name.label("category_name"),
            txn.quantity,
            txn.rate,
            txn.amount,
        ).join(
            MeltingProcess, and_(
                txn.reference_type == ReferenceType.MELTING.value,
                txn.reference_id == MeltingProcess.id
            )
        ).join(Item, Item.id == txn.item_id).join(Category, Category.id == Item.category_id)

        if from_date:
            query = query.filter(MeltingProcess.melting_date >= from_date)
        if to_date:
            query = query.filter(MeltingProcess.melting_date <= to_date)
        if heat_no:
            query = query.filter(MeltingProcess.heat_no == heat_no)

        rows = query.order_by(
            MeltingProcess.melting_date.desc(), MeltingProcess.heat_no, Item.name
        ).all()
        return [
            {
                "melting_process_id": r.melting_process_id,
                "melting_date": r.melting_date,
                "heat_no": r.heat_no,
                "item_id": r.item_id,
                "item_name": r.item_name,
                "category_name": r.category_name,
                "quantity": _qty(r.quantity),
                "rate": money(r.rate),
                "amount": money(r.amount),
            }
            for r in rows
        ]

    def production(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        furnace_no: Optional[int] = None,
    ) -> List[dict]:
        """Heat-treatment batches with the finished-goods receipt each one wrote"""
        _check_range(from_date, to_date)
        txn = StockTransaction

        query = self.db.query(
            HeatTreatment, Item.name.label("size_name"), txn.quantity, txn.rate, txn.amount
        ).join(
            Item, Item.id == HeatTreatment.size_item_id
        ).outerjoin(
            txn, and_(
                txn.reference_type == ReferenceType.HEAT_TREATMENT.value,
                txn.reference_id == HeatTreatment.id,
                txn.item_id == HeatTreatment.size_item_id
            )
        )

        if from_date:
            query = query.filter(HeatTreatment.treatment_date >= from_date)
        if to_date:
            query = query.filter(HeatTreatment.treatment_date <= to_date)
        if furnace_no:
            query = query.filter(HeatTreatment.furnace_no == furnace_no)

        rows = query.order_by(HeatTreatment.treatment_date.desc(), HeatTreatment.id.desc()).all()
        return [
            {
                "id": record.id,
                "treatment_date": record.treatment_date,
                "furnace_no": record.furnace_no,
                "size_item_id": record.size_item_id,
                "size_name": size_name,
                "temperature": Decimal(str(record.temperature)),
                "bags_produced": record.bags_produced,
                "quantity": _qty(quantity),
                "rate": money(rate or 0),
                "amount": money(amount or 0),
            }
            for record, size_name, quantity, rate, amount in rows
        ]

"""
Stock Statement Report Engine
=============================
Opening / receipt / issue / closing quantities and values per item for a
date range, re-derived from the stock ledger on every call.

- Opening: rows dated before the window (OPENING/RECEIPT add, ISSUE subtracts)
- Receipt: RECEIPT and OPENING rows inside the window
- Issue:   ISSUE rows inside the window
- Closing: opening + receipt - issue
Dates are inclusive on both ends. One aggregate statement per call, so the
figures come from a single consistent snapshot.
"""

import io
import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import ValidationError
from ..models import Category, Item, StockTransaction, TransactionType
from .gst import money

logger = logging.getLogger(__name__)

THREE_PLACES = Decimal('0.001')

SECTIONS = ("opening", "receipt", "issue", "closing")

EXPORT_COLUMNS = [
    ("category_name", "Category"),
    ("item_name", "Item"),
    ("uom", "UOM"),
    ("opening_qty", "Opening Qty"),
    ("opening_rate", "Opening Rate"),
    ("opening_amount", "Opening Amount"),
    ("receipt_qty", "Receipt Qty"),
    ("receipt_rate", "Receipt Rate"),
    ("receipt_amount", "Receipt Amount"),
    ("issue_qty", "Issue Qty"),
    ("issue_rate", "Issue Rate"),
    ("issue_amount", "Issue Amount"),
    ("closing_qty", "Closing Qty"),
    ("closing_rate", "Closing Rate"),
    ("closing_amount", "Closing Amount"),
]


def _qty(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(THREE_PLACES, rounding=ROUND_HALF_UP)


def derived_rate(amount: Decimal, quantity: Decimal) -> Decimal:
    """amount / quantity, 0.00 when there is no quantity"""
    if not quantity:
        return Decimal('0.00')
    return money(amount / quantity)


class StockStatementService:
    """Read-only aggregation over the stock ledger"""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def generate(
        self,
        start_date: date,
        end_date: date,
        category_id: Optional[int] = None,
        include_zero: Optional[bool] = None,
    ) -> dict:
        """
        Build the statement.

        Items without any movement are left out unless a category filter is
        given or ``include_zero`` is true (default from settings).

        Returns:
            {"items": [...], "totals": {...}, "filters": {...}}
        """
        if start_date is None or end_date is None:
            raise ValidationError("Start date and end date are required", field="startDate")
        if end_date < start_date:
            raise ValidationError("End date must be after or equal to start date", field="endDate")

        if include_zero is None:
            include_zero = self.settings.STOCK_STATEMENT_INCLUDE_ZERO
        keep_zero_rows = include_zero or category_id is not None

        rows = [self._build_row(r) for r in self._aggregate(start_date, end_date, category_id)]
        if not keep_zero_rows:
            rows = [r for r in rows if r["has_movement"]]
        for r in rows:
            del r["has_movement"]

        logger.debug(
            "Stock statement %s..%s category=%s: %d items", start_date, end_date, category_id, len(rows)
        )
        return {
            "items": rows,
            "totals": self._totals(rows),
            "filters": {
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "category_id": category_id,
                "include_zero": keep_zero_rows,
            },
        }

    def _aggregate(self, start_date: date, end_date: date, category_id: Optional[int]):
        txn = StockTransaction
        before = txn.transaction_date < start_date
        within = and_(txn.transaction_date >= start_date, txn.transaction_date <= end_date)
        is_inward = txn.transaction_type.in_([TransactionType.OPENING, TransactionType.RECEIPT])
        is_issue = txn.transaction_type == TransactionType.ISSUE

        def total(column, *conditions, sign=1):
            return func.coalesce(func.sum(case((and_(*conditions), column * sign), else_=0)), 0)

        opening_qty = total(txn.quantity, before, is_inward) + total(txn.quantity, before, is_issue, sign=-1)
        opening_amount = total(txn.amount, before, is_inward) + total(txn.amount, before, is_issue, sign=-1)

        query = self.db.query(
            Item.id.label("item_id"),
            Item.name.label("item_name"),
            Item.uom.label("uom"),
            Category.id.label("category_id"),
            Category.name.label("category_name"),
            opening_qty.label("opening_qty"),
            opening_amount.label("opening_amount"),
            total(txn.quantity, within, is_inward).label("receipt_qty"),
            total(txn.amount, within, is_inward).label("receipt_amount"),
            total(txn.quantity, within, is_issue).label("issue_qty"),
            total(txn.amount, within, is_issue).label("issue_amount"),
            func.count(txn.id).label("movements"),
        ).join(
            Category, Category.id == Item.category_id
        ).outerjoin(
            txn, and_(txn.item_id == Item.id, txn.transaction_date <= end_date)
        )

        if category_id is not None:
            query = query.filter(Item.category_id == category_id)

        return query.group_by(
            Item.id, Item.name, Item.uom, Category.id, Category.name
        ).order_by(Category.name, Item.name, Item.id).all()

    def _build_row(self, r) -> dict:
        row = {
            "item_id": r.item_id,
            "item_name": r.item_name,
            "uom": r.uom,
            "category_id": r.category_id,
            "category_name": r.category_name,
            "opening_qty": _qty(r.opening_qty),
            "opening_amount": money(r.opening_amount or 0),
            "receipt_qty": _qty(r.receipt_qty),
            "receipt_amount": money(r.receipt_amount or 0),
            "issue_qty": _qty(r.issue_qty),
            "issue_amount": money(r.issue_amount or 0),
        }
        row["closing_qty"] = row["opening_qty"] + row["receipt_qty"] - row["issue_qty"]
        row["closing_amount"] = row["opening_amount"] + row["receipt_amount"] - row["issue_amount"]
        for section in SECTIONS:
            row[f"{section}_rate"] = derived_rate(row[f"{section}_amount"], row[f"{section}_qty"])
        row["has_movement"] = bool(r.movements)
        return row

    def _totals(self, rows: List[dict]) -> Dict[str, Decimal]:
        totals: Dict[str, Decimal] = {}
        for section in SECTIONS:
            qty = sum((r[f"{section}_qty"] for r in rows), Decimal('0.000'))
            amount = sum((r[f"{section}_amount"] for r in rows), Decimal('0.00'))
            totals[f"{section}_qty"] = qty
            totals[f"{section}_amount"] = amount
            totals[f"{section}_rate"] = derived_rate(amount, qty)
        return totals

    # =========================================================================
    # EXPORT
    # =========================================================================

    def export_excel(self, statement: dict) -> bytes:
        """Render a generated statement as an .xlsx workbook"""
        records = [{label: row[key] for key, label in EXPORT_COLUMNS} for row in statement["items"]]
        df = pd.DataFrame(records, columns=[label for _, label in EXPORT_COLUMNS])

        totals = statement["totals"]
        total_row = {"Category": "TOTAL", "Item": "", "UOM": ""}
        for key, label in EXPORT_COLUMNS[3:]:
            total_row[label] = totals[key]
        df = pd.concat([df, pd.DataFrame([total_row])], ignore_index=True)

        numeric = [label for _, label in EXPORT_COLUMNS[3:]]
        df[numeric] = df[numeric].astype(float)

        output = io.BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            df.to_excel(writer, index=False, sheet_name="Stock Statement")
        return output.getvalue()

"""
Stock Transaction Ledger
========================
Append-only store of typed quantity movements; the single source of truth
for stock quantities and valuations.

- record() appends one row, reverse_by_reference() removes an event's rows
- Neither commits: both run inside the caller's transaction
- Rows are ordered by (transaction_date, id)
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..errors import ConstraintError, NotFoundError, ValidationError
from ..models import Item, ReferenceType, StockTransaction, TransactionType
from .gst import money

logger = logging.getLogger(__name__)

THREE_PLACES = Decimal('0.001')

# Rows with these reference types change only through their owning event
EVENT_REFERENCE_TYPES = frozenset(
    r.value for r in ReferenceType if r is not ReferenceType.MANUAL
)


# =============================================================================
# PRECISION UTILITIES
# =============================================================================

def to_decimal(value, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required", field=field)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    return result


def to_quantity(value, field: str = "quantity") -> Decimal:
    return to_decimal(value, field).quantize(THREE_PLACES, rounding=ROUND_HALF_UP)


# =============================================================================
# LEDGER
# =============================================================================

@dataclass
class LedgerEntry:
    transaction_date: date
    transaction_type: TransactionType
    item_id: int
    quantity: Decimal
    rate: Decimal
    reference_type: str = ReferenceType.MANUAL.value
    reference_id: Optional[int] = None
    remarks: Optional[str] = None


class StockLedger:
    """Ledger component; constructed with the caller's session"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, entry: LedgerEntry) -> StockTransaction:
        """
        Append one movement. amount = quantity * rate at the time of the movement.

        Raises:
            ValidationError: quantity <= 0, rate < 0, missing date/type
            ConstraintError: item does not exist
        """
        quantity = to_quantity(entry.quantity)
        rate = money(to_decimal(entry.rate, "rate"))

        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0", field="quantity")
        if rate < 0:
            raise ValidationError("Rate cannot be negative", field="rate")
        if entry.transaction_date is None:
            raise ValidationError("Transaction date is required", field="transactionDate")
        try:
            txn_type = TransactionType(entry.transaction_type)
        except ValueError:
            raise ValidationError(
                "Invalid transaction type. Must be OPENING, RECEIPT, or ISSUE",
                field="transactionType"
            )

        if self.db.get(Item, entry.item_id) is None:
            raise ConstraintError(f"Item with id {entry.item_id} not found", field="itemId")

        txn = StockTransaction(
            transaction_date=entry.transaction_date,
            transaction_type=txn_type,
            item_id=entry.item_id,
            quantity=quantity,
            rate=rate,
            amount=money(quantity * rate),
            reference_type=entry.reference_type or ReferenceType.MANUAL.value,
            reference_id=entry.reference_id,
            remarks=entry.remarks,
        )
        self.db.add(txn)
        self.db.flush()

        logger.debug(
            "Ledger %s item=%s qty=%s rate=%s ref=%s/%s",
            txn_type.value, txn.item_id, quantity, rate, txn.reference_type, txn.reference_id
        )
        return txn

    def record_manual(self, entry: LedgerEntry) -> StockTransaction:
        """
        Manual entry (opening stock, adjustment). Rate must be positive and
        the row may not claim an event's reference type.
        """
        if to_decimal(entry.rate, "rate") <= 0:
            raise ValidationError("Quantity and rate must be positive numbers", field="rate")
        if to_decimal(entry.quantity, "quantity") <= 0:
            raise ValidationError("Quantity and rate must be positive numbers", field="quantity")
        if entry.reference_type in EVENT_REFERENCE_TYPES:
            raise ConstraintError(
                f"Reference type {entry.reference_type} is reserved for recorded events",
                field="referenceType"
            )
        return self.record(entry)

    def reverse_by_reference(self, reference_type: str, reference_id: int) -> int:
        """Delete every row owned by one event reference; returns the count"""
        removed = self.db.query(StockTransaction).filter(
            StockTransaction.reference_type == reference_type,
            StockTransaction.reference_id == reference_id
        ).delete(synchronize_session=False)
        self.db.flush()
        if removed:
            logger.debug("Reversed %d ledger rows for %s/%s", removed, reference_type, reference_id)
        return removed

    def rows_for_reference(self, reference_type: str, reference_id: int) -> List[StockTransaction]:
        return self.db.query(StockTransaction).filter(
            StockTransaction.reference_type == reference_type,
            StockTransaction.reference_id == reference_id
        ).order_by(StockTransaction.id).all()

    def latest_receipt_rate(self, item_id: int) -> Optional[Decimal]:
        """Rate of the most recent RECEIPT or OPENING row for the item"""
        row = self.db.query(StockTransaction.rate).filter(
            StockTransaction.item_id == item_id,
            StockTransaction.transaction_type.in_([TransactionType.RECEIPT, TransactionType.OPENING])
        ).order_by(
            StockTransaction.transaction_date.desc(),
            StockTransaction.id.desc()
        ).first()
        return money(row.rate) if row else None

    def stock_on_hand(self, item_ids: Iterable[int]) -> Dict[int, Decimal]:
        """Current ledger balance per item: OPENING + RECEIPT - ISSUE over all rows"""
        ids = sorted(set(item_ids))
        if not ids:
            return {}
        signed = case(
            (StockTransaction.transaction_type == TransactionType.ISSUE, -StockTransaction.quantity),
            else_=StockTransaction.quantity
        )
        rows = self.db.query(
            StockTransaction.item_id, func.coalesce(func.sum(signed), 0)
        ).filter(
            StockTransaction.item_id.in_(ids)
        ).group_by(StockTransaction.item_id).all()
        balances = {item_id: Decimal('0.000') for item_id in ids}
        balances.update({item_id: to_quantity(total) for item_id, total in rows})
        return balances

    def list_transactions(
        self,
        item_id: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
        reference_type: Optional[str] = None,
    ) -> List[StockTransaction]:
        query = self.db.query(StockTransaction)

        if item_id:
            query = query.filter(StockTransaction.item_id == item_id)
        if start_date:
            query = query.filter(StockTransaction.transaction_date >= start_date)
        if end_date:
            query = query.filter(StockTransaction.transaction_date <= end_date)
        if transaction_type:
            query = query.filter(StockTransaction.transaction_type == transaction_type)
        if reference_type:
            query = query.filter(StockTransaction.reference_type == reference_type)

        return query.order_by(
            StockTransaction.transaction_date.desc(),
            StockTransaction.id.desc()
        ).all()

    def delete_manual(self, transaction_id: int) -> StockTransaction:
        """
        Remove a manual entry. Rows owned by an event are only removed by
        editing or deleting that event.
        """
        txn = self.db.get(StockTransaction, transaction_id)
        if txn is None:
            raise NotFoundError("Stock transaction not found")
        if txn.reference_type in EVENT_REFERENCE_TYPES:
            raise ConstraintError(
                f"Stock transaction {transaction_id} belongs to {txn.reference_type} "
                f"{txn.reference_id}; edit or delete that record instead"
            )
        self.db.delete(txn)
        self.db.flush()
        return txn

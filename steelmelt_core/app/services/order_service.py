"""
Order Fulfillment Ledger
========================
Order items plus a derived dispatched/balance view. Dispatches are validated
against the balance and recorded transactionally; every dispatch item also
appends an ISSUE row to the stock ledger.

- Balance = ordered quantity - sum(dispatched); derived, never stored
- Dispatch mutations lock the affected order items (item-scoped, ascending
  id) before reading balances, so concurrent dispatches cannot overshoot
- Every public mutating method is one transaction
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import Settings
from ..db import transaction
from ..errors import ConstraintError, NotFoundError, OverDispatchError, ValidationError
from ..models import (
    Customer, Dispatch, DispatchItem, Item, Order, OrderItem, OrderStatus,
    ReferenceType, Transporter, TransactionType
)
from .gst import money, split_gst
from .numbering import next_document_number
from .stock_ledger import LedgerEntry, StockLedger, THREE_PLACES, to_decimal, to_quantity

logger = logging.getLogger(__name__)

ZERO = Decimal('0.000')


@dataclass
class OrderLineInput:
    item_id: int
    quantity: Decimal
    rate: Decimal
    id: Optional[int] = None  # existing order item when revising an order


@dataclass
class DispatchLineInput:
    order_item_id: int
    quantity_dispatched: Decimal


def _validated_order_lines(items: Optional[List[OrderLineInput]]) -> List[OrderLineInput]:
    if not items:
        raise ValidationError("Order must have at least one item", field="items")
    lines = []
    for idx, line in enumerate(items):
        quantity = to_quantity(line.quantity, f"items[{idx}].quantity")
        rate = money(to_decimal(line.rate, f"items[{idx}].rate"))
        if quantity <= 0:
            raise ValidationError("Item quantity must be greater than 0", field=f"items[{idx}].quantity")
        if rate < 0:
            raise ValidationError("Item rate cannot be negative", field=f"items[{idx}].rate")
        lines.append(OrderLineInput(item_id=line.item_id, quantity=quantity, rate=rate, id=line.id))
    return lines


def _validated_dispatch_lines(items: Optional[List[DispatchLineInput]]) -> List[DispatchLineInput]:
    if not items:
        raise ValidationError("Dispatch must have at least one item", field="items")
    lines = []
    for idx, line in enumerate(items):
        quantity = to_quantity(line.quantity_dispatched, f"items[{idx}].quantityDispatched")
        if quantity <= 0:
            raise ValidationError(
                "Dispatch quantity must be greater than 0",
                field=f"items[{idx}].quantityDispatched"
            )
        lines.append(DispatchLineInput(order_item_id=line.order_item_id, quantity_dispatched=quantity))
    return lines


def _requested_by_order_item(lines: Iterable[DispatchLineInput]) -> Dict[int, Decimal]:
    """Sum duplicate lines for the same order item"""
    requested: Dict[int, Decimal] = OrderedDict()
    for line in lines:
        requested[line.order_item_id] = requested.get(line.order_item_id, ZERO) + line.quantity_dispatched
    return requested


class OrderFulfillmentService:
    """Orders, balances and dispatches"""

    def __init__(self, db: Session, settings: Settings, ledger: Optional[StockLedger] = None):
        self.db = db
        self.settings = settings
        self.ledger = ledger or StockLedger(db)

    # =========================================================================
    # ORDERS
    # =========================================================================

    def create_order(
        self,
        customer_id: int,
        order_date: date,
        items: List[OrderLineInput],
        po_no: Optional[str] = None,
    ) -> Order:
        """
        Create an order with its items as one atomic unit.

        Raises:
            ValidationError: no items, non-positive quantity, negative rate
            ConstraintError: customer or item does not exist
        """
        if order_date is None:
            raise ValidationError("Order date is required", field="orderDate")
        lines = _validated_order_lines(items)

        with transaction(self.db):
            customer = self.db.get(Customer, customer_id)
            if not customer:
                raise ConstraintError(f"Customer with id {customer_id} not found", field="customerId")

            order = Order(
                order_no=next_document_number(self.db, "order", "ORD", order_date),
                customer_id=customer_id,
                order_date=order_date,
                po_no=po_no,
                status=OrderStatus.PENDING,
            )
            self.db.add(order)
            self.db.flush()

            for line in lines:
                order_item = OrderItem(order_id=order.id, lock_version=0)
                self._price_line(order_item, self._require_item(line.item_id), line.quantity, line.rate, customer.state)
                self.db.add(order_item)
            self.db.flush()

        logger.info("Order %s created for customer %s with %d items", order.order_no, customer_id, len(lines))
        return order

    def update_order(
        self,
        order_id: int,
        changes: Optional[dict] = None,
        items: Optional[List[OrderLineInput]] = None,
    ) -> Order:
        """
        Revise the order header and, when ``items`` is given, its lines.

        Lines with an id are repriced (GST recomputed); lines without an id
        are added; existing lines missing from ``items`` are removed, which
        is refused once anything has been dispatched against them. A line's
        quantity can never drop below what is already dispatched.
        """
        changes = dict(changes or {})
        lines = _validated_order_lines(items) if items is not None else None

        with transaction(self.db):
            order = self.get_order(order_id)

            if changes.get("customer_id") is not None:
                if self.db.get(Customer, changes["customer_id"]) is None:
                    raise ConstraintError("Invalid customer_id", field="customerId")
            for field in ("customer_id", "order_date", "po_no"):
                if field in changes and (changes[field] is not None or field == "po_no"):
                    setattr(order, field, changes[field])
            self.db.flush()

            customer_state = self.db.get(Customer, order.customer_id).state
            existing = self._lock_order_items([oi.id for oi in order.items])
            dispatched = self._dispatched_quantities(existing.keys())

            if lines is None:
                # Header change may move the customer across states
                for order_item in existing.values():
                    self._price_line(
                        order_item, order_item.item, order_item.quantity, order_item.rate, customer_state
                    )
            else:
                kept_ids = {line.id for line in lines if line.id}
                unknown = kept_ids - set(existing)
                if unknown:
                    raise ConstraintError(
                        f"Order item with id {sorted(unknown)[0]} does not belong to order {order_id}",
                        field="items"
                    )

                for oi_id in set(existing) - kept_ids:
                    if dispatched.get(oi_id, ZERO) > 0:
                        raise ConstraintError(
                            f"Cannot delete order item {oi_id}: it has been dispatched", field="items"
                        )
                    order.items.remove(existing[oi_id])

                for line in lines:
                    item = self._require_item(line.item_id)
                    if line.id:
                        order_item = existing[line.id]
                        already = dispatched.get(line.id, ZERO)
                        if already > 0 and order_item.item_id != line.item_id:
                            raise ConstraintError(
                                f"Cannot change the item of order item {line.id}: it has been dispatched",
                                field="items"
                            )
                        if line.quantity < already:
                            raise ConstraintError(
                                f"Quantity {line.quantity} for order item {line.id} is below the "
                                f"dispatched quantity {already}",
                                field="items"
                            )
                    else:
                        order_item = OrderItem(order_id=order.id, lock_version=0)
                        order.items.append(order_item)
                    self._price_line(order_item, item, line.quantity, line.rate, customer_state)

            self.db.flush()
            self._refresh_status(order)

        logger.info("Order %s updated", order.order_no)
        return order

    def delete_order(self, order_id: int) -> None:
        with transaction(self.db):
            order = self.get_order(order_id)
            dispatch_count = self.db.query(func.count(Dispatch.id)).filter(
                Dispatch.order_id == order_id
            ).scalar()
            if dispatch_count:
                raise ConstraintError("Cannot delete order with dispatches")
            order_no = order.order_no
            self.db.delete(order)

        logger.info("Order %s deleted", order_no)

    def get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[Order]:
        query = self.db.query(Order)

        if status:
            query = query.filter(Order.status == status)
        if customer_id:
            query = query.filter(Order.customer_id == customer_id)
        if from_date:
            query = query.filter(Order.order_date >= from_date)
        if to_date:
            query = query.filter(Order.order_date <= to_date)

        return query.order_by(Order.order_date.desc(), Order.id.desc()).all()

    def pending_orders(self) -> List[Order]:
        """Orders with at least one line that still has a balance"""
        dispatched = self.db.query(
            DispatchItem.order_item_id.label("order_item_id"),
            func.sum(DispatchItem.quantity_dispatched).label("dispatched")
        ).group_by(DispatchItem.order_item_id).subquery()

        pending_ids = self.db.query(OrderItem.order_id).outerjoin(
            dispatched, dispatched.c.order_item_id == OrderItem.id
        ).filter(
            OrderItem.quantity - func.coalesce(dispatched.c.dispatched, 0) > 0
        ).distinct().all()

        return self.db.query(Order).filter(
            Order.id.in_([row.order_id for row in pending_ids])
        ).order_by(Order.order_date.desc(), Order.id.desc()).all()

    # =========================================================================
    # BALANCES
    # =========================================================================

    def order_balance(self, order_id: int) -> List[dict]:
        """Per order item: ordered, dispatched and balance quantities"""
        order = self.get_order(order_id)
        return self.item_balances(order)

    def item_balances(self, order: Order) -> List[dict]:
        dispatched = self._dispatched_quantities([oi.id for oi in order.items])
        rows = []
        for oi in order.items:
            ordered = to_quantity(oi.quantity)
            sent = dispatched.get(oi.id, ZERO)
            rows.append({
                'order_item_id': oi.id,
                'item_id': oi.item_id,
                'item_name': oi.item.name if oi.item else None,
                'ordered_qty': ordered,
                'dispatched_qty': sent,
                'balance_qty': ordered - sent,
                'rate': money(oi.rate),
            })
        return rows

    # =========================================================================
    # DISPATCHES
    # =========================================================================

    def create_dispatch(
        self,
        order_id: int,
        dispatch_date: date,
        items: List[DispatchLineInput],
        transporter_id: Optional[int] = None,
        lr_no: Optional[str] = None,
        invoice_no: Optional[str] = None,
    ) -> Dispatch:
        """
        Record a dispatch against an order.

        Each line is checked against the balance of its order item while
        that item is locked; one ISSUE ledger row is appended per dispatch
        item. No partial dispatch: any failing line rolls back the whole call.

        Raises:
            ValidationError: no lines, non-positive quantity, missing date
            ConstraintError: unknown order/transporter/order item
            OverDispatchError: a line exceeds its order item's balance
        """
        if dispatch_date is None:
            raise ValidationError("Dispatch date is required", field="dispatchDate")
        lines = _validated_dispatch_lines(items)
        requested = _requested_by_order_item(lines)

        with transaction(self.db):
            order = self.db.get(Order, order_id)
            if not order:
                raise ConstraintError(f"Order with id {order_id} not found", field="orderId")
            self._require_transporter(transporter_id)

            locked = self._lock_order_items(requested.keys())
            self._check_lines_belong(order.id, requested.keys(), locked)
            self._check_balances(requested, locked)

            dispatch = Dispatch(
                order_id=order.id,
                dispatch_date=dispatch_date,
                transporter_id=transporter_id,
                lr_no=lr_no,
                invoice_no=invoice_no,
            )
            self.db.add(dispatch)
            self.db.flush()

            self._insert_dispatch_items(dispatch, order, lines, locked)
            self._refresh_status(order)

        logger.info(
            "Dispatch %s recorded for order %s (%d items)", dispatch.id, order.order_no, len(lines)
        )
        return dispatch

    def update_dispatch(
        self,
        dispatch_id: int,
        items: Optional[List[DispatchLineInput]] = None,
        changes: Optional[dict] = None,
    ) -> Dispatch:
        """
        Edit a dispatch. New quantities are validated as if this dispatch's
        own prior quantities were already released, i.e. against the other
        dispatches' consumption only. Items and their ledger rows are
        replaced (reverse then re-insert).
        """
        changes = dict(changes or {})
        lines = _validated_dispatch_lines(items) if items is not None else None

        with transaction(self.db):
            dispatch = self._lock_dispatch(dispatch_id)
            order = dispatch.order

            if "transporter_id" in changes:
                self._require_transporter(changes["transporter_id"])
            for field in ("dispatch_date", "transporter_id", "lr_no", "invoice_no"):
                if field in changes and (changes[field] is not None or field != "dispatch_date"):
                    setattr(dispatch, field, changes[field])
            self.db.flush()

            old_ids = [di.order_item_id for di in dispatch.items]

            if lines is not None:
                requested = _requested_by_order_item(lines)
                locked = self._lock_order_items(set(old_ids) | set(requested))
                self._check_lines_belong(order.id, requested.keys(), locked)
                self._check_balances(requested, locked, exclude_dispatch_id=dispatch.id)
            else:
                # Header-only edit: same lines, ledger rows re-dated
                locked = self._lock_order_items(old_ids)
                lines = [
                    DispatchLineInput(order_item_id=di.order_item_id, quantity_dispatched=to_quantity(di.quantity_dispatched))
                    for di in dispatch.items
                ]

            self._remove_dispatch_items(dispatch)
            self._insert_dispatch_items(dispatch, order, lines, locked)
            self._refresh_status(order)

        logger.info("Dispatch %s updated", dispatch_id)
        return dispatch

    def delete_dispatch(self, dispatch_id: int) -> None:
        """Remove a dispatch, its items and their ledger rows atomically"""
        with transaction(self.db):
            dispatch = self._lock_dispatch(dispatch_id)
            order = dispatch.order
            self._lock_order_items([di.order_item_id for di in dispatch.items])
            self._remove_dispatch_items(dispatch)
            self.db.delete(dispatch)
            self.db.flush()
            self._refresh_status(order)

        logger.info("Dispatch %s deleted", dispatch_id)

    def get_dispatch(self, dispatch_id: int) -> Dispatch:
        dispatch = self.db.get(Dispatch, dispatch_id)
        if not dispatch:
            raise NotFoundError("Dispatch not found")
        return dispatch

    def list_dispatches(
        self,
        order_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[Dispatch]:
        query = self.db.query(Dispatch)

        if order_id:
            query = query.filter(Dispatch.order_id == order_id)
        if from_date:
            query = query.filter(Dispatch.dispatch_date >= from_date)
        if to_date:
            query = query.filter(Dispatch.dispatch_date <= to_date)

        return query.order_by(Dispatch.dispatch_date.desc(), Dispatch.id.desc()).all()

    def dispatch_history(self, order_id: int) -> List[dict]:
        """One summary row per dispatch of the order, newest first"""
        self.get_order(order_id)
        rows = self.db.query(
            Dispatch.id,
            Dispatch.dispatch_date,
            Dispatch.transporter_id,
            Transporter.name.label("transporter_name"),
            Dispatch.lr_no,
            Dispatch.invoice_no,
            func.count(DispatchItem.id).label("items_count"),
            func.coalesce(func.sum(DispatchItem.quantity_dispatched), 0).label("total_quantity"),
        ).outerjoin(
            Transporter, Transporter.id == Dispatch.transporter_id
        ).outerjoin(
            DispatchItem, DispatchItem.dispatch_id == Dispatch.id
        ).filter(
            Dispatch.order_id == order_id
        ).group_by(
            Dispatch.id, Dispatch.dispatch_date, Dispatch.transporter_id,
            Transporter.name, Dispatch.lr_no, Dispatch.invoice_no
        ).order_by(Dispatch.dispatch_date.desc(), Dispatch.id.desc()).all()

        return [
            {
                'id': r.id,
                'dispatch_date': r.dispatch_date,
                'transporter_id': r.transporter_id,
                'transporter_name': r.transporter_name,
                'lr_no': r.lr_no,
                'invoice_no': r.invoice_no,
                'items_count': r.items_count,
                'total_quantity': to_quantity(r.total_quantity),
            }
            for r in rows
        ]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_item(self, item_id: int) -> Item:
        item = self.db.get(Item, item_id)
        if not item:
            raise ConstraintError(f"Item with id {item_id} not found", field="itemId")
        return item

    def _require_transporter(self, transporter_id: Optional[int]) -> None:
        if transporter_id and self.db.get(Transporter, transporter_id) is None:
            raise ConstraintError(f"Transporter with id {transporter_id} not found", field="transporterId")

    def _price_line(self, order_item: OrderItem, item: Item, quantity, rate, customer_state) -> None:
        quantity = to_quantity(quantity)
        rate = money(rate)
        amount = money(quantity * rate)
        gst = split_gst(customer_state, self.settings.COMPANY_STATE, amount, item.gst_rate or 0)

        order_item.item_id = item.id
        order_item.item = item
        order_item.quantity = quantity
        order_item.rate = rate
        order_item.amount = amount
        order_item.bag_count = (quantity / self.settings.BAG_WEIGHT).quantize(THREE_PLACES, rounding=ROUND_HALF_UP)
        order_item.cgst = gst.cgst
        order_item.sgst = gst.sgst
        order_item.igst = gst.igst
        order_item.total_amount = money(amount + gst.total)

    def _lock_order_items(self, order_item_ids: Iterable[int]) -> Dict[int, OrderItem]:
        """
        Pessimistic, item-scoped lock held until the transaction ends.

        The version bump is a row write, so it blocks concurrent lockers on
        every backend (row lock on PostgreSQL/MySQL, writer lock on SQLite).
        Ascending id order keeps multi-item lockers from deadlocking.
        """
        ids = sorted(set(order_item_ids))
        if not ids:
            return {}
        for oi_id in ids:
            self.db.query(OrderItem).filter(OrderItem.id == oi_id).update(
                {OrderItem.lock_version: OrderItem.lock_version + 1},
                synchronize_session=False
            )
        rows = self.db.query(OrderItem).filter(
            OrderItem.id.in_(ids)
        ).order_by(OrderItem.id).with_for_update().populate_existing().all()
        return {row.id: row for row in rows}

    def _lock_dispatch(self, dispatch_id: int) -> Dispatch:
        """
        Lock one dispatch for an edit or delete and reload it with its items.

        Taken before any order item lock. Whatever this session cached for the
        dispatch is discarded, so a concurrent edit that committed first is
        seen in full.
        """
        bumped = self.db.query(Dispatch).filter(Dispatch.id == dispatch_id).update(
            {Dispatch.lock_version: Dispatch.lock_version + 1},
            synchronize_session=False
        )
        if not bumped:
            raise NotFoundError("Dispatch not found")
        dispatch = self.db.query(Dispatch).filter(
            Dispatch.id == dispatch_id
        ).with_for_update().populate_existing().one()
        self.db.expire(dispatch, ["items"])
        self.db.query(DispatchItem).filter(
            DispatchItem.dispatch_id == dispatch_id
        ).populate_existing().all()
        return dispatch

    def _dispatched_quantities(
        self,
        order_item_ids: Iterable[int],
        exclude_dispatch_id: Optional[int] = None,
    ) -> Dict[int, Decimal]:
        ids = list(order_item_ids)
        if not ids:
            return {}
        query = self.db.query(
            DispatchItem.order_item_id,
            func.coalesce(func.sum(DispatchItem.quantity_dispatched), 0)
        ).filter(DispatchItem.order_item_id.in_(ids))
        if exclude_dispatch_id is not None:
            query = query.filter(DispatchItem.dispatch_id != exclude_dispatch_id)
        rows = query.group_by(DispatchItem.order_item_id).all()
        return {oi_id: to_quantity(total) for oi_id, total in rows}

    def _check_lines_belong(self, order_id: int, order_item_ids, locked: Dict[int, OrderItem]) -> None:
        for oi_id in order_item_ids:
            order_item = locked.get(oi_id)
            if order_item is None:
                raise ConstraintError(f"Order item with id {oi_id} not found", field="items")
            if order_item.order_id != order_id:
                raise ConstraintError(
                    f"Order item {oi_id} does not belong to order {order_id}", field="items"
                )

    def _check_balances(
        self,
        requested: Dict[int, Decimal],
        locked: Dict[int, OrderItem],
        exclude_dispatch_id: Optional[int] = None,
    ) -> None:
        dispatched = self._dispatched_quantities(requested.keys(), exclude_dispatch_id)
        for oi_id, quantity in requested.items():
            balance = to_quantity(locked[oi_id].quantity) - dispatched.get(oi_id, ZERO)
            if quantity > balance:
                raise OverDispatchError(oi_id, quantity, balance)

    def _insert_dispatch_items(
        self,
        dispatch: Dispatch,
        order: Order,
        lines: List[DispatchLineInput],
        locked: Dict[int, OrderItem],
    ) -> None:
        for line in lines:
            order_item = locked[line.order_item_id]
            dispatch_item = DispatchItem(
                order_item_id=order_item.id,
                quantity_dispatched=line.quantity_dispatched,
            )
            dispatch.items.append(dispatch_item)
            self.db.flush()

            self.ledger.record(LedgerEntry(
                transaction_date=dispatch.dispatch_date,
                transaction_type=TransactionType.ISSUE,
                item_id=order_item.item_id,
                quantity=line.quantity_dispatched,
                rate=order_item.rate,
                reference_type=ReferenceType.DISPATCH.value,
                reference_id=dispatch_item.id,
                remarks=f"Dispatch {dispatch.id} - Order {order.order_no}",
            ))

    def _remove_dispatch_items(self, dispatch: Dispatch) -> None:
        for dispatch_item in list(dispatch.items):
            self.ledger.reverse_by_reference(ReferenceType.DISPATCH.value, dispatch_item.id)
        dispatch.items.clear()
        self.db.flush()

    def _refresh_status(self, order: Order) -> None:
        self.db.flush()
        balances = self.item_balances(order)
        if not balances or all(row['dispatched_qty'] == 0 for row in balances):
            status = OrderStatus.PENDING
        elif all(row['balance_qty'] <= 0 for row in balances):
            status = OrderStatus.COMPLETED
        else:
            status = OrderStatus.PARTIALLY_DISPATCHED
        if order.status != status:
            order.status = status

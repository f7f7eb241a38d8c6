"""
Orders API Router
=================
Order entry and the derived dispatch balance per order line:
- Order creation with GST split per line
- Order revision and deletion (guarded by dispatched quantities)
- Balance view (ordered / dispatched / balance)
- Pending orders
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..models import Order, OrderStatus
from ..schemas import CamelModel, MessageOut
from ..deps import get_order_service
from ..services import OrderFulfillmentService, OrderLineInput

router = APIRouter(prefix="/orders", tags=["Orders"])


# =============================================================================
# SCHEMAS
# =============================================================================

class OrderItemIn(CamelModel):
    """One order line; ``id`` identifies an existing line when revising"""
    id: Optional[int] = None
    item_id: int
    quantity: float
    rate: float


class OrderCreateRequest(CamelModel):
    customer_id: int
    order_date: date
    po_no: Optional[str] = None
    items: List[OrderItemIn]


class OrderUpdateRequest(CamelModel):
    customer_id: Optional[int] = None
    order_date: Optional[date] = None
    po_no: Optional[str] = None
    items: Optional[List[OrderItemIn]] = None


class OrderItemOut(CamelModel):
    id: int
    item_id: int
    item_name: Optional[str] = None
    quantity: float
    bag_count: float
    rate: float
    amount: float
    cgst: float
    sgst: float
    igst: float
    total_amount: float


class OrderOut(CamelModel):
    id: int
    order_no: str
    customer_id: int
    customer_name: Optional[str] = None
    order_date: date
    po_no: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    items: List[OrderItemOut] = []


class OrderBalanceOut(CamelModel):
    order_item_id: int
    item_id: int
    item_name: Optional[str] = None
    ordered_qty: float
    dispatched_qty: float
    balance_qty: float
    rate: float


def order_out(order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        order_no=order.order_no,
        customer_id=order.customer_id,
        customer_name=order.customer.name if order.customer else None,
        order_date=order.order_date,
        po_no=order.po_no,
        status=order.status.value if order.status else OrderStatus.PENDING.value,
        created_at=order.created_at,
        items=[
            OrderItemOut(
                id=oi.id,
                item_id=oi.item_id,
                item_name=oi.item.name if oi.item else None,
                quantity=float(oi.quantity),
                bag_count=float(oi.bag_count),
                rate=float(oi.rate),
                amount=float(oi.amount),
                cgst=float(oi.cgst),
                sgst=float(oi.sgst),
                igst=float(oi.igst),
                total_amount=float(oi.total_amount),
            )
            for oi in order.items
        ],
    )


def _line_inputs(items: Optional[List[OrderItemIn]]) -> Optional[List[OrderLineInput]]:
    if items is None:
        return None
    return [
        OrderLineInput(item_id=i.item_id, quantity=i.quantity, rate=i.rate, id=i.id)
        for i in items
    ]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=OrderOut, status_code=201)
def create_order(
    data: OrderCreateRequest,
    service: OrderFulfillmentService = Depends(get_order_service),
):
    """Create an order and its lines in one transaction"""
    order = service.create_order(
        customer_id=data.customer_id,
        order_date=data.order_date,
        items=_line_inputs(data.items),
        po_no=data.po_no,
    )
    return order_out(order)


@router.get("", response_model=List[OrderOut])
def list_orders(
    status: Optional[OrderStatus] = None,
    customer_id: Optional[int] = Query(None, alias="customerId"),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    orders = service.list_orders(
        status=status, customer_id=customer_id, from_date=from_date, to_date=to_date
    )
    return [order_out(o) for o in orders]


@router.get("/status/pending", response_model=List[OrderOut])
def pending_orders(service: OrderFulfillmentService = Depends(get_order_service)):
    """Orders with at least one line still to be dispatched"""
    return [order_out(o) for o in service.pending_orders()]


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, service: OrderFulfillmentService = Depends(get_order_service)):
    return order_out(service.get_order(order_id))


@router.get("/{order_id}/balance", response_model=List[OrderBalanceOut])
def order_balance(order_id: int, service: OrderFulfillmentService = Depends(get_order_service)):
    """
    Per order line: ordered, dispatched and balance quantity.
    Balance is derived on every call, never stored.
    """
    return [
        OrderBalanceOut(
            order_item_id=row['order_item_id'],
            item_id=row['item_id'],
            item_name=row['item_name'],
            ordered_qty=float(row['ordered_qty']),
            dispatched_qty=float(row['dispatched_qty']),
            balance_qty=float(row['balance_qty']),
            rate=float(row['rate']),
        )
        for row in service.order_balance(order_id)
    ]


@router.put("/{order_id}", response_model=OrderOut)
def update_order(
    order_id: int,
    data: OrderUpdateRequest,
    service: OrderFulfillmentService = Depends(get_order_service),
):
    changes = data.model_dump(exclude_unset=True, exclude={"items"})
    order = service.update_order(order_id, changes=changes, items=_line_inputs(data.items))
    return order_out(order)


@router.delete("/{order_id}", response_model=MessageOut)
def delete_order(order_id: int, service: OrderFulfillmentService = Depends(get_order_service)):
    service.delete_order(order_id)
    return MessageOut(message="Order deleted successfully")

"""
Dispatch API Router
===================
Outward dispatches against order lines:
- Balance-checked dispatch creation (order lines locked for the check)
- Dispatch edit and delete with ledger reversal
- One ISSUE stock movement per dispatched line
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..models import Dispatch
from ..schemas import CamelModel, MessageOut
from ..deps import get_order_service
from ..services import DispatchLineInput, OrderFulfillmentService

router = APIRouter(prefix="/dispatches", tags=["Dispatch"])


# =============================================================================
# SCHEMAS
# =============================================================================

class DispatchItemIn(CamelModel):
    order_item_id: int
    quantity_dispatched: float


class DispatchCreateRequest(CamelModel):
    order_id: int
    dispatch_date: date
    transporter_id: Optional[int] = None
    lr_no: Optional[str] = None
    invoice_no: Optional[str] = None
    items: List[DispatchItemIn]


class DispatchUpdateRequest(CamelModel):
    dispatch_date: Optional[date] = None
    transporter_id: Optional[int] = None
    lr_no: Optional[str] = None
    invoice_no: Optional[str] = None
    items: Optional[List[DispatchItemIn]] = None


class DispatchItemOut(CamelModel):
    id: int
    order_item_id: int
    item_id: Optional[int] = None
    item_name: Optional[str] = None
    quantity_dispatched: float
    rate: Optional[float] = None


class DispatchOut(CamelModel):
    id: int
    order_id: int
    order_no: Optional[str] = None
    dispatch_date: date
    transporter_id: Optional[int] = None
    transporter_name: Optional[str] = None
    lr_no: Optional[str] = None
    invoice_no: Optional[str] = None
    order_status: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[DispatchItemOut] = []


class DispatchHistoryOut(CamelModel):
    id: int
    dispatch_date: date
    transporter_id: Optional[int] = None
    transporter_name: Optional[str] = None
    lr_no: Optional[str] = None
    invoice_no: Optional[str] = None
    items_count: int
    total_quantity: float


def dispatch_out(dispatch: Dispatch) -> DispatchOut:
    order = dispatch.order
    items = []
    for di in dispatch.items:
        oi = di.order_item
        items.append(DispatchItemOut(
            id=di.id,
            order_item_id=di.order_item_id,
            item_id=oi.item_id if oi else None,
            item_name=oi.item.name if oi and oi.item else None,
            quantity_dispatched=float(di.quantity_dispatched),
            rate=float(oi.rate) if oi else None,
        ))

    return DispatchOut(
        id=dispatch.id,
        order_id=dispatch.order_id,
        order_no=order.order_no if order else None,
        dispatch_date=dispatch.dispatch_date,
        transporter_id=dispatch.transporter_id,
        transporter_name=dispatch.transporter.name if dispatch.transporter else None,
        lr_no=dispatch.lr_no,
        invoice_no=dispatch.invoice_no,
        order_status=order.status.value if order and order.status else None,
        created_at=dispatch.created_at,
        items=items,
    )


def _line_inputs(items: Optional[List[DispatchItemIn]]) -> Optional[List[DispatchLineInput]]:
    if items is None:
        return None
    return [
        DispatchLineInput(order_item_id=i.order_item_id, quantity_dispatched=i.quantity_dispatched)
        for i in items
    ]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=DispatchOut, status_code=201)
def create_dispatch(
    data: DispatchCreateRequest,
    service: OrderFulfillmentService = Depends(get_order_service),
):
    """
    Record a dispatch.

    Fails as a whole (400, naming the order item) when any line exceeds
    its balance; 409 when the order lines are locked past the lock timeout.
    """
    dispatch = service.create_dispatch(
        order_id=data.order_id,
        dispatch_date=data.dispatch_date,
        items=_line_inputs(data.items),
        transporter_id=data.transporter_id,
        lr_no=data.lr_no,
        invoice_no=data.invoice_no,
    )
    return dispatch_out(dispatch)


@router.get("", response_model=List[DispatchOut])
def list_dispatches(
    order_id: Optional[int] = Query(None, alias="orderId"),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    service: OrderFulfillmentService = Depends(get_order_service),
):
    dispatches = service.list_dispatches(order_id=order_id, from_date=from_date, to_date=to_date)
    return [dispatch_out(d) for d in dispatches]


@router.get("/order/{order_id}/history", response_model=List[DispatchHistoryOut])
def dispatch_history(order_id: int, service: OrderFulfillmentService = Depends(get_order_service)):
    """Dispatches of one order with their item count and total quantity, newest first"""
    return service.dispatch_history(order_id)


@router.get("/{dispatch_id}", response_model=DispatchOut)
def get_dispatch(dispatch_id: int, service: OrderFulfillmentService = Depends(get_order_service)):
    return dispatch_out(service.get_dispatch(dispatch_id))


@router.put("/{dispatch_id}", response_model=DispatchOut)
def update_dispatch(
    dispatch_id: int,
    data: DispatchUpdateRequest,
    service: OrderFulfillmentService = Depends(get_order_service),
):
    """Balances are checked against the other dispatches of each order line"""
    changes = data.model_dump(exclude_unset=True, exclude={"items"})
    dispatch = service.update_dispatch(dispatch_id, items=_line_inputs(data.items), changes=changes)
    return dispatch_out(dispatch)


@router.delete("/{dispatch_id}", response_model=MessageOut)
def delete_dispatch(dispatch_id: int, service: OrderFulfillmentService = Depends(get_order_service)):
    service.delete_dispatch(dispatch_id)
    return MessageOut(message="Dispatch deleted successfully")

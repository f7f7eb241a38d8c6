"""
Production API Router
=====================
Inward and shop-floor events that feed the stock ledger:
- GRN (raw material receipt)
- Melting process (scrap and mineral consumption)
- Heat treatment (finished goods production)
"""

from datetime import date, datetime, time
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..models import HeatTreatment, MeltingProcess, ScrapGRN
from ..schemas import CamelModel, MessageOut
from ..deps import get_production_service
from ..services import (
    ConsumptionInput, GRNLineInput, HeatTreatmentInput, ProductionEventService
)

router = APIRouter(tags=["Production"])


# =============================================================================
# SCHEMAS
# =============================================================================

class GRNItemIn(CamelModel):
    item_id: int
    quantity: float
    rate: float


class GRNRequest(CamelModel):
    supplier_id: int
    invoice_no: str
    invoice_date: date
    vehicle_no: Optional[str] = None
    items: List[GRNItemIn]


class GRNItemOut(CamelModel):
    id: int
    item_id: int
    item_name: Optional[str] = None
    quantity: float
    rate: float
    amount: float


class GRNOut(CamelModel):
    id: int
    grn_no: str
    supplier_id: int
    supplier_name: Optional[str] = None
    invoice_no: str
    invoice_date: date
    vehicle_no: Optional[str] = None
    total_amount: float
    cgst: float
    sgst: float
    igst: float
    invoice_total: float
    created_at: Optional[datetime] = None
    items: List[GRNItemOut] = []


class ConsumptionIn(CamelModel):
    item_id: int
    quantity: float


class MeltingRequest(CamelModel):
    melting_date: date
    heat_no: str
    temperature: Optional[float] = None
    consumptions: List[ConsumptionIn]


class ConsumptionOut(CamelModel):
    id: int
    item_id: int
    item_name: Optional[str] = None
    quantity: float


class MeltingOut(CamelModel):
    id: int
    melting_date: date
    heat_no: str
    temperature: Optional[float] = None
    created_at: Optional[datetime] = None
    consumptions: List[ConsumptionOut] = []


class HeatTreatmentRequest(CamelModel):
    treatment_date: date
    furnace_no: int
    size_item_id: int
    time_in: time
    time_out: time
    temperature: float
    bags_produced: int


class HeatTreatmentOut(CamelModel):
    id: int
    treatment_date: date
    furnace_no: int
    size_item_id: int
    size_item_name: Optional[str] = None
    time_in: time
    time_out: time
    temperature: float
    bags_produced: int
    created_at: Optional[datetime] = None


def grn_out(grn: ScrapGRN) -> GRNOut:
    return GRNOut(
        id=grn.id,
        grn_no=grn.grn_no,
        supplier_id=grn.supplier_id,
        supplier_name=grn.supplier.name if grn.supplier else None,
        invoice_no=grn.invoice_no,
        invoice_date=grn.invoice_date,
        vehicle_no=grn.vehicle_no,
        total_amount=float(grn.total_amount),
        cgst=float(grn.cgst),
        sgst=float(grn.sgst),
        igst=float(grn.igst),
        invoice_total=float(grn.invoice_total),
        created_at=grn.created_at,
        items=[
            GRNItemOut(
                id=line.id,
                item_id=line.item_id,
                item_name=line.item.name if line.item else None,
                quantity=float(line.quantity),
                rate=float(line.rate),
                amount=float(line.amount),
            )
            for line in grn.items
        ],
    )


def melting_out(process: MeltingProcess) -> MeltingOut:
    return MeltingOut(
        id=process.id,
        melting_date=process.melting_date,
        heat_no=process.heat_no,
        temperature=float(process.temperature) if process.temperature is not None else None,
        created_at=process.created_at,
        consumptions=[
            ConsumptionOut(
                id=c.id,
                item_id=c.item_id,
                item_name=c.item.name if c.item else None,
                quantity=float(c.quantity),
            )
            for c in process.consumptions
        ],
    )


def heat_treatment_out(record: HeatTreatment) -> HeatTreatmentOut:
    return HeatTreatmentOut(
        id=record.id,
        treatment_date=record.treatment_date,
        furnace_no=record.furnace_no,
        size_item_id=record.size_item_id,
        size_item_name=record.size_item.name if record.size_item else None,
        time_in=record.time_in,
        time_out=record.time_out,
        temperature=float(record.temperature),
        bags_produced=record.bags_produced,
        created_at=record.created_at,
    )


def _grn_lines(items: List[GRNItemIn]) -> List[GRNLineInput]:
    return [GRNLineInput(item_id=i.item_id, quantity=i.quantity, rate=i.rate) for i in items]


def _consumptions(lines: List[ConsumptionIn]) -> List[ConsumptionInput]:
    return [ConsumptionInput(item_id=c.item_id, quantity=c.quantity) for c in lines]


def _heat_treatment_input(data: HeatTreatmentRequest) -> HeatTreatmentInput:
    return HeatTreatmentInput(
        treatment_date=data.treatment_date,
        furnace_no=data.furnace_no,
        size_item_id=data.size_item_id,
        time_in=data.time_in,
        time_out=data.time_out,
        temperature=data.temperature,
        bags_produced=data.bags_produced,
    )


# =============================================================================
# GRN
# =============================================================================

@router.post("/grn", response_model=GRNOut, status_code=201)
def create_grn(data: GRNRequest, service: ProductionEventService = Depends(get_production_service)):
    grn = service.create_grn(
        supplier_id=data.supplier_id,
        invoice_no=data.invoice_no,
        invoice_date=data.invoice_date,
        lines=_grn_lines(data.items),
        vehicle_no=data.vehicle_no,
    )
    return grn_out(grn)


@router.get("/grn", response_model=List[GRNOut])
def list_grns(
    supplier_id: Optional[int] = Query(None, alias="supplierId"),
    service: ProductionEventService = Depends(get_production_service),
):
    return [grn_out(g) for g in service.list_grns(supplier_id=supplier_id)]


@router.get("/grn/{grn_id}", response_model=GRNOut)
def get_grn(grn_id: int, service: ProductionEventService = Depends(get_production_service)):
    return grn_out(service.get_grn(grn_id))


@router.put("/grn/{grn_id}", response_model=GRNOut)
def update_grn(
    grn_id: int,
    data: GRNRequest,
    service: ProductionEventService = Depends(get_production_service),
):
    """Replaces the lines; their stock receipts are reversed and re-recorded"""
    grn = service.update_grn(
        grn_id,
        supplier_id=data.supplier_id,
        invoice_no=data.invoice_no,
        invoice_date=data.invoice_date,
        lines=_grn_lines(data.items),
        vehicle_no=data.vehicle_no,
    )
    return grn_out(grn)


@router.delete("/grn/{grn_id}", response_model=MessageOut)
def delete_grn(grn_id: int, service: ProductionEventService = Depends(get_production_service)):
    service.delete_grn(grn_id)
    return MessageOut(message="GRN deleted successfully")


# =============================================================================
# MELTING
# =============================================================================

@router.post("/melting-processes", response_model=MeltingOut, status_code=201)
def create_melting(data: MeltingRequest, service: ProductionEventService = Depends(get_production_service)):
    process = service.create_melting(
        melting_date=data.melting_date,
        heat_no=data.heat_no,
        consumptions=_consumptions(data.consumptions),
        temperature=data.temperature,
    )
    return melting_out(process)


@router.get("/melting-processes", response_model=List[MeltingOut])
def list_meltings(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    service: ProductionEventService = Depends(get_production_service),
):
    return [melting_out(p) for p in service.list_meltings(from_date=from_date, to_date=to_date)]


@router.get("/melting-processes/{melting_id}", response_model=MeltingOut)
def get_melting(melting_id: int, service: ProductionEventService = Depends(get_production_service)):
    return melting_out(service.get_melting(melting_id))


@router.put("/melting-processes/{melting_id}", response_model=MeltingOut)
def update_melting(
    melting_id: int,
    data: MeltingRequest,
    service: ProductionEventService = Depends(get_production_service),
):
    process = service.update_melting(
        melting_id,
        melting_date=data.melting_date,
        heat_no=data.heat_no,
        consumptions=_consumptions(data.consumptions),
        temperature=data.temperature,
    )
    return melting_out(process)


@router.delete("/melting-processes/{melting_id}", response_model=MessageOut)
def delete_melting(melting_id: int, service: ProductionEventService = Depends(get_production_service)):
    service.delete_melting(melting_id)
    return MessageOut(message="Melting process deleted successfully")


# =============================================================================
# HEAT TREATMENT
# =============================================================================

@router.post("/heat-treatment", response_model=HeatTreatmentOut, status_code=201)
def create_heat_treatment(
    data: HeatTreatmentRequest,
    service: ProductionEventService = Depends(get_production_service),
):
    return heat_treatment_out(service.create_heat_treatment(_heat_treatment_input(data)))


@router.get("/heat-treatment", response_model=List[HeatTreatmentOut])
def list_heat_treatments(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    furnace_no: Optional[int] = Query(None, alias="furnaceNo"),
    service: ProductionEventService = Depends(get_production_service),
):
    records = service.list_heat_treatments(from_date=from_date, to_date=to_date, furnace_no=furnace_no)
    return [heat_treatment_out(r) for r in records]


@router.get("/heat-treatment/{treatment_id}", response_model=HeatTreatmentOut)
def get_heat_treatment(treatment_id: int, service: ProductionEventService = Depends(get_production_service)):
    return heat_treatment_out(service.get_heat_treatment(treatment_id))


@router.put("/heat-treatment/{treatment_id}", response_model=HeatTreatmentOut)
def update_heat_treatment(
    treatment_id: int,
    data: HeatTreatmentRequest,
    service: ProductionEventService = Depends(get_production_service),
):
    return heat_treatment_out(service.update_heat_treatment(treatment_id, _heat_treatment_input(data)))


@router.delete("/heat-treatment/{treatment_id}", response_model=MessageOut)
def delete_heat_treatment(treatment_id: int, service: ProductionEventService = Depends(get_production_service)):
    service.delete_heat_treatment(treatment_id)
    return MessageOut(message="Heat treatment deleted successfully")

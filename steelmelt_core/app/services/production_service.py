"""
Production Event Adapters
=========================
Translate business events into stock ledger rows:

- GRN            -> RECEIPT per line (reference GRN / line id)
- Melting        -> ISSUE per consumed item (reference MELTING / process id),
                    plus a WIP RECEIPT when a WIP item is configured
- Heat treatment -> finished-goods RECEIPT (reference HEAT_TREATMENT / id),
                    plus a WIP ISSUE when a WIP item is configured

Edits and deletes reverse the event's ledger rows and re-insert them inside
the same transaction.
"""

import logging
from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..db import transaction
from ..errors import ConstraintError, InsufficientStockError, NotFoundError, ValidationError
from ..models import (
    CategoryName, HeatTreatment, Item, MeltingConsumption, MeltingProcess,
    Order, OrderItem, ReferenceType, ScrapGRN, ScrapGRNItem, Supplier, TransactionType
)
from .gst import money, split_gst
from .numbering import next_document_number
from .stock_ledger import LedgerEntry, StockLedger, to_decimal, to_quantity

logger = logging.getLogger(__name__)

MELTABLE_CATEGORIES = (CategoryName.RAW_MATERIAL.value, CategoryName.MINERALS.value)


@dataclass
class GRNLineInput:
    item_id: int
    quantity: Decimal
    rate: Decimal


@dataclass
class ConsumptionInput:
    item_id: int
    quantity: Decimal


@dataclass
class HeatTreatmentInput:
    treatment_date: date
    furnace_no: int
    size_item_id: int
    time_in: time
    time_out: time
    temperature: Decimal
    bags_produced: int


class ResolvedRate(NamedTuple):
    rate: Decimal
    source: str  # "receipt" | "order" | "default"


# =============================================================================
# RATE RESOLUTION
# =============================================================================

def latest_order_rate(db: Session, item_id: int) -> Optional[Decimal]:
    row = db.query(OrderItem.rate).join(Order, Order.id == OrderItem.order_id).filter(
        OrderItem.item_id == item_id
    ).order_by(Order.order_date.desc(), OrderItem.id.desc()).first()
    return money(row.rate) if row else None


def resolve_rate(
    db: Session,
    settings: Settings,
    item_id: int,
    source: str,
    ledger: Optional[StockLedger] = None,
) -> ResolvedRate:
    """
    Valuation rate for an event-generated ledger row.

    ``source`` is "receipt" (most recent RECEIPT/OPENING rate of the item)
    or "order" (most recent order rate of the item). Without a prior rate the
    configured default is used, or the event is refused when RATE_FALLBACK
    is "reject".
    """
    if source == "receipt":
        rate = (ledger or StockLedger(db)).latest_receipt_rate(item_id)
        default = settings.DEFAULT_RAW_MATERIAL_RATE
    elif source == "order":
        rate = latest_order_rate(db, item_id)
        default = settings.DEFAULT_FINISHED_GOODS_RATE
    else:
        raise ValueError(f"Unknown rate source: {source}")

    if rate is not None:
        return ResolvedRate(rate, source)

    if settings.rejects_default_rates:
        raise ConstraintError(f"No prior {source} rate for item {item_id}", field="itemId")

    logger.warning("No prior %s rate for item %s; using default %s", source, item_id, default)
    return ResolvedRate(money(default), "default")


class ProductionEventService:
    """GRN, melting and heat treatment recording"""

    def __init__(self, db: Session, settings: Settings, ledger: Optional[StockLedger] = None):
        self.db = db
        self.settings = settings
        self.ledger = ledger or StockLedger(db)

    # =========================================================================
    # GRN
    # =========================================================================

    def create_grn(
        self,
        supplier_id: int,
        invoice_no: str,
        invoice_date: date,
        lines: List[GRNLineInput],
        vehicle_no: Optional[str] = None,
    ) -> ScrapGRN:
        """Record a goods receipt; one RECEIPT ledger row per line"""
        lines = self._validated_grn_lines(invoice_no, invoice_date, lines)

        with transaction(self.db):
            grn = ScrapGRN(grn_no=next_document_number(self.db, "grn", "GRN", invoice_date))
            self.db.add(grn)
            self._fill_grn(grn, supplier_id, invoice_no, invoice_date, vehicle_no, lines)

        logger.info("GRN %s recorded with %d lines", grn.grn_no, len(lines))
        return grn

    def update_grn(
        self,
        grn_id: int,
        supplier_id: int,
        invoice_no: str,
        invoice_date: date,
        lines: List[GRNLineInput],
        vehicle_no: Optional[str] = None,
    ) -> ScrapGRN:
        lines = self._validated_grn_lines(invoice_no, invoice_date, lines)

        with transaction(self.db):
            grn = self.get_grn(grn_id)
            self._clear_grn(grn)
            self._fill_grn(grn, supplier_id, invoice_no, invoice_date, vehicle_no, lines)

        logger.info("GRN %s updated", grn.grn_no)
        return grn

    def delete_grn(self, grn_id: int) -> None:
        with transaction(self.db):
            grn = self.get_grn(grn_id)
            grn_no = grn.grn_no
            self._clear_grn(grn)
            self.db.delete(grn)

        logger.info("GRN %s deleted", grn_no)

    def get_grn(self, grn_id: int) -> ScrapGRN:
        grn = self.db.get(ScrapGRN, grn_id)
        if not grn:
            raise NotFoundError("GRN not found")
        return grn

    def list_grns(self, supplier_id: Optional[int] = None) -> List[ScrapGRN]:
        query = self.db.query(ScrapGRN)
        if supplier_id:
            query = query.filter(ScrapGRN.supplier_id == supplier_id)
        return query.order_by(ScrapGRN.invoice_date.desc(), ScrapGRN.id.desc()).all()

    def _validated_grn_lines(self, invoice_no, invoice_date, lines) -> List[GRNLineInput]:
        if not invoice_no or not str(invoice_no).strip():
            raise ValidationError("Invoice number is required", field="invoiceNo")
        if invoice_date is None:
            raise ValidationError("Invoice date is required", field="invoiceDate")
        if not lines:
            raise ValidationError("GRN must have at least one item", field="items")
        validated = []
        for idx, line in enumerate(lines):
            quantity = to_quantity(line.quantity, f"items[{idx}].quantity")
            rate = money(to_decimal(line.rate, f"items[{idx}].rate"))
            if quantity <= 0:
                raise ValidationError("Quantity must be greater than 0", field=f"items[{idx}].quantity")
            if rate < 0:
                raise ValidationError("Rate cannot be negative", field=f"items[{idx}].rate")
            validated.append(GRNLineInput(item_id=line.item_id, quantity=quantity, rate=rate))
        return validated

    def _fill_grn(self, grn, supplier_id, invoice_no, invoice_date, vehicle_no, lines) -> None:
        supplier = self.db.get(Supplier, supplier_id)
        if not supplier:
            raise ConstraintError(f"Supplier with id {supplier_id} not found", field="supplierId")

        grn.supplier_id = supplier_id
        grn.invoice_no = invoice_no
        grn.invoice_date = invoice_date
        grn.vehicle_no = vehicle_no
        self.db.flush()

        total = cgst = sgst = igst = Decimal('0.00')
        for line in lines:
            item = self._require_item(line.item_id)
            amount = money(line.quantity * line.rate)
            grn_item = ScrapGRNItem(item_id=item.id, quantity=line.quantity, rate=line.rate, amount=amount)
            grn.items.append(grn_item)
            self.db.flush()

            gst = split_gst(supplier.state, self.settings.COMPANY_STATE, amount, item.gst_rate or 0)
            total += amount
            cgst += gst.cgst
            sgst += gst.sgst
            igst += gst.igst

            self.ledger.record(LedgerEntry(
                transaction_date=invoice_date,
                transaction_type=TransactionType.RECEIPT,
                item_id=item.id,
                quantity=line.quantity,
                rate=line.rate,
                reference_type=ReferenceType.GRN.value,
                reference_id=grn_item.id,
                remarks=f"GRN {grn.grn_no} - Invoice {invoice_no}",
            ))

        grn.total_amount = total
        grn.cgst = cgst
        grn.sgst = sgst
        grn.igst = igst
        grn.invoice_total = money(total + cgst + sgst + igst)
        self.db.flush()

    def _clear_grn(self, grn: ScrapGRN) -> None:
        for grn_item in list(grn.items):
            self.ledger.reverse_by_reference(ReferenceType.GRN.value, grn_item.id)
        grn.items.clear()
        self.db.flush()

    # =========================================================================
    # MELTING
    # =========================================================================

    def create_melting(
        self,
        melting_date: date,
        heat_no: str,
        consumptions: List[ConsumptionInput],
        temperature: Optional[Decimal] = None,
    ) -> MeltingProcess:
        """
        Record one heat. Each consumed item is issued at its most recent
        receipt rate. Duplicate (melting_date, heat_no) is refused, and so is
        consuming more than the ledger holds unless ALLOW_NEGATIVE_STOCK is set.
        """
        consumptions = self._validated_consumptions(melting_date, heat_no, consumptions)

        with transaction(self.db):
            self._check_unique_heat(melting_date, heat_no)
            process = MeltingProcess(melting_date=melting_date, heat_no=heat_no, temperature=temperature)
            self.db.add(process)
            self.db.flush()
            self._post_melting(process, consumptions)

        logger.info("Melting heat %s on %s recorded", heat_no, melting_date)
        return process

    def update_melting(
        self,
        melting_id: int,
        melting_date: date,
        heat_no: str,
        consumptions: List[ConsumptionInput],
        temperature: Optional[Decimal] = None,
    ) -> MeltingProcess:
        consumptions = self._validated_consumptions(melting_date, heat_no, consumptions)

        with transaction(self.db):
            process = self.get_melting(melting_id)
            self._check_unique_heat(melting_date, heat_no, exclude_id=process.id)
            self._reverse_melting(process)
            process.melting_date = melting_date
            process.heat_no = heat_no
            process.temperature = temperature
            self.db.flush()
            self._post_melting(process, consumptions)

        logger.info("Melting process %s updated", melting_id)
        return process

    def delete_melting(self, melting_id: int) -> None:
        with transaction(self.db):
            process = self.get_melting(melting_id)
            self._reverse_melting(process)
            self.db.delete(process)

        logger.info("Melting process %s deleted", melting_id)

    def get_melting(self, melting_id: int) -> MeltingProcess:
        process = self.db.get(MeltingProcess, melting_id)
        if not process:
            raise NotFoundError("Melting process not found")
        return process

    def list_meltings(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[MeltingProcess]:
        query = self.db.query(MeltingProcess)
        if from_date:
            query = query.filter(MeltingProcess.melting_date >= from_date)
        if to_date:
            query = query.filter(MeltingProcess.melting_date <= to_date)
        return query.order_by(MeltingProcess.melting_date.desc(), MeltingProcess.id.desc()).all()

    def _validated_consumptions(self, melting_date, heat_no, consumptions) -> List[ConsumptionInput]:
        if melting_date is None:
            raise ValidationError("Melting date is required", field="meltingDate")
        if not heat_no or not str(heat_no).strip():
            raise ValidationError("Heat number is required", field="heatNo")
        if not consumptions:
            raise ValidationError("Melting process must consume at least one item", field="consumptions")
        validated = []
        for idx, line in enumerate(consumptions):
            quantity = to_quantity(line.quantity, f"consumptions[{idx}].quantity")
            if quantity <= 0:
                raise ValidationError("Quantity must be greater than 0", field=f"consumptions[{idx}].quantity")
            validated.append(ConsumptionInput(item_id=line.item_id, quantity=quantity))
        return validated

    def _check_unique_heat(self, melting_date: date, heat_no: str, exclude_id: Optional[int] = None) -> None:
        query = self.db.query(MeltingProcess.id).filter(
            MeltingProcess.melting_date == melting_date,
            MeltingProcess.heat_no == heat_no
        )
        if exclude_id is not None:
            query = query.filter(MeltingProcess.id != exclude_id)
        if query.first():
            raise ConstraintError(
                f"Heat number {heat_no} already exists for {melting_date.isoformat()}", field="heatNo"
            )

    def _post_melting(self, process: MeltingProcess, consumptions: List[ConsumptionInput]) -> None:
        total_qty = Decimal('0.000')
        total_amount = Decimal('0.00')

        for line in consumptions:
            item = self._require_item(line.item_id)
            if item.category is None or item.category.name not in MELTABLE_CATEGORIES:
                raise ConstraintError(
                    f"Item {item.id} is not a raw material or mineral", field="consumptions"
                )
        if not self.settings.ALLOW_NEGATIVE_STOCK:
            self._check_stock(consumptions)

        for line in consumptions:
            process.consumptions.append(MeltingConsumption(item_id=line.item_id, quantity=line.quantity))

            resolved = resolve_rate(self.db, self.settings, line.item_id, "receipt", self.ledger)
            txn = self.ledger.record(LedgerEntry(
                transaction_date=process.melting_date,
                transaction_type=TransactionType.ISSUE,
                item_id=line.item_id,
                quantity=line.quantity,
                rate=resolved.rate,
                reference_type=ReferenceType.MELTING.value,
                reference_id=process.id,
                remarks=f"Melting heat {process.heat_no}",
            ))
            total_qty += txn.quantity
            total_amount += txn.amount

        wip_item_id = self.settings.WIP_ITEM_ID
        if wip_item_id and total_qty > 0:
            self.ledger.record(LedgerEntry(
                transaction_date=process.melting_date,
                transaction_type=TransactionType.RECEIPT,
                item_id=wip_item_id,
                quantity=total_qty,
                rate=money(total_amount / total_qty),
                reference_type=ReferenceType.MELTING_OUTPUT.value,
                reference_id=process.id,
                remarks=f"WIP from melting heat {process.heat_no}",
            ))
        self.db.flush()

    def _check_stock(self, consumptions: List[ConsumptionInput]) -> None:
        """
        Refuse a heat that consumes more than the ledger holds. Runs after the
        event's own rows were reversed, so an edit is checked against the
        stock without its previous consumption.
        """
        required: Dict[int, Decimal] = {}
        for line in consumptions:
            required[line.item_id] = required.get(line.item_id, Decimal('0.000')) + line.quantity

        self.db.query(Item).filter(
            Item.id.in_(sorted(required))
        ).order_by(Item.id).with_for_update().all()
        on_hand = self.ledger.stock_on_hand(required)

        shortages = [
            (item_id, on_hand[item_id], quantity)
            for item_id, quantity in required.items()
            if quantity > on_hand[item_id]
        ]
        if shortages:
            raise InsufficientStockError(shortages)

    def _reverse_melting(self, process: MeltingProcess) -> None:
        self.ledger.reverse_by_reference(ReferenceType.MELTING.value, process.id)
        self.ledger.reverse_by_reference(ReferenceType.MELTING_OUTPUT.value, process.id)
        process.consumptions.clear()
        self.db.flush()

    # =========================================================================
    # HEAT TREATMENT
    # =========================================================================

    def create_heat_treatment(self, data: HeatTreatmentInput) -> HeatTreatment:
        """
        Record a heat-treatment batch. Produces bags_produced * BAG_WEIGHT of
        the finished-good item, valued at the item's most recent order rate.
        """
        self._validate_heat_treatment(data)

        with transaction(self.db):
            record = HeatTreatment()
            self._apply_heat_treatment(record, data)
            self.db.add(record)
            self.db.flush()
            self._post_heat_treatment(record)

        logger.info("Heat treatment %s recorded: %s bags of item %s", record.id, data.bags_produced, data.size_item_id)
        return record

    def update_heat_treatment(self, treatment_id: int, data: HeatTreatmentInput) -> HeatTreatment:
        self._validate_heat_treatment(data)

        with transaction(self.db):
            record = self.get_heat_treatment(treatment_id)
            self.ledger.reverse_by_reference(ReferenceType.HEAT_TREATMENT.value, record.id)
            self._apply_heat_treatment(record, data)
            self.db.flush()
            self._post_heat_treatment(record)

        logger.info("Heat treatment %s updated", treatment_id)
        return record

    def delete_heat_treatment(self, treatment_id: int) -> None:
        with transaction(self.db):
            record = self.get_heat_treatment(treatment_id)
            self.ledger.reverse_by_reference(ReferenceType.HEAT_TREATMENT.value, record.id)
            self.db.delete(record)

        logger.info("Heat treatment %s deleted", treatment_id)

    def get_heat_treatment(self, treatment_id: int) -> HeatTreatment:
        record = self.db.get(HeatTreatment, treatment_id)
        if not record:
            raise NotFoundError("Heat treatment record not found")
        return record

    def list_heat_treatments(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        furnace_no: Optional[int] = None,
    ) -> List[HeatTreatment]:
        query = self.db.query(HeatTreatment)
        if from_date:
            query = query.filter(HeatTreatment.treatment_date >= from_date)
        if to_date:
            query = query.filter(HeatTreatment.treatment_date <= to_date)
        if furnace_no:
            query = query.filter(HeatTreatment.furnace_no == furnace_no)
        return query.order_by(HeatTreatment.treatment_date.desc(), HeatTreatment.id.desc()).all()

    def _validate_heat_treatment(self, data: HeatTreatmentInput) -> None:
        if data.treatment_date is None:
            raise ValidationError("Treatment date is required", field="treatmentDate")
        if data.furnace_no is None or not 1 <= int(data.furnace_no) <= 6:
            raise ValidationError("Furnace number must be between 1 and 6", field="furnaceNo")
        if data.time_in is None or data.time_out is None:
            raise ValidationError("Time in and time out are required", field="timeIn")
        if data.time_out <= data.time_in:
            raise ValidationError("Time out must be after time in", field="timeOut")
        if to_decimal(data.temperature, "temperature") <= 0:
            raise ValidationError("Temperature must be greater than 0", field="temperature")
        if data.bags_produced is None or int(data.bags_produced) <= 0:
            raise ValidationError("Bags produced must be greater than 0", field="bagsProduced")

    def _apply_heat_treatment(self, record: HeatTreatment, data: HeatTreatmentInput) -> None:
        item = self._require_item(data.size_item_id, field="sizeItemId")
        if item.category is None or item.category.name != CategoryName.FINISHED_PRODUCT.value:
            raise ConstraintError(f"Item {item.id} is not a finished product", field="sizeItemId")

        record.treatment_date = data.treatment_date
        record.furnace_no = int(data.furnace_no)
        record.size_item_id = item.id
        record.time_in = data.time_in
        record.time_out = data.time_out
        record.temperature = to_decimal(data.temperature, "temperature")
        record.bags_produced = int(data.bags_produced)

    def _post_heat_treatment(self, record: HeatTreatment) -> None:
        quantity = to_quantity(Decimal(record.bags_produced) * self.settings.BAG_WEIGHT)
        resolved = resolve_rate(self.db, self.settings, record.size_item_id, "order", self.ledger)

        self.ledger.record(LedgerEntry(
            transaction_date=record.treatment_date,
            transaction_type=TransactionType.RECEIPT,
            item_id=record.size_item_id,
            quantity=quantity,
            rate=resolved.rate,
            reference_type=ReferenceType.HEAT_TREATMENT.value,
            reference_id=record.id,
            remarks=f"Heat treatment furnace {record.furnace_no} - {record.bags_produced} bags",
        ))

        wip_item_id = self.settings.WIP_ITEM_ID
        if wip_item_id:
            wip_rate = resolve_rate(self.db, self.settings, wip_item_id, "receipt", self.ledger)
            self.ledger.record(LedgerEntry(
                transaction_date=record.treatment_date,
                transaction_type=TransactionType.ISSUE,
                item_id=wip_item_id,
                quantity=quantity,
                rate=wip_rate.rate,
                reference_type=ReferenceType.HEAT_TREATMENT.value,
                reference_id=record.id,
                remarks=f"WIP to heat treatment furnace {record.furnace_no}",
            ))

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_item(self, item_id: int, field: str = "itemId") -> Item:
        item = self.db.get(Item, item_id)
        if not item:
            raise ConstraintError(f"Item with id {item_id} not found", field=field)
        return item

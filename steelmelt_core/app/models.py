"""
SteelMelt ERP - Data Models
===========================
Relational schema for order fulfillment and the stock ledger.

Key Features:
- Decimal precision for quantities (3 dp) and money (2 dp)
- Append-only stock ledger keyed by (transaction_date, id)
- Dispatch balance derived from dispatch items, never stored
- Production events (GRN, melting, heat treatment) as ledger writers
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Time, ForeignKey, Text,
    Numeric, Enum as SQLEnum, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship, validates
from .db import Base


# =============================================================================
# ENUMS
# =============================================================================

class CategoryName(str, Enum):
    """Item categories recognised by the ledger adapters"""
    RAW_MATERIAL = "Raw Material"
    MINERALS = "Minerals"
    WIP = "WIP"
    FINISHED_PRODUCT = "Finished Product"


class TransactionType(str, Enum):
    """Stock ledger movement types"""
    OPENING = "OPENING"
    RECEIPT = "RECEIPT"
    ISSUE = "ISSUE"


class ReferenceType(str, Enum):
    """Owner of a ledger row"""
    DISPATCH = "DISPATCH"
    GRN = "GRN"
    MELTING = "MELTING"
    MELTING_OUTPUT = "MELTING_OUTPUT"
    HEAT_TREATMENT = "HEAT_TREATMENT"
    MANUAL = "MANUAL"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PARTIALLY_DISPATCHED = "Partially Dispatched"
    COMPLETED = "Completed"


# =============================================================================
# MASTER DATA (owned by the master-data collaborator)
# =============================================================================

class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)

    items = relationship("Item", back_populates="category")


class Item(Base):
    """Stockable item with its applicable GST rate"""
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    uom = Column(String(20), nullable=False, default="KG")
    gst_rate = Column(Numeric(5, 2), nullable=False, default=0)  # percent

    category = relationship("Category", back_populates="items")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    state = Column(String(100), nullable=True)  # drives CGST/SGST vs IGST
    gstin = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    state = Column(String(100), nullable=True)
    gstin = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Transporter(Base):
    __tablename__ = "transporters"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)


class NumberSequence(Base):
    """One counter per document series and year (ORD/2025/000001, GRN/2025/000001, ...)"""
    __tablename__ = "number_sequences"

    id = Column(Integer, primary_key=True)
    sequence_name = Column(String(50), nullable=False)
    year = Column(Integer, nullable=False)
    prefix = Column(String(20), nullable=False)
    current_number = Column(Integer, nullable=False, default=0)
    padding = Column(Integer, nullable=False, default=6)

    __table_args__ = (
        UniqueConstraint('sequence_name', 'year', name='uq_number_sequence_year'),
    )


# =============================================================================
# ORDERS & DISPATCHES
# =============================================================================

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_no = Column(String(50), unique=True, nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    order_date = Column(Date, nullable=False)
    po_no = Column(String(50), nullable=True)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("Customer")
    items = relationship(
        "OrderItem", back_populates="order",
        cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    dispatches = relationship("Dispatch", back_populates="order")


class OrderItem(Base):
    """
    One order line. amount, tax split and total are computed once at
    creation (and on revision) from the customer's state.
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    bag_count = Column(Numeric(15, 3), nullable=False, default=0)
    rate = Column(Numeric(15, 2), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    cgst = Column(Numeric(15, 2), nullable=False, default=0)
    sgst = Column(Numeric(15, 2), nullable=False, default=0)
    igst = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False)

    # Bumped by every dispatch mutation that locks this line
    lock_version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="items")
    item = relationship("Item")
    dispatch_items = relationship("DispatchItem", back_populates="order_item")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_item_quantity_positive'),
        CheckConstraint('rate >= 0', name='ck_order_item_rate_non_negative'),
        Index('ix_order_item_order', 'order_id'),
        Index('ix_order_item_item', 'item_id'),
    )


class Dispatch(Base):
    __tablename__ = "dispatches"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    dispatch_date = Column(Date, nullable=False)
    transporter_id = Column(Integer, ForeignKey("transporters.id"), nullable=True)
    lr_no = Column(String(50), nullable=True)
    invoice_no = Column(String(50), nullable=True)

    # Bumped by every edit or delete of this dispatch
    lock_version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="dispatches")
    transporter = relationship("Transporter")
    items = relationship(
        "DispatchItem", back_populates="dispatch",
        cascade="all, delete-orphan", order_by="DispatchItem.id"
    )

    __table_args__ = (
        Index('ix_dispatch_order_date', 'order_id', 'dispatch_date'),
    )


class DispatchItem(Base):
    __tablename__ = "dispatch_items"

    id = Column(Integer, primary_key=True, index=True)
    dispatch_id = Column(Integer, ForeignKey("dispatches.id"), nullable=False)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False)
    quantity_dispatched = Column(Numeric(15, 3), nullable=False)

    dispatch = relationship("Dispatch", back_populates="items")
    order_item = relationship("OrderItem", back_populates="dispatch_items")

    __table_args__ = (
        CheckConstraint('quantity_dispatched > 0', name='ck_dispatch_qty_positive'),
        Index('ix_dispatch_item_order_item', 'order_item_id'),
    )


# =============================================================================
# STOCK LEDGER - THE CORE
# =============================================================================

class StockTransaction(Base):
    """
    Append-only stock ledger. Single source of truth for stock.

    Rows are never updated. An event that is edited or deleted removes its
    own rows (by reference) and re-inserts, inside one transaction.
    amount is the valuation at the time of the movement.
    """
    __tablename__ = "stock_transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_date = Column(Date, nullable=False)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    rate = Column(Numeric(15, 2), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)

    reference_type = Column(String(30), nullable=False, default=ReferenceType.MANUAL.value)
    reference_id = Column(Integer, nullable=True)
    remarks = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    item = relationship("Item")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_stock_txn_quantity_positive'),
        CheckConstraint('rate >= 0', name='ck_stock_txn_rate_non_negative'),
        Index('ix_stock_txn_item_date', 'item_id', 'transaction_date', 'id'),
        Index('ix_stock_txn_reference', 'reference_type', 'reference_id'),
    )

    @validates('quantity')
    def validate_quantity(self, key, value):
        if value is not None and value <= 0:
            raise ValueError("Ledger quantity must be positive")
        return value


# =============================================================================
# PRODUCTION EVENTS
# =============================================================================

class ScrapGRN(Base):
    """Goods Receipt Note for purchased raw material"""
    __tablename__ = "scrap_grn"

    id = Column(Integer, primary_key=True, index=True)
    grn_no = Column(String(50), unique=True, nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    invoice_no = Column(String(50), nullable=False)
    invoice_date = Column(Date, nullable=False)
    vehicle_no = Column(String(30), nullable=True)
    total_amount = Column(Numeric(18, 2), nullable=False, default=0)
    cgst = Column(Numeric(15, 2), nullable=False, default=0)
    sgst = Column(Numeric(15, 2), nullable=False, default=0)
    igst = Column(Numeric(15, 2), nullable=False, default=0)
    invoice_total = Column(Numeric(18, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    supplier = relationship("Supplier")
    items = relationship(
        "ScrapGRNItem", back_populates="grn",
        cascade="all, delete-orphan", order_by="ScrapGRNItem.id"
    )


class ScrapGRNItem(Base):
    __tablename__ = "scrap_grn_items"

    id = Column(Integer, primary_key=True, index=True)
    grn_id = Column(Integer, ForeignKey("scrap_grn.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    rate = Column(Numeric(15, 2), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)

    grn = relationship("ScrapGRN", back_populates="items")
    item = relationship("Item")


class MeltingProcess(Base):
    """One heat in the furnace: consumes scrap and minerals"""
    __tablename__ = "melting_processes"

    id = Column(Integer, primary_key=True, index=True)
    melting_date = Column(Date, nullable=False)
    heat_no = Column(String(30), nullable=False)
    temperature = Column(Numeric(8, 2), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    consumptions = relationship(
        "MeltingConsumption", back_populates="melting_process",
        cascade="all, delete-orphan", order_by="MeltingConsumption.id"
    )

    __table_args__ = (
        UniqueConstraint('melting_date', 'heat_no', name='uq_melting_date_heat'),
    )


class MeltingConsumption(Base):
    __tablename__ = "melting_consumptions"

    id = Column(Integer, primary_key=True, index=True)
    melting_process_id = Column(Integer, ForeignKey("melting_processes.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)

    melting_process = relationship("MeltingProcess", back_populates="consumptions")
    item = relationship("Item")


class HeatTreatment(Base):
    """Converts WIP into bagged finished goods"""
    __tablename__ = "heat_treatment"

    id = Column(Integer, primary_key=True, index=True)
    treatment_date = Column(Date, nullable=False)
    furnace_no = Column(Integer, nullable=False)
    size_item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    time_in = Column(Time, nullable=False)
    time_out = Column(Time, nullable=False)
    temperature = Column(Numeric(8, 2), nullable=False)
    bags_produced = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    size_item = relationship("Item")

    __table_args__ = (
        CheckConstraint('furnace_no BETWEEN 1 AND 6', name='ck_ht_furnace_range'),
        CheckConstraint('bags_produced > 0', name='ck_ht_bags_positive'),
    )

"""
Services package initialization.
Business logic layer for order fulfillment and the stock ledger.
"""

from .gst import GSTSplit, money, split_gst, is_same_state
from .numbering import next_document_number
from .stock_ledger import LedgerEntry, StockLedger, to_decimal, to_quantity
from .order_service import OrderFulfillmentService, OrderLineInput, DispatchLineInput
from .production_service import (
    ProductionEventService,
    GRNLineInput,
    ConsumptionInput,
    HeatTreatmentInput,
    ResolvedRate,
    resolve_rate,
)
from .stock_statement import StockStatementService, derived_rate
from .stock_reports import StockReportService, movement_label

__all__ = [
    'GSTSplit',
    'money',
    'split_gst',
    'is_same_state',
    'next_document_number',
    'LedgerEntry',
    'StockLedger',
    'to_decimal',
    'to_quantity',
    'OrderFulfillmentService',
    'OrderLineInput',
    'DispatchLineInput',
    'ProductionEventService',
    'GRNLineInput',
    'ConsumptionInput',
    'HeatTreatmentInput',
    'ResolvedRate',
    'resolve_rate',
    'StockStatementService',
    'derived_rate',
    'StockReportService',
    'movement_label',
]

"""
GST split for a taxable amount.

Intra-state trade pays CGST + SGST (half each); inter-state trade pays IGST.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple, Optional

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal('0.01')


class GSTSplit(NamedTuple):
    cgst: Decimal
    sgst: Decimal
    igst: Decimal

    @property
    def total(self) -> Decimal:
        return self.cgst + self.sgst + self.igst


def money(value) -> Decimal:
    """Round to paise"""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _normalize_state(state: Optional[str]) -> str:
    return " ".join((state or "").split()).casefold()


def is_same_state(party_state: Optional[str], company_state: Optional[str]) -> bool:
    party = _normalize_state(party_state)
    return bool(party) and party == _normalize_state(company_state)


def split_gst(
    party_state: Optional[str],
    company_state: str,
    base_amount,
    gst_rate_percent,
) -> GSTSplit:
    """
    Split the GST on ``base_amount`` by counter-party state.

    A missing or blank party state is treated as a different state (IGST).
    """
    gst_amount = Decimal(str(base_amount)) * Decimal(str(gst_rate_percent)) / Decimal('100')

    if not _normalize_state(party_state):
        logger.warning("Counter-party state missing; applying IGST")

    if is_same_state(party_state, company_state):
        half = money(gst_amount / 2)
        return GSTSplit(cgst=half, sgst=half, igst=Decimal('0.00'))

    return GSTSplit(cgst=Decimal('0.00'), sgst=Decimal('0.00'), igst=money(gst_amount))

import logging
from decimal import Decimal

import pytest

from steelmelt_core.app.services.gst import is_same_state, money, split_gst


class TestSplitGST:

    def test_same_state_splits_cgst_and_sgst(self):
        gst = split_gst("Maharashtra", "Maharashtra", Decimal("100"), Decimal("18"))

        assert gst.cgst == Decimal("9.00")
        assert gst.sgst == Decimal("9.00")
        assert gst.igst == Decimal("0.00")
        assert gst.total == Decimal("18.00")

    def test_different_state_charges_igst(self):
        gst = split_gst("Gujarat", "Maharashtra", Decimal("100"), Decimal("18"))

        assert gst.cgst == Decimal("0.00")
        assert gst.sgst == Decimal("0.00")
        assert gst.igst == Decimal("18.00")

    def test_state_match_ignores_case_and_whitespace(self):
        assert is_same_state("  maharashtra ", "Maharashtra")
        assert is_same_state("Tamil  Nadu", "tamil nadu")
        assert not is_same_state("Karnataka", "Maharashtra")

    @pytest.mark.parametrize("state", [None, "", "   "])
    def test_blank_state_is_treated_as_interstate(self, state, caplog):
        with caplog.at_level(logging.WARNING):
            gst = split_gst(state, "Maharashtra", Decimal("100"), Decimal("18"))

        assert gst.igst == Decimal("18.00")
        assert gst.cgst == gst.sgst == Decimal("0.00")
        assert "state missing" in caplog.text

    def test_halves_are_rounded_to_paise(self):
        # 12% of 10.45 = 1.254 -> 0.627 each half
        gst = split_gst("Maharashtra", "Maharashtra", Decimal("10.45"), Decimal("12"))

        assert gst.cgst == Decimal("0.63")
        assert gst.sgst == Decimal("0.63")

    def test_order_scenario_amounts(self):
        gst = split_gst("Maharashtra", "Maharashtra", Decimal("5000"), Decimal("18"))

        assert gst.cgst == gst.sgst == Decimal("450.00")


def test_money_rounds_half_up():
    assert money("2.345") == Decimal("2.35")
    assert money(Decimal("2.344")) == Decimal("2.34")
    assert money(7) == Decimal("7.00")

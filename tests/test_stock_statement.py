import random
from datetime import date, timedelta
from decimal import Decimal
from io import BytesIO

import pandas as pd
import pytest

from steelmelt_core.app.db import transaction
from steelmelt_core.app.errors import ValidationError
from steelmelt_core.app.models import TransactionType
from steelmelt_core.app.services import LedgerEntry, derived_rate


def record(db, ledger, item_id, txn_type, quantity, rate, on):
    with transaction(db):
        ledger.record(LedgerEntry(on, txn_type, item_id, Decimal(quantity), Decimal(rate)))


def row_for(statement, item_id):
    return next(r for r in statement["items"] if r["item_id"] == item_id)


class TestStatementScenario:
    """Opening 100 @ 20 before the window, receipt 50 @ 22 and issue 30 inside it"""

    @pytest.fixture
    def history(self, db, ledger, masters):
        record(db, ledger, masters.scrap_id, TransactionType.OPENING, "100", "20", date(2025, 3, 15))
        record(db, ledger, masters.scrap_id, TransactionType.RECEIPT, "50", "22", date(2025, 4, 5))
        record(db, ledger, masters.scrap_id, TransactionType.ISSUE, "30", "20", date(2025, 4, 10))

    def test_quantities_and_amounts(self, statement_service, history, masters):
        statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30))

        row = row_for(statement, masters.scrap_id)
        assert row["opening_qty"] == Decimal("100.000")
        assert row["opening_amount"] == Decimal("2000.00")
        assert row["receipt_qty"] == Decimal("50.000")
        assert row["receipt_amount"] == Decimal("1100.00")
        assert row["issue_qty"] == Decimal("30.000")
        assert row["issue_amount"] == Decimal("600.00")
        assert row["closing_qty"] == Decimal("120.000")
        assert row["closing_amount"] == Decimal("2500.00")
        assert row["opening_rate"] == Decimal("20.00")
        assert row["receipt_rate"] == Decimal("22.00")
        assert row["closing_rate"] == Decimal("20.83")
        assert row["category_name"] == "Raw Material"

    def test_window_edges_are_inclusive(self, statement_service, history, masters):
        statement = statement_service.generate(date(2025, 4, 5), date(2025, 4, 10))

        row = row_for(statement, masters.scrap_id)
        assert row["receipt_qty"] == Decimal("50.000")
        assert row["issue_qty"] == Decimal("30.000")

    def test_opening_inside_window_counts_as_receipt(self, statement_service, history, masters):
        statement = statement_service.generate(date(2025, 3, 1), date(2025, 3, 31))

        row = row_for(statement, masters.scrap_id)
        assert row["opening_qty"] == Decimal("0.000")
        assert row["receipt_qty"] == Decimal("100.000")
        assert row["closing_qty"] == Decimal("100.000")

    def test_rows_after_the_window_are_ignored(self, statement_service, history, masters):
        statement = statement_service.generate(date(2025, 3, 1), date(2025, 4, 7))

        row = row_for(statement, masters.scrap_id)
        assert row["issue_qty"] == Decimal("0.000")
        assert row["closing_qty"] == Decimal("150.000")

    def test_same_call_twice_gives_same_result(self, statement_service, history):
        first = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30))
        second = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30))

        assert first == second

    def test_totals(self, db, ledger, statement_service, history, masters):
        record(db, ledger, masters.carbon_id, TransactionType.RECEIPT, "10", "80", date(2025, 4, 6))

        statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30))

        totals = statement["totals"]
        assert totals["receipt_qty"] == Decimal("60.000")
        assert totals["receipt_amount"] == Decimal("1900.00")
        assert totals["receipt_rate"] == Decimal("31.67")
        assert totals["closing_qty"] == Decimal("130.000")
        assert statement["filters"]["start_date"] == "2025-04-01"


class TestStatementFilters:

    def test_items_without_movement_are_omitted_by_default(self, db, ledger, statement_service, masters):
        record(db, ledger, masters.scrap_id, TransactionType.RECEIPT, "10", "30", date(2025, 4, 2))

        statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30))

        assert [r["item_id"] for r in statement["items"]] == [masters.scrap_id]

    def test_include_zero_lists_every_item(self, db, ledger, statement_service, masters):
        record(db, ledger, masters.scrap_id, TransactionType.RECEIPT, "10", "30", date(2025, 4, 2))

        statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30), include_zero=True)

        assert len(statement["items"]) == 5
        carbon = row_for(statement, masters.carbon_id)
        assert carbon["closing_qty"] == Decimal("0.000")
        assert carbon["closing_rate"] == Decimal("0.00")

    def test_category_filter_keeps_zero_rows(self, statement_service, masters):
        statement = statement_service.generate(
            date(2025, 4, 1), date(2025, 4, 30), category_id=masters.finished_category_id
        )

        assert sorted(r["item_id"] for r in statement["items"]) == sorted([masters.shot_id, masters.grit_id])
        assert statement["totals"]["closing_rate"] == Decimal("0.00")

    def test_ordered_by_category_then_item(self, statement_service, masters):
        statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30), include_zero=True)

        keys = [(r["category_name"], r["item_name"]) for r in statement["items"]]
        assert keys == sorted(keys)

    def test_end_before_start(self, statement_service, masters):
        with pytest.raises(ValidationError) as exc:
            statement_service.generate(date(2025, 4, 30), date(2025, 4, 1))
        assert exc.value.field == "endDate"

    def test_single_day_window(self, statement_service, masters):
        statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 1))
        assert statement["items"] == []


def test_conservation_over_random_histories(db, ledger, statement_service, masters):
    """closing = opening + receipt - issue, for every item and several windows"""
    rng = random.Random(20250401)
    items = [masters.scrap_id, masters.carbon_id, masters.shot_id]
    start = date(2025, 1, 1)
    with transaction(db):
        for _ in range(120):
            ledger.record(LedgerEntry(
                start + timedelta(days=rng.randint(0, 150)),
                rng.choice(list(TransactionType)),
                rng.choice(items),
                Decimal(rng.randint(1, 50000)) / 100,
                Decimal(rng.randint(0, 9000)) / 100,
            ))

    for _ in range(10):
        window_start = start + timedelta(days=rng.randint(0, 150))
        window_end = window_start + timedelta(days=rng.randint(0, 60))
        statement = statement_service.generate(window_start, window_end, include_zero=True)
        for r in statement["items"]:
            assert r["closing_qty"] == r["opening_qty"] + r["receipt_qty"] - r["issue_qty"]
            assert r["closing_amount"] == r["opening_amount"] + r["receipt_amount"] - r["issue_amount"]
        totals = statement["totals"]
        assert totals["closing_qty"] == totals["opening_qty"] + totals["receipt_qty"] - totals["issue_qty"]


def test_derived_rate_guards_zero_quantity():
    assert derived_rate(Decimal("100.00"), Decimal("0")) == Decimal("0.00")
    assert derived_rate(Decimal("100.00"), Decimal("3")) == Decimal("33.33")


def test_excel_export_has_a_row_per_item_and_totals(db, ledger, statement_service, masters):
    record(db, ledger, masters.scrap_id, TransactionType.RECEIPT, "10", "30", date(2025, 4, 2))
    statement = statement_service.generate(date(2025, 4, 1), date(2025, 4, 30))

    content = statement_service.export_excel(statement)

    df = pd.read_excel(BytesIO(content), engine="openpyxl")
    assert list(df["Item"].fillna("")) == ["MS Scrap", ""]
    assert df.iloc[-1]["Category"] == "TOTAL"
    assert df.iloc[0]["Receipt Qty"] == 10

"""Unit tests for the unpaid invoice engine."""

from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.services import unpaid_invoices as engine


TODAY = date(2025, 3, 10)


def make_invoice(id=1, invoice_no="INV-1", total="100", balance="100", invoice_date="2025-03-01", due_date=None):
    return SimpleNamespace(
        id=id,
        invoice_no=invoice_no,
        total_billed=total,
        balance_due=balance,
        invoice_date=invoice_date,
        due_date=due_date,
    )


class TestNormalizeDate:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("2025-03-01", "2025-03-01"),
            ("03/15/2025", "2025-03-15"),
            ("March 5, 2025", "2025-03-05"),
            (date(2025, 1, 2), "2025-01-02"),
            (datetime(2025, 1, 2, 15, 30), "2025-01-02"),
            ("", ""),
            (None, ""),
            ("   ", ""),
            ("not a date", ""),
            ("2025-13-45", ""),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert engine.normalize_date(raw) == expected


class TestParseAmount:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1250.50", Decimal("1250.50")),
            ("$1,250.00", Decimal("1250.00")),
            (12.5, Decimal("12.5")),
            (7, Decimal("7")),
            (Decimal("3.10"), Decimal("3.10")),
            ("-40", Decimal("-40")),
        ],
    )
    def test_parses(self, raw, expected):
        assert engine.parse_amount(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [None, "", "abc", "N/A", "nan", "Infinity", True, False, float("nan"), float("inf"), float("-inf"), Decimal("NaN")],
    )
    def test_falls_back_to_default(self, raw):
        assert engine.parse_amount(raw) == Decimal("0")
        assert engine.parse_amount(raw, default=None) is None


class TestClassifyDueDate:
    def test_past_due_is_overdue(self):
        status = engine.classify_due_date("2025-03-05", TODAY)
        assert status.remaining_days == -5
        assert status.text == "5 days overdue"
        assert status.is_overdue

    def test_due_today_counts_as_overdue(self):
        status = engine.classify_due_date("2025-03-10", TODAY)
        assert status.remaining_days == 0
        assert status.text == "Due today"
        assert status.is_overdue

    def test_future_due_is_incoming(self):
        status = engine.classify_due_date("2025-03-25", TODAY)
        assert status.remaining_days == 15
        assert status.text == "15 days"
        assert not status.is_overdue

    def test_missing_due_date_is_incoming(self):
        status = engine.classify_due_date("", TODAY)
        assert status.remaining_days is None
        assert status.text == "N/A"
        assert not status.is_overdue


class TestBuildUnpaidReport:
    def test_skips_settled_invoices_and_splits_totals(self):
        invoices = [
            make_invoice(id=1, invoice_no="A", balance="100", due_date="2025-03-01"),
            make_invoice(id=2, invoice_no="B", balance="$50.25", due_date="2025-04-01"),
            make_invoice(id=3, invoice_no="C", balance="0", due_date="2025-02-01"),
            make_invoice(id=4, invoice_no="D", balance="-5", due_date="2025-02-01"),
            make_invoice(id=5, invoice_no="E", balance="", due_date="2025-02-01"),
        ]
        report = engine.build_unpaid_report(invoices, today=TODAY)

        assert [row.invoice_no for row in report.rows] == ["A", "B"]
        assert report.totals.overdue == Decimal("100")
        assert report.totals.incoming == Decimal("50.25")
        assert report.totals.total == Decimal("150.25")

    def test_rows_sorted_by_due_date_with_undated_last(self):
        invoices = [
            make_invoice(id=1, invoice_no="no-due", due_date=None),
            make_invoice(id=2, invoice_no="late", due_date="04/01/2025"),
            make_invoice(id=3, invoice_no="early", due_date="2025-03-01"),
        ]
        report = engine.build_unpaid_report(invoices, today=TODAY)

        assert [row.invoice_no for row in report.rows] == ["early", "late", "no-due"]
        undated = report.rows[-1]
        assert undated.due_date == "N/A"
        assert undated.due_date_sort == engine.FALLBACK_DUE_DATE
        assert undated.remaining_days_text == "N/A"

    def test_date_range_uses_invoice_date(self):
        invoices = [
            make_invoice(id=1, invoice_no="before", invoice_date="2024-12-31"),
            make_invoice(id=2, invoice_no="start", invoice_date="2025-01-01"),
            make_invoice(id=3, invoice_no="end", invoice_date="01/31/2025"),
            make_invoice(id=4, invoice_no="after", invoice_date="2025-02-01"),
            make_invoice(id=5, invoice_no="undated", invoice_date=""),
        ]
        report = engine.build_unpaid_report(
            invoices,
            today=TODAY,
            start=date(2025, 1, 1),
            end=date(2025, 1, 31),
        )
        assert sorted(row.invoice_no for row in report.rows) == ["end", "start"]

    def test_undated_invoice_included_without_range(self):
        report = engine.build_unpaid_report([make_invoice(invoice_date=None)], today=TODAY)
        assert len(report.rows) == 1
        assert report.rows[0].invoice_date == "N/A"

    def test_blank_number_falls_back_to_record_id(self):
        report = engine.build_unpaid_report(
            [make_invoice(id=42, invoice_no="")],
            today=TODAY,
            base_url="https://example.com/",
        )
        row = report.rows[0]
        assert row.invoice_no == "Post #42"
        assert row.permalink == "https://example.com/invoices/42"

    def test_links_can_be_left_out(self):
        report = engine.build_unpaid_report([make_invoice(id=42)], today=TODAY, with_links=False)
        assert report.rows[0].permalink is None


class TestFilterAndSort:
    @pytest.fixture
    def rows(self):
        invoices = [
            make_invoice(id=1, invoice_no="inv-b", total="300", balance="30", invoice_date="2025-01-03", due_date="2025-03-01"),
            make_invoice(id=2, invoice_no="INV-A", total="100", balance="10", invoice_date="2025-01-01", due_date="2025-04-01"),
            make_invoice(id=3, invoice_no="inv-c", total="200", balance="20", invoice_date="", due_date=None),
        ]
        return engine.build_unpaid_report(invoices, today=TODAY).rows

    def test_filter(self, rows):
        assert [r.invoice_no for r in engine.filter_rows(rows, "overdue")] == ["inv-b"]
        assert [r.invoice_no for r in engine.filter_rows(rows, "incoming")] == ["INV-A", "inv-c"]
        assert len(engine.filter_rows(rows, "all")) == 3

    def test_unknown_filter_rejected(self, rows):
        with pytest.raises(ValueError):
            engine.filter_rows(rows, "paid")

    def test_sort_invoice_no_is_case_insensitive(self, rows):
        result = engine.sort_rows(rows, "invoice_no", "asc")
        assert [r.invoice_no for r in result] == ["INV-A", "inv-b", "inv-c"]

    def test_sort_remaining_days_puts_missing_last(self, rows):
        result = engine.sort_rows(rows, "remaining_days", "asc")
        assert [r.invoice_no for r in result] == ["inv-b", "INV-A", "inv-c"]
        result = engine.sort_rows(rows, "remaining_days", "desc")
        assert [r.invoice_no for r in result] == ["inv-c", "INV-A", "inv-b"]

    def test_sort_invoice_date_puts_empty_first(self, rows):
        result = engine.sort_rows(rows, "invoice_date", "asc")
        assert [r.invoice_no for r in result] == ["inv-c", "INV-A", "inv-b"]

    def test_sort_amounts(self, rows):
        assert [r.invoice_no for r in engine.sort_rows(rows, "balance_due", "desc")] == ["inv-b", "inv-c", "INV-A"]
        assert [r.invoice_no for r in engine.sort_rows(rows, "total_billed", "asc")] == ["INV-A", "inv-c", "inv-b"]

    def test_sort_is_stable(self):
        invoices = [
            make_invoice(id=i, invoice_no=f"N{i}", balance="10", due_date="2025-03-20")
            for i in range(5)
        ]
        rows = engine.build_unpaid_report(invoices, today=TODAY).rows
        result = engine.sort_rows(rows, "balance_due", "asc")
        assert [r.invoice_no for r in result] == ["N0", "N1", "N2", "N3", "N4"]

    @pytest.mark.parametrize("key,direction", [("customer", "asc"), ("due_date", "sideways")])
    def test_rejects_unknown_sort(self, rows, key, direction):
        with pytest.raises(ValueError):
            engine.sort_rows(rows, key, direction)


class TestPagination:
    @pytest.fixture
    def rows(self):
        invoices = [make_invoice(id=i, invoice_no=f"N{i}", due_date="2025-03-20") for i in range(7)]
        return engine.build_unpaid_report(invoices, today=TODAY).rows

    def test_pages(self, rows):
        page = engine.paginate(rows, 2, 3)
        assert [r.invoice_no for r in page.items] == ["N3", "N4", "N5"]
        assert page.total_pages == 3
        assert (page.first_index, page.last_index) == (4, 6)

    def test_out_of_range_page_is_clamped(self, rows):
        page = engine.paginate(rows, 9, 3)
        assert page.page == 3
        assert [r.invoice_no for r in page.items] == ["N6"]
        assert (page.first_index, page.last_index) == (7, 7)

    def test_empty(self):
        page = engine.paginate([], 1, 50)
        assert page.items == []
        assert page.total_pages == 1
        assert (page.first_index, page.last_index) == (0, 0)
        assert page.page_numbers == []

    @pytest.mark.parametrize(
        "current,total,expected",
        [
            (1, 1, []),
            (2, 3, [1, 2, 3]),
            (1, 10, [1, 2, 3, 4, 5, None, 10]),
            (4, 10, [1, 2, 3, 4, 5, 6, None, 10]),
            (5, 10, [1, None, 3, 4, 5, 6, 7, None, 10]),
            (10, 10, [1, None, 6, 7, 8, 9, 10]),
        ],
    )
    def test_page_window(self, current, total, expected):
        assert engine.page_window(current, total) == expected


def test_render_csv():
    invoices = [
        make_invoice(id=1, invoice_no="INV-1", total="1250", balance="1,000.5", invoice_date="2025-03-01", due_date="2025-03-10"),
        make_invoice(id=2, invoice_no="INV, 2", total="80", balance="80", invoice_date="", due_date=None),
    ]
    rows = engine.build_unpaid_report(invoices, today=TODAY).rows
    assert engine.render_csv(rows) == (
        "Invoice #,Amount,Balance,Invoice Date,Due Date,Remaining Days\n"
        "INV-1,1250.00,1000.50,2025-03-01,2025-03-10,Due today\n"
        '"INV, 2",80.00,80.00,N/A,N/A,N/A\n'
    )
    assert engine.csv_filename(TODAY) == "unpaid-invoices-2025-03-10.csv"

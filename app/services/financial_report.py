"""Per-engineer financial report over invoices linked to work orders."""

from __future__ import annotations

import calendar
import csv
import io
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Literal, Optional

from app.services.unpaid_invoices import format_amount, normalize_date, parse_amount


ReportType = Literal["monthly", "quarterly", "yearly"]

LABOR_ACTIVITIES = frozenset({"labor rate hr"})
TRAVEL_ACTIVITIES = frozenset({"travel zone 1", "travel zone 2", "travel zone 3"})
TOLLS_MEALS_ACTIVITIES = frozenset({"toll, meals, parking"})

CSV_HEADER = [
    "Engineer",
    "Total Invoices",
    "Invoice Amount",
    "Labor Cost",
    "Direct Labor Cost",
    "Travel Cost",
    "Toll/Meals/Parking",
    "Profit",
]

_ZERO = Decimal("0")


def compute_date_range(
    report: str,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
) -> tuple[date, date]:
    """Inclusive start and end dates of a reporting period."""
    if report == "yearly":
        return date(year, 1, 1), date(year, 12, 31)
    if report == "quarterly":
        q = quarter or 1
        if not 1 <= q <= 4:
            raise ValueError(f"Invalid quarter: {q}")
        first_month = (q - 1) * 3 + 1
        last_month = first_month + 2
        return date(year, first_month, 1), date(year, last_month, calendar.monthrange(year, last_month)[1])
    if report == "monthly":
        m = month or 1
        if not 1 <= m <= 12:
            raise ValueError(f"Invalid month: {m}")
        return date(year, m, 1), date(year, m, calendar.monthrange(year, m)[1])
    raise ValueError(f"Unknown report type: {report}")


def period_label(
    report: str,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
) -> str:
    if report == "yearly":
        return str(year)
    if report == "quarterly":
        return f"Q{quarter or 1} {year}"
    return f"{calendar.month_name[month or 1]} {year}"


def report_filename(
    report: str,
    year: int,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
) -> str:
    suffix = ""
    if report == "monthly":
        suffix = f"-{month or 1}"
    elif report == "quarterly":
        suffix = f"-Q{quarter or 1}"
    return f"financial-report-{report}-{year}{suffix}.csv"


@dataclass
class ReportInvoice:
    invoice_id: str
    date: str
    number: str
    amount: Decimal


@dataclass
class EngineerRow:
    engineer_id: str
    engineer: str
    count: int = 0
    invoice_amount: Decimal = _ZERO
    labor_cost: Decimal = _ZERO
    travel_cost: Decimal = _ZERO
    tolls_meals: Decimal = _ZERO
    direct_labor: Decimal = _ZERO
    invoices: list[ReportInvoice] = field(default_factory=list)

    @property
    def profit(self) -> Decimal:
        return self.invoice_amount - self.direct_labor


@dataclass
class ReportTotals:
    count: int = 0
    invoice_amount: Decimal = _ZERO
    labor_cost: Decimal = _ZERO
    travel_cost: Decimal = _ZERO
    tolls_meals: Decimal = _ZERO
    direct_labor: Decimal = _ZERO

    @property
    def profit(self) -> Decimal:
        return self.invoice_amount - self.direct_labor


@dataclass
class FinancialReport:
    start: date
    end: date
    rows: list[EngineerRow] = field(default_factory=list)
    totals: ReportTotals = field(default_factory=ReportTotals)


def aggregate(
    invoices: Iterable[Any],
    start: date,
    end: date,
    *,
    engineer_id: Optional[str] = None,
) -> FinancialReport:
    """Group invoices dated inside ``[start, end]`` by their work order's engineer.

    Invoices without a primary work order, or whose work order has no
    engineer, are left out.
    """
    start_iso, end_iso = start.isoformat(), end.isoformat()
    by_engineer: dict[str, EngineerRow] = {}

    for invoice in invoices:
        invoice_date = normalize_date(invoice.invoice_date)
        if not invoice_date or invoice_date < start_iso or invoice_date > end_iso:
            continue
        work_order = invoice.primary_work_order
        engineer = work_order.engineer if work_order is not None else None
        if engineer is None:
            continue
        key = str(engineer.id)
        if engineer_id is not None and key != str(engineer_id):
            continue

        row = by_engineer.get(key)
        if row is None:
            row = by_engineer[key] = EngineerRow(engineer_id=key, engineer=engineer.display_name)

        amount = parse_amount(invoice.total_billed)
        row.count += 1
        row.invoice_amount += amount
        for line in invoice.lines:
            activity = (line.activity or "").strip().lower()
            if activity in LABOR_ACTIVITIES:
                row.labor_cost += parse_amount(line.amount)
            elif activity in TRAVEL_ACTIVITIES:
                row.travel_cost += parse_amount(line.amount)
            elif activity in TOLLS_MEALS_ACTIVITIES:
                row.tolls_meals += parse_amount(line.amount)
        for expense in invoice.expenses:
            row.direct_labor += parse_amount(expense.amount)
        row.invoices.append(
            ReportInvoice(
                invoice_id=str(invoice.id),
                date=invoice_date,
                number=invoice.invoice_no or "",
                amount=amount,
            )
        )

    report = FinancialReport(start=start, end=end)
    report.rows = sorted(by_engineer.values(), key=lambda r: r.engineer.casefold())
    for row in report.rows:
        row.invoices.sort(key=lambda item: item.date)
        report.totals.count += row.count
        report.totals.invoice_amount += row.invoice_amount
        report.totals.labor_cost += row.labor_cost
        report.totals.travel_cost += row.travel_cost
        report.totals.tolls_meals += row.tolls_meals
        report.totals.direct_labor += row.direct_labor
    return report


def render_csv(report: FinancialReport) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in report.rows:
        writer.writerow(_csv_values(row.engineer, row))
    writer.writerow(_csv_values("Totals", report.totals))
    return buffer.getvalue()


def _csv_values(label: str, item: Any) -> list[str]:
    return [
        label,
        str(item.count),
        format_amount(item.invoice_amount),
        format_amount(item.labor_cost),
        format_amount(item.direct_labor),
        format_amount(item.travel_cost),
        format_amount(item.tolls_meals),
        format_amount(item.profit),
    ]

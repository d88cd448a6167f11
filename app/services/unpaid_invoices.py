"""Unpaid invoice aggregation shared by the financial and balance views.

Both views read the same local invoice records, classify each unpaid invoice
as overdue or incoming relative to "today", and present the rows filtered,
sorted, paginated or exported as CSV.
"""

from __future__ import annotations

import csv
import io
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Literal, Optional, Sequence

from dateutil import parser as date_parser


FilterName = Literal["all", "overdue", "incoming"]
SortKey = Literal[
    "invoice_no",
    "invoice_date",
    "due_date",
    "remaining_days",
    "balance_due",
    "total_billed",
]
SortDirection = Literal["asc", "desc"]

SORT_KEYS: tuple[str, ...] = (
    "invoice_no",
    "invoice_date",
    "due_date",
    "remaining_days",
    "balance_due",
    "total_billed",
)

FALLBACK_DUE_DATE = "9999-12-31"
FALLBACK_REMAINING_DAYS = 999999
NOT_AVAILABLE = "N/A"
CSV_HEADER = ["Invoice #", "Amount", "Balance", "Invoice Date", "Due Date", "Remaining Days"]

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_NON_NUMERIC_CHARS_RE = re.compile(r"[^0-9.\-]")
_CENTS = Decimal("0.01")
_ZERO = Decimal("0")


def normalize_date(raw: Any) -> str:
    """Return ``raw`` as ``YYYY-MM-DD`` or an empty string when it is not a date."""
    if raw is None or raw == "":
        return ""
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw).strip()
    if not text:
        return ""
    if _ISO_DATE_RE.match(text):
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            return ""
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return ""
    return parsed.date().isoformat()


def parse_amount(value: Any, default: Optional[Decimal] = _ZERO) -> Optional[Decimal]:
    """Parse a stored amount, tolerating currency formatting such as ``$1,250.00``."""
    if value is None or value == "" or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else default
    text = str(value).strip()
    if not _NUMERIC_RE.match(text):
        text = _NON_NUMERIC_CHARS_RE.sub("", text)
        if not _NUMERIC_RE.match(text):
            return default
    try:
        return Decimal(text)
    except InvalidOperation:
        return default


def format_amount(value: Decimal) -> str:
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class DueStatus:
    remaining_days: Optional[int]
    text: str
    is_overdue: bool


def classify_due_date(due_date: str, today: date) -> DueStatus:
    """Classify a normalized due date; invoices due today count as overdue."""
    if not due_date:
        return DueStatus(remaining_days=None, text=NOT_AVAILABLE, is_overdue=False)
    diff = (date.fromisoformat(due_date) - today).days
    if diff < 0:
        return DueStatus(remaining_days=diff, text=f"{abs(diff)} days overdue", is_overdue=True)
    if diff == 0:
        return DueStatus(remaining_days=0, text="Due today", is_overdue=True)
    return DueStatus(remaining_days=diff, text=f"{diff} days", is_overdue=False)


@dataclass
class UnpaidInvoiceRow:
    invoice_id: str
    invoice_no: str
    total_billed: Decimal
    balance_due: Decimal
    invoice_date: str
    invoice_date_sort: str
    due_date: str
    due_date_sort: str
    remaining_days: Optional[int]
    remaining_days_text: str
    is_overdue: bool
    permalink: Optional[str] = None


@dataclass
class UnpaidTotals:
    overdue: Decimal = _ZERO
    incoming: Decimal = _ZERO

    @property
    def total(self) -> Decimal:
        return self.overdue + self.incoming


@dataclass
class UnpaidInvoiceReport:
    rows: list[UnpaidInvoiceRow] = field(default_factory=list)
    totals: UnpaidTotals = field(default_factory=UnpaidTotals)


def build_unpaid_report(
    invoices: Iterable[Any],
    *,
    today: date,
    start: Optional[date] = None,
    end: Optional[date] = None,
    base_url: Optional[str] = None,
    with_links: bool = True,
) -> UnpaidInvoiceReport:
    """Collect invoices with an outstanding balance.

    ``invoices`` are records exposing ``id``, ``invoice_no``, ``total_billed``,
    ``balance_due``, ``invoice_date`` and ``due_date``. When ``start`` or
    ``end`` is given, only invoices whose invoice date falls inside the
    inclusive range are considered. Rows come back ordered by due date, soonest
    first, with undated invoices last.
    Rows link to the invoice detail route only when ``with_links`` is set.
    """
    start_iso = start.isoformat() if start else None
    end_iso = end.isoformat() if end else None
    report = UnpaidInvoiceReport()

    for invoice in invoices:
        invoice_date_sort = normalize_date(invoice.invoice_date)
        if start_iso is not None or end_iso is not None:
            if not invoice_date_sort:
                continue
            if start_iso is not None and invoice_date_sort < start_iso:
                continue
            if end_iso is not None and invoice_date_sort > end_iso:
                continue

        balance_due = parse_amount(invoice.balance_due)
        if balance_due <= 0:
            continue

        due_date_sort = normalize_date(invoice.due_date)
        due = classify_due_date(due_date_sort, today)
        if due.is_overdue:
            report.totals.overdue += balance_due
        else:
            report.totals.incoming += balance_due

        invoice_id = str(invoice.id)
        report.rows.append(
            UnpaidInvoiceRow(
                invoice_id=invoice_id,
                invoice_no=invoice.invoice_no or f"Post #{invoice_id}",
                total_billed=parse_amount(invoice.total_billed),
                balance_due=balance_due,
                invoice_date=invoice.invoice_date or NOT_AVAILABLE,
                invoice_date_sort=invoice_date_sort,
                due_date=invoice.due_date or NOT_AVAILABLE,
                due_date_sort=due_date_sort or FALLBACK_DUE_DATE,
                remaining_days=due.remaining_days,
                remaining_days_text=due.text,
                is_overdue=due.is_overdue,
                permalink=build_permalink(base_url, invoice_id) if with_links else None,
            )
        )

    report.rows.sort(key=lambda row: row.due_date_sort)
    return report


def build_permalink(base_url: Optional[str], invoice_id: str) -> str:
    prefix = (base_url or "").rstrip("/")
    return f"{prefix}/invoices/{invoice_id}"


def filter_rows(rows: Sequence[UnpaidInvoiceRow], filter_name: str) -> list[UnpaidInvoiceRow]:
    if filter_name == "all":
        return list(rows)
    if filter_name == "overdue":
        return [row for row in rows if row.is_overdue]
    if filter_name == "incoming":
        return [row for row in rows if not row.is_overdue]
    raise ValueError(f"Unknown filter: {filter_name}")


def _sort_value(row: UnpaidInvoiceRow, key: str) -> Any:
    if key == "invoice_no":
        return row.invoice_no.casefold()
    if key == "invoice_date":
        return row.invoice_date_sort
    if key == "due_date":
        return row.due_date_sort or FALLBACK_DUE_DATE
    if key == "remaining_days":
        return row.remaining_days if row.remaining_days is not None else FALLBACK_REMAINING_DAYS
    if key == "balance_due":
        return row.balance_due
    if key == "total_billed":
        return row.total_billed
    raise ValueError(f"Unknown sort key: {key}")


def sort_rows(
    rows: Sequence[UnpaidInvoiceRow],
    key: str = "due_date",
    direction: str = "asc",
) -> list[UnpaidInvoiceRow]:
    if key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {key}")
    if direction not in ("asc", "desc"):
        raise ValueError(f"Unknown sort direction: {direction}")
    return sorted(rows, key=lambda row: _sort_value(row, key), reverse=direction == "desc")


@dataclass
class Page:
    items: list[UnpaidInvoiceRow]
    page: int
    per_page: int
    total_items: int
    total_pages: int
    first_index: int
    last_index: int
    page_numbers: list[Optional[int]]


def paginate(rows: Sequence[UnpaidInvoiceRow], page: int, per_page: int) -> Page:
    if per_page < 1:
        raise ValueError("per_page must be >= 1")
    total_items = len(rows)
    total_pages = max(math.ceil(total_items / per_page), 1)
    current = min(max(page, 1), total_pages)
    start = (current - 1) * per_page
    end = min(start + per_page, total_items)
    return Page(
        items=list(rows[start:end]),
        page=current,
        per_page=per_page,
        total_items=total_items,
        total_pages=total_pages,
        first_index=start + 1 if total_items else 0,
        last_index=end,
        page_numbers=page_window(current, total_pages),
    )


def page_window(current: int, total_pages: int, max_visible: int = 5) -> list[Optional[int]]:
    """Page links around ``current``; ``None`` marks an ellipsis."""
    if total_pages <= 1:
        return []
    start = max(1, current - max_visible // 2)
    end = min(total_pages, start + max_visible - 1)
    if end - start + 1 < max_visible:
        start = max(1, end - max_visible + 1)

    numbers: list[Optional[int]] = []
    if start > 1:
        numbers.append(1)
        if start > 2:
            numbers.append(None)
    numbers.extend(range(start, end + 1))
    if end < total_pages:
        if end < total_pages - 1:
            numbers.append(None)
        numbers.append(total_pages)
    return numbers


def render_csv(rows: Iterable[UnpaidInvoiceRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(
            [
                row.invoice_no,
                format_amount(row.total_billed),
                format_amount(row.balance_due),
                row.invoice_date,
                row.due_date,
                row.remaining_days_text,
            ]
        )
    return buffer.getvalue()


def csv_filename(today: date) -> str:
    return f"unpaid-invoices-{today.isoformat()}.csv"

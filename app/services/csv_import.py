"""Import a QuickBooks invoice CSV export into local invoice records."""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from dateutil import parser as date_parser
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.db import repo
from app.db.models import InvoiceLine, QuickBooksInvoice
from app.services.unpaid_invoices import parse_amount


logger = logging.getLogger("app.services.csv_import")

COLUMNS: dict[str, tuple[str, ...]] = {
    "doc": ("docnumber", "invoiceno", "invoice no"),
    "date": ("txndate", "date"),
    "customer": ("customer", "displayname"),
    "memo": ("customermemo", "memo"),
    "due": ("duedate",),
    "total": ("totalamt", "total", "amount"),
    "balance": ("balance", "balance due"),
    "paid": ("paid",),
    "po": ("purchaseorder", "po", "purchase order"),
    "terms": ("terms",),
    "activity": ("activity", "item", "itemname"),
    "description": ("description", "desc"),
    "qty": ("qty", "quantity"),
    "rate": ("rate", "unitprice"),
    "line_amount": ("lineamount", "line total"),
}

_WHITESPACE_RE = re.compile(r"\s+")
_MEMO_SPLIT_RE = re.compile(r"[;,]")
_WORK_ORDER_TOKEN_RE = re.compile(r"\b(wo-[a-z0-9_\-]+)", re.IGNORECASE)
_CENTS = Decimal("0.01")
_ZERO = Decimal("0")


class CsvImportError(ValueError):
    pass


@dataclass
class ImportOptions:
    delimiter: str = ","
    date_format: str = "%m/%d/%Y"
    default_terms: str = "Net 60"
    update_existing: bool = False

    def __post_init__(self) -> None:
        self.delimiter = (self.delimiter or ",")[0]
        self.date_format = self.date_format or "%m/%d/%Y"


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    messages: list[str] = field(default_factory=list)


def normalize_header(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(value).strip().lower())


def pick(row: dict[str, str], name: str) -> str:
    """First non-empty value among the candidate columns for ``name``."""
    for candidate in COLUMNS[name]:
        value = row.get(candidate, "")
        if value:
            return value.strip()
    return ""


def parse_date(value: str, date_format: str) -> str:
    value = value.strip()
    if not value:
        return ""
    try:
        return datetime.strptime(value, date_format).date().isoformat()
    except ValueError:
        pass
    try:
        return date_parser.parse(value).date().isoformat()
    except (ValueError, OverflowError):
        return ""


def extract_work_order_titles(memo: str) -> list[str]:
    """Work-order titles named in a memo, deduplicated case-insensitively.

    Items separated by commas or semicolons count, and so does any ``WO-...``
    token found anywhere in the text.
    """
    memo = memo.strip()
    if not memo:
        return []
    candidates = [part.strip() for part in _MEMO_SPLIT_RE.split(memo) if part.strip()]
    candidates.extend(match.strip() for match in _WORK_ORDER_TOKEN_RE.findall(memo))

    titles: list[str] = []
    seen: set[str] = set()
    for title in candidates:
        key = title.lower()
        if key in seen:
            continue
        seen.add(key)
        titles.append(title)
    return titles


def payment_fields(
    total: Optional[Decimal],
    balance: Optional[Decimal],
    paid: Optional[Decimal],
) -> tuple[Optional[Decimal], Optional[str]]:
    """Return ``(total_paid, payment_status)`` derived from the CSV amounts."""
    if total is not None and balance is not None:
        paid_calc = max(_ZERO, (total - balance).quantize(_CENTS, rounding=ROUND_HALF_UP))
        return paid_calc, "UNPAID" if balance > 0 else "PAID"
    if paid is not None and total is not None:
        return paid, "PAID" if paid >= total and total > 0 else "UNPAID"
    if paid is not None:
        return paid, "PAID" if paid > 0 else "UNPAID"
    return None, None


def default_line(row: dict[str, str], default_activity: str) -> InvoiceLine:
    total = parse_amount(pick(row, "total"), default=None)
    quantity = parse_amount(pick(row, "qty"), default=None)
    rate = parse_amount(pick(row, "rate"), default=None)
    amount = parse_amount(pick(row, "line_amount"), default=None)
    if quantity is None:
        quantity = Decimal("1")
    if rate is None:
        rate = total if total is not None else _ZERO
    if amount is None:
        amount = (quantity * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return InvoiceLine(
        position=0,
        activity=pick(row, "activity") or default_activity,
        description=pick(row, "description") or "Import",
        quantity=quantity,
        rate=rate,
        amount=amount,
    )


def read_rows(content: str, delimiter: str = ",") -> list[dict[str, str]]:
    """Rows keyed by normalized header; blank rows are dropped."""
    reader = csv.reader(io.StringIO(content), delimiter=delimiter)
    try:
        headers = next(reader, None)
        if not headers or not any(header.strip() for header in headers):
            raise CsvImportError("CSV seems to have no header row")
        keys = [normalize_header(header) for header in headers]
        rows: list[dict[str, str]] = []
        for raw in reader:
            if not any(value.strip() for value in raw):
                continue
            row: dict[str, str] = {}
            for index, key in enumerate(keys):
                # Duplicate headers keep the first non-empty value.
                value = raw[index].strip() if index < len(raw) else ""
                if not row.get(key):
                    row[key] = value
            rows.append(row)
    except csv.Error as exc:
        raise CsvImportError(f"Unreadable CSV: {exc}") from exc
    return rows


def decode_upload(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def apply_row(
    invoice: QuickBooksInvoice,
    row: dict[str, str],
    options: ImportOptions,
) -> None:
    invoice.invoice_no = pick(row, "doc")

    customer = pick(row, "customer")
    if customer:
        invoice.customer = customer

    txn = pick(row, "date")
    if txn:
        invoice.invoice_date = parse_date(txn, options.date_format)
    due = pick(row, "due")
    if due:
        invoice.due_date = parse_date(due, options.date_format)

    total = parse_amount(pick(row, "total"), default=None)
    balance = parse_amount(pick(row, "balance"), default=None)
    paid = parse_amount(pick(row, "paid"), default=None)
    if total is not None:
        invoice.total_billed = total
    if balance is not None:
        invoice.balance_due = balance
    total_paid, payment_status = payment_fields(total, balance, paid)
    if total_paid is not None:
        invoice.total_paid = total_paid
    if payment_status is not None:
        invoice.payment_status = payment_status

    purchase_order = pick(row, "po")
    if purchase_order:
        invoice.purchase_order = purchase_order
    invoice.terms = pick(row, "terms") or options.default_terms


async def import_invoices(
    session: AsyncSession,
    rows: Sequence[dict[str, str]],
    options: ImportOptions,
    settings: Settings,
) -> ImportResult:
    result = ImportResult()
    for row in rows:
        doc_number = pick(row, "doc")
        if not doc_number:
            result.skipped += 1
            result.messages.append("Skipped a row with empty DocNumber.")
            continue

        invoice = await repo.get_invoice_by_number(session, doc_number)
        is_update = invoice is not None
        if invoice is not None and not options.update_existing:
            result.skipped += 1
            result.messages.append(f"Exists (no update): {doc_number}")
            continue
        if invoice is None:
            invoice = repo.new_invoice()

        apply_row(invoice, row, options)

        titles = extract_work_order_titles(pick(row, "memo"))
        found = await repo.find_work_orders_by_titles(session, titles)
        repo.set_invoice_work_orders(
            invoice,
            [found[title.lower()] for title in titles if title.lower() in found],
        )

        if not invoice.lines:
            invoice.lines = [default_line(row, settings.default_activity)]

        await repo.save_invoice(session, invoice)
        if is_update:
            result.updated += 1
        else:
            result.created += 1

    logger.info(
        "csv_import_completed",
        extra={
            "created": result.created,
            "updated": result.updated,
            "skipped": result.skipped,
            "errors": result.errors,
        },
    )
    return result

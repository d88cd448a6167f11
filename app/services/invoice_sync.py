"""Pull QuickBooks invoices into local invoice records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.db import repo
from app.db.models import InvoiceLine, QuickBooksConnection, QuickBooksInvoice
from app.services.qbo_client import QuickBooksService
from app.services.unpaid_invoices import parse_amount


logger = logging.getLogger("app.services.invoice_sync")

_ADDRESS_LINES = ("Line1", "Line2", "Line3", "Line4", "Line5")
_ZERO = Decimal("0")


class InvoiceSyncError(RuntimeError):
    pass


def build_address_text(addr: Optional[Mapping[str, Any]]) -> str:
    """Format a QuickBooks BillAddr/ShipAddr as a multi-line block."""
    if not addr:
        return ""
    lines: list[str] = []
    for key in _ADDRESS_LINES:
        value = str(addr.get(key) or "").strip()
        if value:
            lines.append(value)

    city_parts = [
        str(addr.get(key) or "").strip()
        for key in ("City", "CountrySubDivisionCode", "PostalCode")
    ]
    city_line = ", ".join(part for part in city_parts if part)
    if city_line:
        lines.append(city_line)

    country = str(addr.get("Country") or "").strip()
    if country:
        lines.append(country)

    unique: list[str] = []
    for line in lines:
        if line not in unique:
            unique.append(line)
    return "\n".join(unique)


def match_activity(item_name: str, allowed: list[str], default: str) -> str:
    wanted = item_name.strip().casefold()
    for activity in allowed:
        if activity.casefold() == wanted:
            return activity
    return default


def map_lines(payload: Mapping[str, Any], settings: Settings) -> list[InvoiceLine]:
    lines: list[InvoiceLine] = []
    for raw in payload.get("Line") or []:
        if raw.get("DetailType") != "SalesItemLineDetail":
            continue
        detail = raw.get("SalesItemLineDetail") or {}
        item_name = str((detail.get("ItemRef") or {}).get("name") or "")
        quantity = parse_amount(detail.get("Qty"))
        rate = parse_amount(detail.get("UnitPrice"))
        amount = parse_amount(raw.get("Amount"), default=None)
        if amount is None:
            amount = quantity * rate
        lines.append(
            InvoiceLine(
                position=len(lines),
                activity=match_activity(item_name, settings.allowed_activities, settings.default_activity),
                description=raw.get("Description"),
                quantity=quantity,
                rate=rate,
                amount=amount,
            )
        )
    return lines


def apply_invoice_payload(
    invoice: QuickBooksInvoice,
    payload: Mapping[str, Any],
    settings: Settings,
    now: Optional[datetime] = None,
) -> None:
    """Copy QuickBooks invoice fields onto ``invoice``; fields absent upstream are kept."""
    if payload.get("Id"):
        invoice.qbo_invoice_id = str(payload["Id"])
    if payload.get("DocNumber"):
        invoice.invoice_no = str(payload["DocNumber"])

    total = parse_amount(payload.get("TotalAmt"), default=None)
    balance = parse_amount(payload.get("Balance"), default=None)
    if total is not None:
        invoice.total_billed = total
    if balance is not None:
        invoice.balance_due = balance
    if total is not None and balance is not None:
        invoice.total_paid = max(total - balance, _ZERO)
        invoice.payment_status = "UNPAID" if balance > 0 else "PAID"

    if payload.get("TxnDate"):
        invoice.invoice_date = str(payload["TxnDate"])
    if payload.get("DueDate"):
        invoice.due_date = str(payload["DueDate"])

    terms_ref = payload.get("SalesTermRef") or {}
    terms = terms_ref.get("name") or terms_ref.get("value")
    if terms:
        invoice.terms = str(terms)

    customer = (payload.get("CustomerRef") or {}).get("name")
    if customer:
        invoice.customer = str(customer)

    if payload.get("BillAddr") or payload.get("ShipAddr"):
        invoice.bill_to = build_address_text(payload.get("BillAddr"))
        invoice.ship_to = build_address_text(payload.get("ShipAddr"))

    invoice.lines = map_lines(payload, settings)
    invoice.last_synced_at = now or datetime.now(timezone.utc)


async def pull_invoice(
    session: AsyncSession,
    service: QuickBooksService,
    connection: QuickBooksConnection,
    invoice: QuickBooksInvoice,
) -> QuickBooksInvoice:
    doc_number = (invoice.invoice_no or "").strip()
    if not doc_number:
        raise InvoiceSyncError("Invoice number is empty")

    payload = await service.get_invoice_by_doc_number(session, connection, doc_number)
    if payload is None:
        raise InvoiceSyncError(f"Invoice {doc_number} was not found in QuickBooks")

    apply_invoice_payload(invoice, payload, service.settings)
    await repo.save_invoice(session, invoice)
    logger.info(
        "invoice_pulled",
        extra={
            "invoice_id": str(invoice.id),
            "invoice_no": invoice.invoice_no,
            "lines": len(invoice.lines),
        },
    )
    return invoice


async def sync_unpaid_invoices(
    session: AsyncSession,
    service: QuickBooksService,
    connection: QuickBooksConnection,
) -> dict[str, int]:
    """Upsert every QuickBooks invoice with an open balance by DocNumber."""
    created = updated = 0
    payloads = await service.list_unpaid_invoices(session, connection)
    for payload in payloads:
        doc_number = str(payload.get("DocNumber") or "").strip()
        if not doc_number:
            logger.warning(
                "invoice_sync_missing_doc_number",
                extra={"qbo_invoice_id": payload.get("Id")},
            )
            continue
        invoice = await repo.get_invoice_by_number(session, doc_number)
        if invoice is None:
            invoice = repo.new_invoice(invoice_no=doc_number)
            created += 1
        else:
            updated += 1
        apply_invoice_payload(invoice, payload, service.settings)
        await repo.save_invoice(session, invoice)

    logger.info(
        "invoice_sync_completed",
        extra={"created": created, "updated": updated, "fetched": len(payloads)},
    )
    return {"created": created, "updated": updated}

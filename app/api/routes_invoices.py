from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.db import repo
from app.db.models import InvoiceLine, QuickBooksConnection, QuickBooksInvoice
from app.db.session import get_session
from app.schemas.invoices import (
    ImportResultRead,
    InvoiceCreate,
    InvoiceExpenseRead,
    InvoiceExpensesUpdate,
    InvoiceLineRead,
    InvoiceRead,
    SyncResult,
)
from app.services import csv_import, invoice_sync
from app.services.qbo_client import QuickBooksApiError, QuickBooksOAuthError, QuickBooksService
from app.utils.validators import parse_uuid


router = APIRouter(prefix="/invoices", tags=["invoices"])
logger = logging.getLogger("app.api.invoices")


def to_invoice_read(invoice: QuickBooksInvoice) -> InvoiceRead:
    return InvoiceRead(
        id=invoice.id,
        invoice_no=invoice.invoice_no,
        qbo_invoice_id=invoice.qbo_invoice_id,
        customer=invoice.customer,
        invoice_date=invoice.invoice_date,
        due_date=invoice.due_date,
        total_billed=invoice.total_billed,
        balance_due=invoice.balance_due,
        total_paid=invoice.total_paid,
        payment_status=invoice.payment_status,
        terms=invoice.terms,
        purchase_order=invoice.purchase_order,
        bill_to=invoice.bill_to,
        ship_to=invoice.ship_to,
        record_status=invoice.record_status,
        last_synced_at=invoice.last_synced_at,
        work_orders=[work_order.title for work_order in invoice.work_orders],
        lines=[InvoiceLineRead.model_validate(line) for line in invoice.lines],
        expenses=[InvoiceExpenseRead.model_validate(expense) for expense in invoice.expenses],
        created_at=invoice.created_at,
        updated_at=invoice.updated_at,
    )


async def _get_connection(session: AsyncSession, settings: Settings) -> QuickBooksConnection:
    return await repo.get_connection(session, environment=settings.environment)


async def _upstream_failure(session: AsyncSession, exc: Exception, event: str) -> HTTPException:
    # A failed token refresh leaves last_error on the connection row.
    await session.commit()
    logger.error(event, extra={"error": str(exc)})
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"QuickBooks error: {exc}",
    )


@router.post("", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    payload: InvoiceCreate,
    session: AsyncSession = Depends(get_session),
) -> InvoiceRead:
    if await repo.get_invoice_by_number(session, payload.invoice_no) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Invoice number already exists",
        )
    work_orders = [
        await repo.get_work_order_by_id(session, work_order_id)
        for work_order_id in payload.work_order_ids
    ]
    fields = payload.model_dump(exclude={"work_order_ids", "lines", "expenses"})
    invoice = repo.new_invoice(**fields)
    invoice.lines = [
        InvoiceLine(position=index, **line.model_dump())
        for index, line in enumerate(payload.lines)
    ]
    repo.replace_invoice_expenses(
        invoice,
        [(expense.description, expense.amount) for expense in payload.expenses],
    )
    repo.set_invoice_work_orders(invoice, work_orders)
    await repo.save_invoice(session, invoice)
    await session.commit()
    logger.info(
        "invoice_created",
        extra={"invoice_id": str(invoice.id), "invoice_no": invoice.invoice_no},
    )
    return to_invoice_read(invoice)


@router.post("/sync", response_model=SyncResult)
async def sync_invoices(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> SyncResult:
    connection = await _get_connection(session, settings)
    service = QuickBooksService(settings)
    try:
        result = await invoice_sync.sync_unpaid_invoices(session, service, connection)
    except (QuickBooksApiError, QuickBooksOAuthError) as exc:
        raise await _upstream_failure(session, exc, "invoice_sync_failed") from exc
    await session.commit()
    return SyncResult(**result)


@router.post("/import", response_model=ImportResultRead)
async def import_invoices_csv(
    file: UploadFile = File(...),
    delimiter: str = Form(default=","),
    date_format: str = Form(default="%m/%d/%Y"),
    default_terms: Optional[str] = Form(default=None),
    update_existing: bool = Form(default=False),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ImportResultRead:
    options = csv_import.ImportOptions(
        delimiter=delimiter,
        date_format=date_format,
        default_terms=default_terms or settings.default_terms,
        update_existing=update_existing,
    )
    data = await file.read()
    try:
        rows = csv_import.read_rows(csv_import.decode_upload(data), options.delimiter)
    except csv_import.CsvImportError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    result = await csv_import.import_invoices(session, rows, options, settings)
    await session.commit()
    logger.info(
        "invoice_csv_imported",
        extra={"filename": file.filename, "rows": len(rows), "created": result.created},
    )
    return ImportResultRead(
        created=result.created,
        updated=result.updated,
        skipped=result.skipped,
        errors=result.errors,
        messages=result.messages,
    )


@router.get("/{invoice_id}", response_model=InvoiceRead)
async def get_invoice(
    invoice_id: str,
    session: AsyncSession = Depends(get_session),
) -> InvoiceRead:
    invoice = await repo.get_invoice_by_id(session, parse_uuid(invoice_id, "invoice_id"))
    return to_invoice_read(invoice)


@router.put("/{invoice_id}/expenses", response_model=InvoiceRead)
async def replace_expenses(
    invoice_id: str,
    payload: InvoiceExpensesUpdate,
    session: AsyncSession = Depends(get_session),
) -> InvoiceRead:
    invoice = await repo.get_invoice_by_id(session, parse_uuid(invoice_id, "invoice_id"))
    repo.replace_invoice_expenses(
        invoice,
        [(expense.description, expense.amount) for expense in payload.expenses],
    )
    await repo.save_invoice(session, invoice)
    await session.commit()
    logger.info(
        "invoice_expenses_replaced",
        extra={"invoice_id": str(invoice.id), "expenses": len(payload.expenses)},
    )
    return to_invoice_read(invoice)


@router.post("/{invoice_id}/pull", response_model=InvoiceRead)
async def pull_invoice(
    invoice_id: str,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> InvoiceRead:
    invoice = await repo.get_invoice_by_id(session, parse_uuid(invoice_id, "invoice_id"))
    connection = await _get_connection(session, settings)
    service = QuickBooksService(settings)
    try:
        await invoice_sync.pull_invoice(session, service, connection, invoice)
    except invoice_sync.InvoiceSyncError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except (QuickBooksApiError, QuickBooksOAuthError) as exc:
        raise await _upstream_failure(session, exc, "invoice_pull_failed") from exc
    await session.commit()
    return to_invoice_read(invoice)

"""Presentation helpers shared by the unpaid-invoice endpoints."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.db import repo
from app.schemas.invoices import PaginationRead, UnpaidInvoiceRead, UnpaidTotalsRead
from app.services import unpaid_invoices as engine


async def load_unpaid_report(
    session: AsyncSession,
    settings: Settings,
    *,
    today: date,
    start: Optional[date] = None,
    end: Optional[date] = None,
    with_links: bool = True,
) -> engine.UnpaidInvoiceReport:
    invoices = await repo.list_reportable_invoices(session)
    return engine.build_unpaid_report(
        invoices,
        today=today,
        start=start,
        end=end,
        base_url=settings.public_base_url,
        with_links=with_links,
    )


def select_rows(
    report: engine.UnpaidInvoiceReport,
    *,
    filter_name: str,
    sort: str,
    direction: str,
) -> list[engine.UnpaidInvoiceRow]:
    try:
        rows = engine.filter_rows(report.rows, filter_name)
        return engine.sort_rows(rows, sort, direction)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc


def serialize_row(row: engine.UnpaidInvoiceRow) -> UnpaidInvoiceRead:
    return UnpaidInvoiceRead(
        id=row.invoice_id,
        invoice_no=row.invoice_no,
        total_billed=float(row.total_billed),
        balance_due=float(row.balance_due),
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        remaining_days=row.remaining_days,
        remaining_days_text=row.remaining_days_text,
        is_overdue=row.is_overdue,
        permalink=row.permalink,
    )


def serialize_totals(totals: engine.UnpaidTotals) -> UnpaidTotalsRead:
    return UnpaidTotalsRead(
        overdue=float(totals.overdue),
        incoming=float(totals.incoming),
        total=float(totals.total),
    )


def serialize_page(page: engine.Page) -> PaginationRead:
    return PaginationRead(
        page=page.page,
        per_page=page.per_page,
        total_items=page.total_items,
        total_pages=page.total_pages,
        first_index=page.first_index,
        last_index=page.last_index,
        page_numbers=page.page_numbers,
    )


def csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache",
        },
    )

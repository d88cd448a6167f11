from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import invoice_views
from app.core.config import Settings, get_settings
from app.db.session import get_session
from app.schemas.invoices import InvoicesBalance
from app.services import unpaid_invoices as engine
from app.services.unpaid_invoices import FilterName, SortDirection, SortKey


router = APIRouter(prefix="/invoices-balance", tags=["invoices-balance"])
logger = logging.getLogger("app.api.invoices_balance")


@router.get(
    "",
    response_model=InvoicesBalance,
    summary="Invoices balance",
    description="Every unpaid invoice, split into overdue and incoming balances.",
)
async def get_invoices_balance(
    filter: FilterName = Query(default="all"),
    sort: SortKey = Query(default="due_date"),
    direction: SortDirection = Query(default="asc"),
    page: int = Query(default=1, ge=1),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> InvoicesBalance:
    # The invoice detail route needs the admin key, so public rows carry no link.
    report = await invoice_views.load_unpaid_report(session, settings, today=settings.today(), with_links=False)
    rows = invoice_views.select_rows(report, filter_name=filter, sort=sort, direction=direction)
    current = engine.paginate(rows, page, settings.invoices_per_page)
    logger.info(
        "invoices_balance_viewed",
        extra={"filter": filter, "sort": sort, "direction": direction, "rows": len(rows)},
    )
    return InvoicesBalance(
        invoices=[invoice_views.serialize_row(row) for row in current.items],
        total_overdue=float(report.totals.overdue),
        total_incoming=float(report.totals.incoming),
        total_unpaid=float(report.totals.total),
        total_count=len(rows),
        pagination=invoice_views.serialize_page(current),
    )


@router.get("/csv", response_class=Response)
async def export_invoices_balance(
    filter: FilterName = Query(default="all"),
    sort: SortKey = Query(default="due_date"),
    direction: SortDirection = Query(default="asc"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> Response:
    today = settings.today()
    report = await invoice_views.load_unpaid_report(session, settings, today=today)
    rows = invoice_views.select_rows(report, filter_name=filter, sort=sort, direction=direction)
    return invoice_views.csv_response(engine.render_csv(rows), engine.csv_filename(today))

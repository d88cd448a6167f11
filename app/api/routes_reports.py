from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import invoice_views
from app.api.dependencies import enforce_reports_key
from app.core.config import Settings, get_settings
from app.db import repo
from app.db.session import get_session
from app.schemas.invoices import (
    EngineerReportRow,
    FinancialReportRead,
    FinancialTotalsRead,
    ReportInvoiceRead,
    UnpaidInvoicesReport,
)
from app.services import financial_report
from app.services import unpaid_invoices as engine
from app.services.unpaid_invoices import FilterName, SortDirection, SortKey
from app.utils.validators import validate_date_range


router = APIRouter(
    prefix="/reports",
    tags=["reports"],
    dependencies=[Depends(enforce_reports_key)],
)
logger = logging.getLogger("app.api.reports")

DEFAULT_START_DATE = date(2000, 1, 1)


@dataclass
class UnpaidQueryParams:
    start_date: date
    end_date: date
    filter: str
    sort: str
    direction: str
    page: int
    per_page: int
    today: date


def get_unpaid_query_params(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    filter: FilterName = Query(default="all"),
    sort: SortKey = Query(default="due_date"),
    direction: SortDirection = Query(default="asc"),
    page: int = Query(default=1, ge=1),
    per_page: Optional[int] = Query(default=None, ge=1, le=500),
    settings: Settings = Depends(get_settings),
) -> UnpaidQueryParams:
    today = settings.today()
    start = start_date or DEFAULT_START_DATE
    end = end_date or today
    validate_date_range(start, end)
    return UnpaidQueryParams(
        start_date=start,
        end_date=end,
        filter=filter,
        sort=sort,
        direction=direction,
        page=page,
        per_page=per_page or settings.invoices_per_page,
        today=today,
    )


@router.get(
    "/unpaid-invoices",
    response_model=UnpaidInvoicesReport,
    summary="Unpaid invoices",
    description="Unpaid invoices dated inside the range, with overdue and incoming totals.",
)
async def get_unpaid_invoices(
    params: UnpaidQueryParams = Depends(get_unpaid_query_params),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> UnpaidInvoicesReport:
    report = await invoice_views.load_unpaid_report(
        session,
        settings,
        today=params.today,
        start=params.start_date,
        end=params.end_date,
    )
    rows = invoice_views.select_rows(
        report,
        filter_name=params.filter,
        sort=params.sort,
        direction=params.direction,
    )
    page = engine.paginate(rows, params.page, params.per_page)
    logger.info(
        "unpaid_invoices_report",
        extra={
            "start_date": params.start_date.isoformat(),
            "end_date": params.end_date.isoformat(),
            "filter": params.filter,
            "rows": len(rows),
        },
    )
    return UnpaidInvoicesReport(
        start_date=params.start_date,
        end_date=params.end_date,
        invoices=[invoice_views.serialize_row(row) for row in page.items],
        totals=invoice_views.serialize_totals(report.totals),
        pagination=invoice_views.serialize_page(page),
    )


@router.get("/unpaid-invoices/csv", response_class=Response)
async def export_unpaid_invoices(
    params: UnpaidQueryParams = Depends(get_unpaid_query_params),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> Response:
    report = await invoice_views.load_unpaid_report(
        session,
        settings,
        today=params.today,
        start=params.start_date,
        end=params.end_date,
    )
    rows = invoice_views.select_rows(
        report,
        filter_name=params.filter,
        sort=params.sort,
        direction=params.direction,
    )
    logger.info("unpaid_invoices_exported", extra={"rows": len(rows)})
    return invoice_views.csv_response(
        engine.render_csv(rows),
        engine.csv_filename(params.today),
    )


@dataclass
class FinancialQueryParams:
    report: str
    year: int
    month: int
    quarter: int
    engineer_id: Optional[uuid.UUID]


def get_financial_query_params(
    report: financial_report.ReportType = Query(default="monthly"),
    year: Optional[int] = Query(default=None, ge=1900, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    quarter: int = Query(default=1, ge=1, le=4),
    engineer_id: Optional[uuid.UUID] = Query(default=None, alias="engineer"),
    settings: Settings = Depends(get_settings),
) -> FinancialQueryParams:
    today = settings.today()
    return FinancialQueryParams(
        report=report,
        year=year or today.year,
        month=month or today.month,
        quarter=quarter,
        engineer_id=engineer_id,
    )


async def _build_financial_report(
    params: FinancialQueryParams,
    session: AsyncSession,
) -> financial_report.FinancialReport:
    try:
        start, end = financial_report.compute_date_range(
            params.report, params.year, params.month, params.quarter
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    invoices = await repo.list_reportable_invoices(session)
    return financial_report.aggregate(
        invoices,
        start,
        end,
        engineer_id=str(params.engineer_id) if params.engineer_id else None,
    )


@router.get(
    "/financial",
    response_model=FinancialReportRead,
    summary="Financial report",
    description="Per-engineer invoice, cost and profit totals for a month, quarter or year.",
)
async def get_financial_report(
    params: FinancialQueryParams = Depends(get_financial_query_params),
    session: AsyncSession = Depends(get_session),
) -> FinancialReportRead:
    report = await _build_financial_report(params, session)
    logger.info(
        "financial_report",
        extra={
            "report": params.report,
            "start_date": report.start.isoformat(),
            "end_date": report.end.isoformat(),
            "engineers": len(report.rows),
        },
    )
    totals = report.totals
    return FinancialReportRead(
        report=params.report,
        period=financial_report.period_label(params.report, params.year, params.month, params.quarter),
        start_date=report.start,
        end_date=report.end,
        rows=[
            EngineerReportRow(
                engineer_id=row.engineer_id,
                engineer=row.engineer,
                count=row.count,
                invoice_amount=float(row.invoice_amount),
                labor_cost=float(row.labor_cost),
                travel_cost=float(row.travel_cost),
                tolls_meals=float(row.tolls_meals),
                direct_labor=float(row.direct_labor),
                profit=float(row.profit),
                invoices=[
                    ReportInvoiceRead(
                        invoice_id=item.invoice_id,
                        date=item.date,
                        number=item.number,
                        amount=float(item.amount),
                    )
                    for item in row.invoices
                ],
            )
            for row in report.rows
        ],
        totals=FinancialTotalsRead(
            count=totals.count,
            invoice_amount=float(totals.invoice_amount),
            labor_cost=float(totals.labor_cost),
            travel_cost=float(totals.travel_cost),
            tolls_meals=float(totals.tolls_meals),
            direct_labor=float(totals.direct_labor),
            profit=float(totals.profit),
        ),
    )


@router.get("/financial/csv", response_class=Response)
async def export_financial_report(
    params: FinancialQueryParams = Depends(get_financial_query_params),
    session: AsyncSession = Depends(get_session),
) -> Response:
    report = await _build_financial_report(params, session)
    return invoice_views.csv_response(
        financial_report.render_csv(report),
        financial_report.report_filename(params.report, params.year, params.month, params.quarter),
    )

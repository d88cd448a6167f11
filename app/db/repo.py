from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    REPORTABLE_STATUSES,
    Engineer,
    InvoiceExpense,
    InvoiceWorkOrder,
    QuickBooksConnection,
    QuickBooksInvoice,
    WorkOrder,
)

async def get_connection_optional(
    session: AsyncSession,
    *,
    environment: str,
) -> Optional[QuickBooksConnection]:
    result = await session.execute(
        select(QuickBooksConnection).where(QuickBooksConnection.environment == environment)
    )
    return result.scalar_one_or_none()

async def get_connection(session: AsyncSession, *, environment: str) -> QuickBooksConnection:
    connection = await get_connection_optional(session, environment=environment)
    if connection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="QuickBooks is not connected",
        )
    return connection

async def list_connections_due_for_refresh(
    session: AsyncSession,
    *,
    threshold: datetime,
) -> Sequence[QuickBooksConnection]:
    result = await session.execute(
        select(QuickBooksConnection).where(
            or_(
                QuickBooksConnection.access_token.is_(None),
                QuickBooksConnection.access_expires_at.is_(None),
                QuickBooksConnection.access_expires_at <= threshold,
            )
        )
    )
    return result.scalars().all()

async def save_connection(
    session: AsyncSession,
    connection: QuickBooksConnection,
) -> QuickBooksConnection:
    session.add(connection)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Connection conflict",
        ) from exc
    await session.refresh(connection)
    return connection

async def create_engineer(session: AsyncSession, *, display_name: str, email: Optional[str]) -> Engineer:
    engineer = Engineer(display_name=display_name, email=email)
    session.add(engineer)
    await session.flush()
    await session.refresh(engineer)
    return engineer

async def list_engineers(session: AsyncSession) -> Sequence[Engineer]:
    result = await session.execute(select(Engineer).order_by(Engineer.display_name))
    return result.scalars().all()

async def get_engineer_by_id(session: AsyncSession, engineer_id: uuid.UUID) -> Engineer:
    engineer = await session.get(Engineer, engineer_id)
    if engineer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Engineer not found",
        )
    return engineer

async def create_work_order(
    session: AsyncSession,
    *,
    title: str,
    status_value: str,
    engineer_id: Optional[uuid.UUID],
) -> WorkOrder:
    work_order = WorkOrder(title=title, status=status_value, engineer_id=engineer_id)
    session.add(work_order)
    await session.flush()
    await session.refresh(work_order)
    return work_order

def _work_order_filters(stmt, status_value: Optional[str], engineer_id: Optional[uuid.UUID]):
    if status_value:
        stmt = stmt.where(WorkOrder.status == status_value)
    if engineer_id is not None:
        stmt = stmt.where(WorkOrder.engineer_id == engineer_id)
    return stmt

async def list_work_orders(
    session: AsyncSession,
    *,
    status_value: Optional[str] = None,
    engineer_id: Optional[uuid.UUID] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Sequence[WorkOrder]:
    stmt = _work_order_filters(select(WorkOrder), status_value, engineer_id)
    stmt = stmt.order_by(WorkOrder.created_at.desc(), WorkOrder.title)
    if limit is not None:
        stmt = stmt.limit(limit)
    if offset is not None:
        stmt = stmt.offset(offset)
    result = await session.execute(stmt)
    return result.scalars().all()

async def count_work_orders(
    session: AsyncSession,
    *,
    status_value: Optional[str] = None,
    engineer_id: Optional[uuid.UUID] = None,
) -> int:
    stmt = _work_order_filters(select(func.count(WorkOrder.id)), status_value, engineer_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())

async def get_work_order_by_id(session: AsyncSession, work_order_id: uuid.UUID) -> WorkOrder:
    work_order = await session.get(WorkOrder, work_order_id)
    if work_order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Work order not found",
        )
    return work_order

async def list_linked_invoice_numbers(session: AsyncSession, work_order_id: uuid.UUID) -> list[str]:
    """Invoice numbers linked to a work order, oldest invoice first."""
    result = await session.execute(
        select(QuickBooksInvoice.invoice_no)
        .join(InvoiceWorkOrder, InvoiceWorkOrder.invoice_id == QuickBooksInvoice.id)
        .where(InvoiceWorkOrder.work_order_id == work_order_id)
        .order_by(QuickBooksInvoice.created_at, QuickBooksInvoice.invoice_no)
    )
    return [invoice_no for invoice_no in result.scalars().all() if invoice_no]

async def find_work_orders_by_titles(
    session: AsyncSession,
    titles: Iterable[str],
) -> dict[str, WorkOrder]:
    """Work orders keyed by lower-cased title; the oldest wins on duplicates."""
    lowered = [title.lower() for title in titles]
    if not lowered:
        return {}
    result = await session.execute(
        select(WorkOrder)
        .where(func.lower(WorkOrder.title).in_(lowered))
        .order_by(WorkOrder.created_at)
    )
    found: dict[str, WorkOrder] = {}
    for work_order in result.scalars().all():
        found.setdefault(work_order.title.lower(), work_order)
    return found

async def count_work_orders_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(WorkOrder.status, func.count(WorkOrder.id)).group_by(WorkOrder.status)
    )
    return {status_value: int(count) for status_value, count in result.all()}

async def list_reportable_invoices(session: AsyncSession) -> Sequence[QuickBooksInvoice]:
    result = await session.execute(
        select(QuickBooksInvoice)
        .where(QuickBooksInvoice.record_status.in_(REPORTABLE_STATUSES))
        .order_by(QuickBooksInvoice.created_at, QuickBooksInvoice.invoice_no)
    )
    return result.scalars().all()

async def get_invoice_by_id(session: AsyncSession, invoice_id: uuid.UUID) -> QuickBooksInvoice:
    invoice = await session.get(QuickBooksInvoice, invoice_id)
    if invoice is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invoice not found",
        )
    return invoice

async def get_invoice_by_number(
    session: AsyncSession,
    invoice_no: str,
) -> Optional[QuickBooksInvoice]:
    result = await session.execute(
        select(QuickBooksInvoice).where(QuickBooksInvoice.invoice_no == invoice_no)
    )
    return result.scalar_one_or_none()

def new_invoice(**fields) -> QuickBooksInvoice:
    # Collections start empty so async code never lazy-loads them.
    return QuickBooksInvoice(lines=[], expenses=[], work_order_links=[], **fields)

async def save_invoice(session: AsyncSession, invoice: QuickBooksInvoice) -> QuickBooksInvoice:
    session.add(invoice)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Invoice number already exists",
        ) from exc
    await session.refresh(invoice)
    return invoice

def set_invoice_work_orders(invoice: QuickBooksInvoice, work_orders: Sequence[WorkOrder]) -> None:
    """Replace the invoice's work-order links, keeping the given order."""
    existing = {link.work_order_id: link for link in invoice.work_order_links}
    links: list[InvoiceWorkOrder] = []
    for work_order in work_orders:
        if any(link.work_order_id == work_order.id for link in links):
            continue
        # Reuse rows for pairs already linked; the pair is unique.
        link = existing.get(work_order.id) or InvoiceWorkOrder(
            work_order_id=work_order.id,
            work_order=work_order,
        )
        link.position = len(links)
        links.append(link)
    invoice.work_order_links = links

def replace_invoice_expenses(
    invoice: QuickBooksInvoice,
    expenses: Iterable[tuple[Optional[str], object]],
) -> None:
    invoice.expenses.clear()
    for description, amount in expenses:
        invoice.expenses.append(InvoiceExpense(description=description, amount=amount))

from __future__ import annotations

import logging
import math
from typing import Optional, get_args

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import repo
from app.db.session import get_session
from app.schemas.work_orders import (
    EngineerCreate,
    EngineerRead,
    WorkOrderCreate,
    WorkOrderDetail,
    WorkOrderPage,
    WorkOrderRead,
    WorkOrderStatusValue,
    WorkOrderSummary,
    WorkOrderUpdate,
    normalize_status_value,
)
from app.utils.validators import parse_uuid


router = APIRouter(tags=["work-orders"])
logger = logging.getLogger("app.api.work_orders")


@router.post("/engineers", response_model=EngineerRead, status_code=status.HTTP_201_CREATED)
async def create_engineer(
    payload: EngineerCreate,
    session: AsyncSession = Depends(get_session),
) -> EngineerRead:
    engineer = await repo.create_engineer(
        session,
        display_name=payload.display_name,
        email=payload.email,
    )
    await session.commit()
    logger.info("engineer_created", extra={"engineer_id": str(engineer.id)})
    return EngineerRead.model_validate(engineer)


@router.get("/engineers", response_model=list[EngineerRead])
async def list_engineers(session: AsyncSession = Depends(get_session)) -> list[EngineerRead]:
    engineers = await repo.list_engineers(session)
    return [EngineerRead.model_validate(engineer) for engineer in engineers]


@router.post("/work-orders", response_model=WorkOrderRead, status_code=status.HTTP_201_CREATED)
async def create_work_order(
    payload: WorkOrderCreate,
    session: AsyncSession = Depends(get_session),
) -> WorkOrderRead:
    if payload.engineer_id is not None:
        await repo.get_engineer_by_id(session, payload.engineer_id)
    work_order = await repo.create_work_order(
        session,
        title=payload.title.strip(),
        status_value=payload.status,
        engineer_id=payload.engineer_id,
    )
    await session.commit()
    logger.info(
        "work_order_created",
        extra={"work_order_id": str(work_order.id), "title": work_order.title},
    )
    return WorkOrderRead.model_validate(work_order)


@router.get("/work-orders", response_model=WorkOrderPage)
async def list_work_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    engineer: Optional[str] = Query(default=None, description="Only work orders assigned to this engineer id."),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> WorkOrderPage:
    status_value = normalize_status_value(status_filter) if status_filter else None
    if status_value is not None and status_value not in get_args(WorkOrderStatusValue):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown work order status: {status_filter}",
        )
    engineer_id = parse_uuid(engineer, "engineer") if engineer else None
    total = await repo.count_work_orders(session, status_value=status_value, engineer_id=engineer_id)
    work_orders = await repo.list_work_orders(
        session,
        status_value=status_value,
        engineer_id=engineer_id,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return WorkOrderPage(
        work_orders=[WorkOrderRead.model_validate(work_order) for work_order in work_orders],
        page=page,
        per_page=per_page,
        total=total,
        total_pages=math.ceil(total / per_page),
    )


@router.get("/work-orders/summary", response_model=WorkOrderSummary)
async def summarize_work_orders(session: AsyncSession = Depends(get_session)) -> WorkOrderSummary:
    counts = await repo.count_work_orders_by_status(session)
    return WorkOrderSummary(
        open=counts.get("open", 0),
        scheduled=counts.get("scheduled", 0),
        closed=counts.get("closed", 0),
        total=sum(counts.values()),
    )


@router.get("/work-orders/{work_order_id}", response_model=WorkOrderDetail)
async def get_work_order(
    work_order_id: str,
    session: AsyncSession = Depends(get_session),
) -> WorkOrderDetail:
    work_order = await repo.get_work_order_by_id(session, parse_uuid(work_order_id, "work_order_id"))
    detail = WorkOrderDetail.model_validate(work_order)
    detail.invoices = await repo.list_linked_invoice_numbers(session, work_order.id)
    return detail


@router.patch("/work-orders/{work_order_id}", response_model=WorkOrderRead)
async def update_work_order(
    work_order_id: str,
    payload: WorkOrderUpdate,
    session: AsyncSession = Depends(get_session),
) -> WorkOrderRead:
    work_order = await repo.get_work_order_by_id(session, parse_uuid(work_order_id, "work_order_id"))
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("engineer_id") is not None:
        await repo.get_engineer_by_id(session, changes["engineer_id"])
    if changes.get("title") is not None:
        work_order.title = changes["title"].strip()
    if changes.get("status") is not None:
        work_order.status = changes["status"]
    if "engineer_id" in changes:
        work_order.engineer_id = changes["engineer_id"]
    await session.flush()
    await session.refresh(work_order)
    await session.commit()
    logger.info(
        "work_order_updated",
        extra={"work_order_id": str(work_order.id), "fields": sorted(changes)},
    )
    return WorkOrderRead.model_validate(work_order)

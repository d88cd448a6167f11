from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


WorkOrderStatusValue = Literal["open", "scheduled", "closed"]


def normalize_status_value(value):
    if isinstance(value, str):
        value = value.strip().lower()
        if value == "close":
            return "closed"
    return value


class EngineerCreate(BaseModel):
    display_name: str = Field(min_length=1, max_length=255)
    email: Optional[EmailStr] = None


class EngineerRead(BaseModel):
    id: uuid.UUID
    display_name: str
    email: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WorkOrderCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    status: WorkOrderStatusValue = "open"
    engineer_id: Optional[uuid.UUID] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        return normalize_status_value(value)


class WorkOrderUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    status: Optional[WorkOrderStatusValue] = None
    engineer_id: Optional[uuid.UUID] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        return normalize_status_value(value)


class WorkOrderRead(BaseModel):
    id: uuid.UUID
    title: str
    status: WorkOrderStatusValue
    engineer_id: Optional[uuid.UUID] = None
    engineer: Optional[EngineerRead] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WorkOrderSummary(BaseModel):
    open: int = 0
    scheduled: int = 0
    closed: int = 0
    total: int = 0


class WorkOrderDetail(WorkOrderRead):
    invoices: list[str] = Field(default_factory=list, description="Linked invoice numbers.")


class WorkOrderPage(BaseModel):
    work_orders: list[WorkOrderRead]
    page: int
    per_page: int
    total: int
    total_pages: int

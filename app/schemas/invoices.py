from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


RecordStatusValue = Literal["publish", "draft", "pending", "private", "trash"]
PaymentStatus = Literal["PAID", "UNPAID"]


class InvoiceLineIn(BaseModel):
    activity: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None


class InvoiceExpenseIn(BaseModel):
    description: Optional[str] = None
    amount: Decimal


class InvoiceCreate(BaseModel):
    invoice_no: str = Field(min_length=1, max_length=100)
    customer: Optional[str] = None
    invoice_date: Optional[str] = Field(None, description="Stored as given, normalized when read.")
    due_date: Optional[str] = None
    total_billed: Optional[Decimal] = None
    balance_due: Optional[Decimal] = None
    total_paid: Optional[Decimal] = None
    payment_status: Optional[PaymentStatus] = None
    terms: Optional[str] = None
    purchase_order: Optional[str] = None
    bill_to: Optional[str] = None
    ship_to: Optional[str] = None
    record_status: RecordStatusValue = "publish"
    work_order_ids: list[uuid.UUID] = Field(default_factory=list)
    lines: list[InvoiceLineIn] = Field(default_factory=list)
    expenses: list[InvoiceExpenseIn] = Field(default_factory=list)


class InvoiceExpensesUpdate(BaseModel):
    expenses: list[InvoiceExpenseIn]


class InvoiceLineRead(BaseModel):
    position: int
    activity: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[float] = None
    rate: Optional[float] = None
    amount: Optional[float] = None

    class Config:
        from_attributes = True


class InvoiceExpenseRead(BaseModel):
    description: Optional[str] = None
    amount: Optional[float] = None

    class Config:
        from_attributes = True


class InvoiceRead(BaseModel):
    id: uuid.UUID
    invoice_no: Optional[str] = None
    qbo_invoice_id: Optional[str] = None
    customer: Optional[str] = None
    invoice_date: Optional[str] = None
    due_date: Optional[str] = None
    total_billed: Optional[float] = None
    balance_due: Optional[float] = None
    total_paid: Optional[float] = None
    payment_status: Optional[str] = None
    terms: Optional[str] = None
    purchase_order: Optional[str] = None
    bill_to: Optional[str] = None
    ship_to: Optional[str] = None
    record_status: RecordStatusValue
    last_synced_at: Optional[datetime] = None
    work_orders: list[str] = Field(default_factory=list, description="Linked work-order titles, primary first.")
    lines: list[InvoiceLineRead] = Field(default_factory=list)
    expenses: list[InvoiceExpenseRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class SyncResult(BaseModel):
    created: int
    updated: int


class ImportResultRead(BaseModel):
    created: int
    updated: int
    skipped: int
    errors: int
    messages: list[str] = Field(default_factory=list)


class UnpaidInvoiceRead(BaseModel):
    id: str
    invoice_no: str
    total_billed: float
    balance_due: float
    invoice_date: str
    due_date: str
    remaining_days: Optional[int] = None
    remaining_days_text: str
    is_overdue: bool
    permalink: Optional[str] = None


class UnpaidTotalsRead(BaseModel):
    overdue: float
    incoming: float
    total: float


class PaginationRead(BaseModel):
    page: int
    per_page: int
    total_items: int
    total_pages: int
    first_index: int
    last_index: int
    page_numbers: list[Optional[int]] = Field(
        default_factory=list,
        description="Page links around the current page; null marks an ellipsis.",
    )


class UnpaidInvoicesReport(BaseModel):
    success: bool = True
    start_date: date
    end_date: date
    invoices: list[UnpaidInvoiceRead]
    totals: UnpaidTotalsRead
    pagination: PaginationRead


class InvoicesBalance(BaseModel):
    invoices: list[UnpaidInvoiceRead]
    total_overdue: float
    total_incoming: float
    total_unpaid: float
    total_count: int
    pagination: PaginationRead


class ReportInvoiceRead(BaseModel):
    invoice_id: str
    date: str
    number: str
    amount: float


class EngineerReportRow(BaseModel):
    engineer_id: str
    engineer: str
    count: int
    invoice_amount: float
    labor_cost: float
    travel_cost: float
    tolls_meals: float
    direct_labor: float
    profit: float
    invoices: list[ReportInvoiceRead] = Field(default_factory=list)


class FinancialTotalsRead(BaseModel):
    count: int
    invoice_amount: float
    labor_cost: float
    travel_cost: float
    tolls_meals: float
    direct_labor: float
    profit: float


class FinancialReportRead(BaseModel):
    report: Literal["monthly", "quarterly", "yearly"]
    period: str
    start_date: date
    end_date: date
    rows: list[EngineerReportRow]
    totals: FinancialTotalsRead

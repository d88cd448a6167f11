from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class RecordStatus(str):
    PUBLISH = "publish"
    DRAFT = "draft"
    PENDING = "pending"
    PRIVATE = "private"
    TRASH = "trash"


REPORTABLE_STATUSES = (
    RecordStatus.PUBLISH,
    RecordStatus.DRAFT,
    RecordStatus.PENDING,
    RecordStatus.PRIVATE,
)


class WorkOrderStatus(str):
    OPEN = "open"
    SCHEDULED = "scheduled"
    CLOSED = "closed"


MONEY = Numeric(14, 2)
QUANTITY = Numeric(14, 4)


class QuickBooksConnection(Base):
    __tablename__ = "qbo_connections"
    __table_args__ = (
        UniqueConstraint("environment", name="uq_qbo_connection_environment"),
    )

    environment: Mapped[str] = mapped_column(
        Enum("sandbox", "prod", name="environment_enum", native_enum=False),
        default="sandbox",
        nullable=False,
    )
    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    refresh_token_enc: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    access_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refresh_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scopes: Mapped[Optional[list[str]]] = mapped_column(JSON(none_as_null=True))
    refresh_counter: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Engineer(Base):
    __tablename__ = "engineers"

    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    work_orders: Mapped[list["WorkOrder"]] = relationship(back_populates="engineer")


class WorkOrder(Base):
    __tablename__ = "work_orders"
    __table_args__ = (
        Index("ix_work_orders_title", "title"),
        Index("ix_work_orders_status", "status"),
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(
            WorkOrderStatus.OPEN,
            WorkOrderStatus.SCHEDULED,
            WorkOrderStatus.CLOSED,
            name="work_order_status_enum",
            native_enum=False,
        ),
        default=WorkOrderStatus.OPEN,
        nullable=False,
    )
    engineer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("engineers.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    engineer: Mapped[Optional["Engineer"]] = relationship(back_populates="work_orders", lazy="selectin")


class QuickBooksInvoice(Base):
    __tablename__ = "qbo_invoices"
    __table_args__ = (
        UniqueConstraint("invoice_no", name="uq_qbo_invoice_no"),
        Index("ix_qbo_invoices_record_status", "record_status"),
    )

    invoice_no: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    qbo_invoice_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Dates keep the text they arrived with; reports normalize on read.
    invoice_date: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    due_date: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    total_billed: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    balance_due: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    total_paid: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    purchase_order: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    bill_to: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ship_to: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    record_status: Mapped[str] = mapped_column(
        Enum(
            RecordStatus.PUBLISH,
            RecordStatus.DRAFT,
            RecordStatus.PENDING,
            RecordStatus.PRIVATE,
            RecordStatus.TRASH,
            name="record_status_enum",
            native_enum=False,
        ),
        default=RecordStatus.PUBLISH,
        nullable=False,
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    lines: Mapped[list["InvoiceLine"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.position",
        lazy="selectin",
    )
    expenses: Mapped[list["InvoiceExpense"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    work_order_links: Mapped[list["InvoiceWorkOrder"]] = relationship(
        cascade="all, delete-orphan",
        order_by="InvoiceWorkOrder.position",
        lazy="selectin",
    )

    @property
    def work_orders(self) -> list[WorkOrder]:
        return [link.work_order for link in self.work_order_links]

    @property
    def primary_work_order(self) -> Optional[WorkOrder]:
        return self.work_orders[0] if self.work_orders else None


class InvoiceLine(Base):
    __tablename__ = "qbo_invoice_lines"
    __table_args__ = (
        Index("ix_qbo_invoice_lines_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("qbo_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(default=0, nullable=False)
    activity: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity: Mapped[Optional[Decimal]] = mapped_column(QUANTITY, nullable=True)
    rate: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)

    invoice: Mapped["QuickBooksInvoice"] = relationship(back_populates="lines")


class InvoiceExpense(Base):
    __tablename__ = "qbo_invoice_expenses"
    __table_args__ = (
        Index("ix_qbo_invoice_expenses_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("qbo_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)

    invoice: Mapped["QuickBooksInvoice"] = relationship(back_populates="expenses")


class InvoiceWorkOrder(Base):
    __tablename__ = "qbo_invoice_work_orders"
    __table_args__ = (
        UniqueConstraint("invoice_id", "work_order_id", name="uq_invoice_work_order"),
    )

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("qbo_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    work_order_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(default=0, nullable=False)

    work_order: Mapped["WorkOrder"] = relationship(lazy="selectin")

"""QuickBooks connection, work orders and invoices

Revision ID: 20261019_0001
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


environment_enum = sa.Enum(
    "sandbox",
    "prod",
    name="environment_enum",
    native_enum=False,
)

work_order_status_enum = sa.Enum(
    "open",
    "scheduled",
    "closed",
    name="work_order_status_enum",
    native_enum=False,
)

record_status_enum = sa.Enum(
    "publish",
    "draft",
    "pending",
    "private",
    "trash",
    name="record_status_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def _timestamps(*, with_updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        )
    ]
    if with_updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            )
        )
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)
    money = sa.Numeric(14, 2)

    op.create_table(
        "qbo_connections",
        sa.Column("id", guid, nullable=False),
        sa.Column("environment", environment_enum, nullable=False, server_default="sandbox"),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("refresh_token_enc", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=True),
        sa.Column("refresh_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("environment", name="uq_qbo_connection_environment"),
    )

    op.create_table(
        "engineers",
        sa.Column("id", guid, nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "work_orders",
        sa.Column("id", guid, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("status", work_order_status_enum, nullable=False, server_default="open"),
        sa.Column("engineer_id", guid, nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["engineer_id"], ["engineers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_orders_title", "work_orders", ["title"])
    op.create_index("ix_work_orders_status", "work_orders", ["status"])

    op.create_table(
        "qbo_invoices",
        sa.Column("id", guid, nullable=False),
        sa.Column("invoice_no", sa.String(length=100), nullable=True),
        sa.Column("qbo_invoice_id", sa.String(length=64), nullable=True),
        sa.Column("customer", sa.String(length=255), nullable=True),
        sa.Column("invoice_date", sa.String(length=64), nullable=True),
        sa.Column("due_date", sa.String(length=64), nullable=True),
        sa.Column("total_billed", money, nullable=True),
        sa.Column("balance_due", money, nullable=True),
        sa.Column("total_paid", money, nullable=True),
        sa.Column("payment_status", sa.String(length=16), nullable=True),
        sa.Column("terms", sa.String(length=100), nullable=True),
        sa.Column("purchase_order", sa.String(length=100), nullable=True),
        sa.Column("bill_to", sa.Text(), nullable=True),
        sa.Column("ship_to", sa.Text(), nullable=True),
        sa.Column("record_status", record_status_enum, nullable=False, server_default="publish"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_no", name="uq_qbo_invoice_no"),
    )
    op.create_index("ix_qbo_invoices_record_status", "qbo_invoices", ["record_status"])

    op.create_table(
        "qbo_invoice_lines",
        sa.Column("id", guid, nullable=False),
        sa.Column("invoice_id", guid, nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("activity", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=True),
        sa.Column("rate", money, nullable=True),
        sa.Column("amount", money, nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["qbo_invoices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_qbo_invoice_lines_invoice_id", "qbo_invoice_lines", ["invoice_id"])

    op.create_table(
        "qbo_invoice_expenses",
        sa.Column("id", guid, nullable=False),
        sa.Column("invoice_id", guid, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", money, nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["qbo_invoices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_qbo_invoice_expenses_invoice_id", "qbo_invoice_expenses", ["invoice_id"])

    op.create_table(
        "qbo_invoice_work_orders",
        sa.Column("id", guid, nullable=False),
        sa.Column("invoice_id", guid, nullable=False),
        sa.Column("work_order_id", guid, nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["invoice_id"], ["qbo_invoices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_id", "work_order_id", name="uq_invoice_work_order"),
    )


def downgrade() -> None:
    op.drop_table("qbo_invoice_work_orders")
    op.drop_index("ix_qbo_invoice_expenses_invoice_id", table_name="qbo_invoice_expenses")
    op.drop_table("qbo_invoice_expenses")
    op.drop_index("ix_qbo_invoice_lines_invoice_id", table_name="qbo_invoice_lines")
    op.drop_table("qbo_invoice_lines")
    op.drop_index("ix_qbo_invoices_record_status", table_name="qbo_invoices")
    op.drop_table("qbo_invoices")
    op.drop_index("ix_work_orders_status", table_name="work_orders")
    op.drop_index("ix_work_orders_title", table_name="work_orders")
    op.drop_table("work_orders")
    op.drop_table("engineers")
    op.drop_table("qbo_connections")

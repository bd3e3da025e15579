"""create tenants, products, sales orders, serialized units, audit log

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TENANT_EXPR = "nullif(trim(current_setting('app.tenant_id', true)), '')::uuid"

# Tables carrying tenant_id directly
TENANT_TABLES = ("products", "sales_orders", "serialized_units", "audit_log")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        "tenants",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), unique=True, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
    )

    op.create_table(
        "products",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sku", sa.String(100), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_products_tenant_id", "products", ["tenant_id"])

    op.create_table(
        "sales_orders",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("order_reference", sa.String(100), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="PENDING"),
        sa.Column("shipping_address", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sales_orders_tenant_id", "sales_orders", ["tenant_id"])

    op.create_table(
        "sales_order_lines",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("sales_order_id", UUID(as_uuid=True), sa.ForeignKey("sales_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("quantity > 0", name="ck_sales_order_lines_quantity_positive"),
    )
    op.create_index("ix_sales_order_lines_sales_order_id", "sales_order_lines", ["sales_order_id"])

    op.create_table(
        "serialized_units",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("serial_number", sa.String(255), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="in_stock"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("warehouse_id", UUID(as_uuid=True), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("manufacturing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("import_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("import_batch", sa.String(100), nullable=True),
        sa.Column("supplier_id", UUID(as_uuid=True), nullable=True),
        sa.Column("cost_price", sa.Numeric(18, 4), nullable=True),
        sa.Column("sold_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("sales_orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("customer_reference", sa.String(255), nullable=True),
        sa.Column("sale_price", sa.Numeric(18, 4), nullable=True),
        sa.Column("warranty_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warranty_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warranty_months", sa.Integer(), nullable=True),
        sa.Column("reserved_by", sa.String(100), nullable=True),
        sa.Column("reserved_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "serial_number", name="uq_serialized_units_tenant_serial"),
        sa.CheckConstraint(
            "status IN ('in_stock', 'sold', 'returned', 'warranty', 'defective', 'scrapped')",
            name="ck_serialized_units_status",
        ),
        sa.CheckConstraint(
            "reserved_until IS NULL OR status = 'in_stock'",
            name="ck_serialized_units_hold_in_stock",
        ),
    )
    op.create_index(
        "ix_serialized_units_tenant_product_status",
        "serialized_units",
        ["tenant_id", "product_id", "status"],
    )
    op.create_index("ix_serialized_units_reserved_until", "serialized_units", ["reserved_until"])
    op.create_index("ix_serialized_units_order_id", "serialized_units", ["order_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("actor_id", sa.String(100), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("target_type", sa.String(100), nullable=True),
        sa.Column("target_id", UUID(as_uuid=True), nullable=True),
        sa.Column("payload", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_audit_log_tenant_created", "audit_log", ["tenant_id", "created_at"])

    # Row level security: every tenant-scoped table filtered by app.tenant_id
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"CREATE POLICY {table}_tenant_policy ON {table} USING (tenant_id = {TENANT_EXPR})")

    op.execute("ALTER TABLE sales_order_lines ENABLE ROW LEVEL SECURITY")
    op.execute(
        "CREATE POLICY sales_order_lines_tenant_policy ON sales_order_lines "
        "USING (sales_order_id IN (SELECT id FROM sales_orders))"
    )


def downgrade() -> None:
    op.execute("DROP POLICY IF EXISTS sales_order_lines_tenant_policy ON sales_order_lines")
    for table in reversed(TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS {table}_tenant_policy ON {table}")

    op.drop_table("audit_log")
    op.drop_table("serialized_units")
    op.drop_table("sales_order_lines")
    op.drop_table("sales_orders")
    op.drop_table("products")
    op.drop_table("tenants")

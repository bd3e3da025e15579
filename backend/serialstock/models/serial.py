"""SerialStock — Serialized unit model."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from serialstock.db.base import Base, utcnow


class UnitStatus(str, Enum):
    """Lifecycle status of one physical unit.

    A reservation is not a status: it is a hold annotation
    (`reserved_by`, `reserved_until`) on an `in_stock` unit.
    """

    IN_STOCK = "in_stock"
    SOLD = "sold"
    RETURNED = "returned"
    WARRANTY = "warranty"
    DEFECTIVE = "defective"
    SCRAPPED = "scrapped"


class SerializedUnit(Base):
    """One row per physical, individually identified item."""

    __tablename__ = "serialized_units"
    __table_args__ = (
        UniqueConstraint("tenant_id", "serial_number", name="uq_serialized_units_tenant_serial"),
        Index("ix_serialized_units_tenant_product_status", "tenant_id", "product_id", "status"),
        Index("ix_serialized_units_reserved_until", "reserved_until"),
        Index("ix_serialized_units_order_id", "order_id"),
        CheckConstraint(
            "status IN ('in_stock', 'sold', 'returned', 'warranty', 'defective', 'scrapped')",
            name="ck_serialized_units_status",
        ),
        CheckConstraint("reserved_until IS NULL OR status = 'in_stock'", name="ck_serialized_units_hold_in_stock"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    serial_number: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=UnitStatus.IN_STOCK.value)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Placement
    warehouse_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Receipt
    manufacturing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    import_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    import_batch: Mapped[str | None] = mapped_column(String(100), nullable=True)
    supplier_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    cost_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)

    # Sale (set only while status = sold)
    sold_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("sales_orders.id", ondelete="SET NULL"), nullable=True)
    customer_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)

    # Warranty window: end = start + months
    warranty_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    warranty_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    warranty_months: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Checkout hold (only while status = in_stock)
    reserved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reserved_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

"""SerialStock — Serialized unit request/response schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from serialstock.models.serial import UnitStatus


class UnitCreate(BaseModel):
    serial_number: str = Field(..., min_length=1, max_length=255)
    product_id: UUID
    status: UnitStatus = UnitStatus.IN_STOCK
    notes: str | None = None
    warehouse_id: UUID | None = None
    location: str | None = Field(None, max_length=255)
    manufacturing_date: datetime | None = None
    import_date: datetime | None = None
    import_batch: str | None = Field(None, max_length=100)
    supplier_id: UUID | None = None
    cost_price: Decimal | None = Field(None, ge=0)
    sold_date: datetime | None = None
    order_id: UUID | None = None
    customer_reference: str | None = Field(None, max_length=255)
    sale_price: Decimal | None = Field(None, ge=0)
    warranty_start_date: datetime | None = None
    warranty_months: int | None = Field(None, ge=1, le=600)


class UnitUpdate(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    serial_number: str | None = Field(None, min_length=1, max_length=255)
    product_id: UUID | None = None
    status: UnitStatus | None = None
    notes: str | None = None
    warehouse_id: UUID | None = None
    location: str | None = Field(None, max_length=255)
    manufacturing_date: datetime | None = None
    import_date: datetime | None = None
    import_batch: str | None = Field(None, max_length=100)
    supplier_id: UUID | None = None
    cost_price: Decimal | None = Field(None, ge=0)
    sold_date: datetime | None = None
    order_id: UUID | None = None
    customer_reference: str | None = Field(None, max_length=255)
    sale_price: Decimal | None = Field(None, ge=0)
    warranty_start_date: datetime | None = None
    warranty_months: int | None = Field(None, ge=1, le=600)


class UnitResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    serial_number: str
    product_id: UUID
    status: str
    notes: str | None
    warehouse_id: UUID | None
    location: str | None
    manufacturing_date: datetime | None
    import_date: datetime | None
    import_batch: str | None
    supplier_id: UUID | None
    cost_price: Decimal | None
    sold_date: datetime | None
    order_id: UUID | None
    customer_reference: str | None
    sale_price: Decimal | None
    warranty_start_date: datetime | None
    warranty_end_date: datetime | None
    warranty_months: int | None
    reserved_by: str | None
    reserved_until: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class TrackedOrder(BaseModel):
    id: UUID
    order_reference: str | None
    customer_name: str
    status: str
    created_at: datetime | None

    model_config = {"from_attributes": True}


class UnitTrackResponse(BaseModel):
    """A unit with the product and order it is linked to, and where it can go next."""

    unit: UnitResponse
    product_name: str | None
    product_sku: str | None
    order: TrackedOrder | None
    allowed_transitions: list[str]
    warranty_active: bool


class UnitQRCodeResponse(BaseModel):
    serial_number: str
    product_name: str | None
    warranty_check_url: str
    qr_data: str


class BulkImportItemResult(BaseModel):
    index: int
    serial_number: str | None
    success: bool
    unit: UnitResponse | None = None
    error: dict[str, Any] | None = None


class ReserveRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(1, ge=1, le=1000)
    timeout_minutes: int | None = Field(None, ge=1)
    serial_numbers: list[str] | None = Field(None, max_length=1000)


class ReservationResponse(BaseModel):
    reserved: list[UnitResponse]
    reserved_until: datetime
    timeout_minutes: int
    count: int


class ReleaseRequest(BaseModel):
    unit_ids: list[UUID] = Field(..., min_length=1, max_length=1000)


class AutoGenerateRequest(BaseModel):
    product_id: UUID | None = None
    force: bool = False


class WarrantyBackfillRequest(BaseModel):
    default_months: int | None = Field(None, ge=1, le=600)

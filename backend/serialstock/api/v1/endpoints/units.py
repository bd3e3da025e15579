"""SerialStock — Serialized unit endpoints: CRUD, reservations, reconciliation jobs."""
import csv
import io
import logging
import math
from typing import Any
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response, status
from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import SQLAlchemyError

from serialstock.api.deps import (
    PERM_UNITS_DELETE,
    PERM_UNITS_READ,
    PERM_UNITS_RECONCILE,
    PERM_UNITS_RESERVE,
    PERM_UNITS_WRITE,
    CurrentUser,
    DbSession,
    require_permission,
)
from serialstock.config import get_settings
from serialstock.core.errors import NotFound, ServiceError, StoreUnavailable, ValidationError
from serialstock.core.responses import ApiResponse, Meta
from serialstock.db.base import utcnow
from serialstock.models.serial import SerializedUnit, UnitStatus
from serialstock.schemas.unit import (
    AutoGenerateRequest,
    BulkImportItemResult,
    ReleaseRequest,
    ReservationResponse,
    ReserveRequest,
    TrackedOrder,
    UnitCreate,
    UnitQRCodeResponse,
    UnitResponse,
    UnitTrackResponse,
    UnitUpdate,
    WarrantyBackfillRequest,
)
from serialstock.services.audit_service import (
    ACTION_UNIT_CREATED,
    ACTION_UNIT_DELETED,
    ACTION_UNIT_UPDATED,
    ACTION_UNITS_IMPORTED,
    log_audit,
)
from serialstock.services.lifecycle import allowed_targets
from serialstock.services.reconciliation_service import ReconciliationService
from serialstock.services.reservation_service import ReservationService
from serialstock.services.unit_repository import UnitRepository, as_utc

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_BULK_IMPORT = 1000
MAX_EXPORT_ROWS = 10000

EXPORT_COLUMNS = [
    "serial_number", "product_id", "status", "warehouse_id", "location",
    "import_date", "import_batch", "cost_price",
    "sold_date", "order_id", "customer_reference", "sale_price",
    "warranty_start_date", "warranty_end_date", "reserved_by", "reserved_until", "notes",
]


def _to_response(unit: SerializedUnit) -> UnitResponse:
    return UnitResponse.model_validate(unit)


def _page_meta(page: int, limit: int, total: int) -> Meta:
    return Meta(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0)


# ── Collection ───────────────────────────────────────────────────────────────


@router.post("", response_model=ApiResponse[UnitResponse], status_code=status.HTTP_201_CREATED)
async def create_unit(
    body: UnitCreate,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_WRITE)),
):
    """Register one serialized unit; an in_stock unit adds one to its product's stock."""
    unit = await UnitRepository.create(db, user.tenant_id, body.model_dump())
    log_audit(
        db, user.tenant_id, user.id, ACTION_UNIT_CREATED,
        target_id=unit.id, payload={"serial_number": unit.serial_number, "status": unit.status},
    )
    await db.commit()
    return ApiResponse(data=_to_response(unit))


@router.get("", response_model=ApiResponse[list[UnitResponse]])
async def list_units(
    db: DbSession,
    search: str | None = Query(None, max_length=255),
    status_filter: UnitStatus | None = Query(None, alias="status"),
    product_id: UUID | None = Query(None),
    customer_id: str | None = Query(None, description="Matches customer_reference"),
    warehouse_id: UUID | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    units, total = await UnitRepository.list_units(
        db, user.tenant_id,
        search=search,
        status=status_filter,
        product_id=product_id,
        warehouse_id=warehouse_id,
        customer_reference=customer_id,
        page=page,
        limit=limit,
    )
    return ApiResponse(data=[_to_response(u) for u in units], meta=_page_meta(page, limit, total))


@router.post("/bulk-import", response_model=ApiResponse[list[BulkImportItemResult]])
async def bulk_import_units(
    db: DbSession,
    items: list[dict[str, Any]] = Body(...),
    user: CurrentUser = Depends(require_permission(PERM_UNITS_WRITE)),
):
    """Create many units; each item succeeds or fails on its own."""
    if not items:
        raise ValidationError("At least one unit is required")
    if len(items) > MAX_BULK_IMPORT:
        raise ValidationError(f"At most {MAX_BULK_IMPORT} units per import", count=len(items))
    results: list[BulkImportItemResult] = []
    for index, raw in enumerate(items):
        serial = raw.get("serial_number") if isinstance(raw, dict) else None
        try:
            body = UnitCreate.model_validate(raw)
        except SchemaError as exc:
            results.append(BulkImportItemResult(
                index=index,
                serial_number=serial,
                success=False,
                error={
                    "code": "VALIDATION_ERROR",
                    "message": "Invalid unit",
                    "field_errors": [
                        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
                        for e in exc.errors()
                    ],
                },
            ))
            continue
        try:
            async with db.begin_nested():
                unit = await UnitRepository.create(db, user.tenant_id, body.model_dump())
        except ServiceError as exc:
            results.append(BulkImportItemResult(
                index=index, serial_number=serial, success=False, error=exc.to_dict(),
            ))
            continue
        except SQLAlchemyError as exc:
            logger.warning("Bulk import item %d (%s) failed to store: %s", index, serial, exc)
            err = StoreUnavailable("Unit could not be stored", reason=type(exc).__name__)
            results.append(BulkImportItemResult(
                index=index, serial_number=serial, success=False, error=err.to_dict(),
            ))
            continue
        results.append(BulkImportItemResult(
            index=index, serial_number=unit.serial_number, success=True, unit=_to_response(unit),
        ))

    imported = sum(1 for r in results if r.success)
    if imported:
        log_audit(
            db, user.tenant_id, user.id, ACTION_UNITS_IMPORTED,
            payload={"imported": imported, "failed": len(results) - imported},
        )
    await db.commit()
    logger.info("Bulk import for tenant %s: %d of %d created", user.tenant_id, imported, len(results))
    return ApiResponse(data=results, meta=Meta(page=1, limit=len(results), total=len(results), pages=1))


# ── Read-only views ──────────────────────────────────────────────────────────


@router.get("/stats", response_model=ApiResponse[dict])
async def unit_stats(
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    """Unit counts per status, active holds and total."""
    return ApiResponse(data=await UnitRepository.stats(db, user.tenant_id))


@router.get("/search", response_model=ApiResponse[list[UnitResponse]])
async def search_units(
    db: DbSession,
    q: str = Query(..., min_length=1, max_length=255),
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    """Quick search by serial number or product name (first 20 matches)."""
    units, _ = await UnitRepository.list_units(db, user.tenant_id, search=q, page=1, limit=20)
    return ApiResponse(data=[_to_response(u) for u in units])


@router.get("/lookup/{serial_number}", response_model=ApiResponse[UnitResponse])
async def lookup_unit(
    serial_number: str,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    unit = await UnitRepository.find_by_serial(db, user.tenant_id, serial_number)
    if not unit:
        raise NotFound(f"Serial number not found: {serial_number}", serial_number=serial_number)
    return ApiResponse(data=_to_response(unit))


@router.get("/export")
async def export_units(
    db: DbSession,
    search: str | None = Query(None, max_length=255),
    status_filter: UnitStatus | None = Query(None, alias="status"),
    product_id: UUID | None = Query(None),
    customer_id: str | None = Query(None),
    warehouse_id: UUID | None = Query(None),
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    """CSV of the filtered unit list."""
    units, _ = await UnitRepository.list_units(
        db, user.tenant_id,
        search=search,
        status=status_filter,
        product_id=product_id,
        warehouse_id=warehouse_id,
        customer_reference=customer_id,
        page=1,
        limit=MAX_EXPORT_ROWS,
    )
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for unit in units:
        row = []
        for col in EXPORT_COLUMNS:
            value = getattr(unit, col)
            row.append(value.isoformat() if hasattr(value, "isoformat") else ("" if value is None else value))
        writer.writerow(row)
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="serialized_units.csv"'},
    )


@router.get("/by-product/{product_id}", response_model=ApiResponse[list[UnitResponse]])
async def list_units_by_product(
    product_id: UUID,
    db: DbSession,
    status_filter: UnitStatus | None = Query(None, alias="status"),
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    await UnitRepository.get_product(db, user.tenant_id, product_id)
    units = await UnitRepository.list_by_product(db, user.tenant_id, product_id, status=status_filter)
    return ApiResponse(data=[_to_response(u) for u in units])


# ── Reservations ─────────────────────────────────────────────────────────────


@router.post("/reserve", response_model=ApiResponse[ReservationResponse])
async def reserve_units(
    body: ReserveRequest,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_RESERVE)),
):
    """Hold units for checkout; all or nothing."""
    reservation = await ReservationService.reserve(
        db, user.tenant_id, user.id,
        product_id=body.product_id,
        quantity=body.quantity,
        timeout_minutes=body.timeout_minutes,
        serial_numbers=body.serial_numbers,
    )
    await db.commit()
    return ApiResponse(data=ReservationResponse(
        reserved=[_to_response(u) for u in reservation.units],
        reserved_until=reservation.reserved_until,
        timeout_minutes=reservation.timeout_minutes,
        count=len(reservation.units),
    ))


@router.post("/release", response_model=ApiResponse[dict])
async def release_units(
    body: ReleaseRequest,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_RESERVE)),
):
    """Release the caller's own holds; units held by others are left untouched."""
    released = await ReservationService.release(db, user.tenant_id, user.id, body.unit_ids)
    await db.commit()
    return ApiResponse(data={"released_count": len(released), "unit_ids": [str(u) for u in released]})


@router.post("/release-expired", response_model=ApiResponse[dict])
async def release_expired(
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_WRITE)),
):
    result = await ReservationService.sweep_expired(db, user.tenant_id)
    await db.commit()
    return ApiResponse(data={"released_count": result.released_count, "released": result.released})


# ── Reconciliation jobs ──────────────────────────────────────────────────────


@router.post("/sync-stock", response_model=ApiResponse[dict])
async def sync_stock(
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_RECONCILE)),
):
    """Correct product stock counters from in_stock unit counts."""
    report = await ReconciliationService.sync_stock_counters(db, user.tenant_id, actor_id=user.id)
    await db.commit()
    return ApiResponse(data=report.to_dict())


@router.post("/sync-sold-status", response_model=ApiResponse[dict])
async def sync_sold_status(
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_RECONCILE)),
):
    report = await ReconciliationService.backfill_sold_status(db, user.tenant_id, actor_id=user.id)
    await db.commit()
    return ApiResponse(data=report.to_dict())


@router.post("/sync-warranty-dates", response_model=ApiResponse[dict])
async def sync_warranty_dates(
    db: DbSession,
    body: WarrantyBackfillRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_RECONCILE)),
):
    report = await ReconciliationService.backfill_warranty_dates(
        db, user.tenant_id,
        default_months=body.default_months if body else None,
        actor_id=user.id,
    )
    await db.commit()
    return ApiResponse(data=report.to_dict())


@router.post("/auto-generate", response_model=ApiResponse[dict])
async def auto_generate(
    db: DbSession,
    body: AutoGenerateRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_RECONCILE)),
):
    """Create unit records for legacy stock that has none."""
    body = body or AutoGenerateRequest()
    report = await ReconciliationService.auto_generate_units(
        db, user.tenant_id, product_id=body.product_id, force=body.force, actor_id=user.id,
    )
    await db.commit()
    return ApiResponse(data=report.to_dict())


# ── Single unit ──────────────────────────────────────────────────────────────


@router.get("/{unit_id}", response_model=ApiResponse[UnitResponse])
async def get_unit(
    unit_id: UUID,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    unit = await UnitRepository.get(db, user.tenant_id, unit_id)
    return ApiResponse(data=_to_response(unit))


@router.get("/{unit_id}/track", response_model=ApiResponse[UnitTrackResponse])
async def track_unit(
    unit_id: UUID,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    """Where a unit stands: its product, the order it went out on, and its next legal statuses."""
    unit, product, order = await UnitRepository.get_with_links(db, user.tenant_id, unit_id)
    warranty_end = as_utc(unit.warranty_end_date)
    return ApiResponse(data=UnitTrackResponse(
        unit=_to_response(unit),
        product_name=product.name if product else None,
        product_sku=product.sku if product else None,
        order=TrackedOrder.model_validate(order) if order else None,
        allowed_transitions=sorted(s.value for s in allowed_targets(unit.status)),
        warranty_active=warranty_end is not None and warranty_end > utcnow(),
    ))


@router.get("/{unit_id}/qrcode", response_model=ApiResponse[UnitQRCodeResponse])
async def unit_qrcode(
    unit_id: UUID,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_READ)),
):
    """Warranty-check link for the unit's label; the QR payload is the link itself."""
    unit, product, _ = await UnitRepository.get_with_links(db, user.tenant_id, unit_id)
    url = f"{get_settings().FRONTEND_URL.rstrip('/')}/warranty-check?serial={quote(unit.serial_number, safe='')}"
    return ApiResponse(data=UnitQRCodeResponse(
        serial_number=unit.serial_number,
        product_name=product.name if product else None,
        warranty_check_url=url,
        qr_data=url,
    ))


@router.put("/{unit_id}", response_model=ApiResponse[UnitResponse])
async def update_unit(
    unit_id: UUID,
    body: UnitUpdate,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_WRITE)),
):
    """Partial update; a status change must be a legal lifecycle transition."""
    patch = body.model_dump(exclude_unset=True)
    before = await UnitRepository.get(db, user.tenant_id, unit_id)
    old_status = before.status
    unit = await UnitRepository.update(db, user.tenant_id, unit_id, patch)
    log_audit(
        db, user.tenant_id, user.id, ACTION_UNIT_UPDATED,
        target_id=unit.id,
        payload={
            "fields": sorted(patch),
            "old_status": old_status,
            "new_status": unit.status,
        },
    )
    await db.commit()
    return ApiResponse(data=_to_response(unit))


@router.delete("/{unit_id}", response_model=ApiResponse[dict])
async def delete_unit(
    unit_id: UUID,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_UNITS_DELETE)),
):
    unit = await UnitRepository.delete(db, user.tenant_id, unit_id)
    log_audit(
        db, user.tenant_id, user.id, ACTION_UNIT_DELETED,
        target_id=unit.id,
        payload={"serial_number": unit.serial_number, "status": unit.status},
    )
    await db.commit()
    return ApiResponse(data={"id": str(unit.id), "deleted": True})

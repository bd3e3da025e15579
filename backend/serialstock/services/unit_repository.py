"""SerialStock — UnitRepository: the only writer of serialized_units rows and product.stock.

Every write that depends on a value we read first is expressed as a
conditional UPDATE/DELETE whose WHERE clause repeats the observed value; a
rowcount of zero means another writer got there first. Product counters only
ever move by relative increments (`stock = stock + delta`), except for the
conditional overwrite used by stock reconciliation.
"""
import calendar
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from serialstock.config import get_settings
from serialstock.core.errors import ConflictLostRace, DuplicateSerial, NotFound, ValidationError
from serialstock.db.base import utcnow
from serialstock.models.product import Product
from serialstock.models.sales_order import SalesOrder
from serialstock.models.serial import SerializedUnit, UnitStatus
from serialstock.services.lifecycle import parse_status, stock_contribution, transition_delta

logger = logging.getLogger(__name__)

CREATABLE_FIELDS = frozenset({
    "serial_number", "product_id", "status", "notes",
    "warehouse_id", "location",
    "manufacturing_date", "import_date", "import_batch", "supplier_id", "cost_price",
    "sold_date", "order_id", "customer_reference", "sale_price",
    "warranty_start_date", "warranty_months",
})

# warranty_end_date is derived, reserved_* belong to the reservation service
UPDATABLE_FIELDS = CREATABLE_FIELDS

SALE_FIELDS = ("sold_date", "order_id", "customer_reference", "sale_price")
DATETIME_FIELDS = ("manufacturing_date", "import_date", "sold_date", "warranty_start_date")
WARRANTY_INPUTS = frozenset({"sold_date", "warranty_start_date", "warranty_months"})


def add_months(start: datetime, months: int) -> datetime:
    """Calendar-month addition, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def like_pattern(term: str) -> str:
    """Substring LIKE pattern with %, _ and the escape char taken literally (escape='\\')."""
    escaped = term.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _is_duplicate_serial(exc: IntegrityError) -> bool:
    msg = str(exc.orig)
    return "uq_serialized_units_tenant_serial" in msg or "serialized_units.serial_number" in msg


def _clean_serial(value: Any) -> str:
    serial = str(value or "").strip()
    if not serial:
        raise ValidationError("serial_number is required")
    return serial


def _normalize_dates(values: dict[str, Any]) -> None:
    for key in DATETIME_FIELDS:
        if key in values:
            values[key] = as_utc(values[key])


def _warranty_window(start: datetime | None, months: int | None) -> dict[str, Any]:
    if start is None:
        return {"warranty_start_date": None, "warranty_end_date": None}
    months = months or get_settings().DEFAULT_WARRANTY_MONTHS
    return {
        "warranty_start_date": start,
        "warranty_end_date": add_months(start, months),
        "warranty_months": months,
    }


def _sale_metadata(
    values: dict[str, Any],
    old_status: UnitStatus | None,
    new_status: UnitStatus,
    current: SerializedUnit | None = None,
) -> None:
    """Fill in or clear sale and warranty fields so they stay consistent with status.

    `values` is the pending write and is modified in place.
    """
    if new_status == UnitStatus.SOLD:
        if old_status == UnitStatus.SOLD and current is not None:
            if not WARRANTY_INPUTS & values.keys():
                return
            sold_date = values.get("sold_date") or current.sold_date
            start = values.get("warranty_start_date") or current.warranty_start_date or sold_date
            months = values.get("warranty_months") or current.warranty_months
        else:
            sold_date = values.get("sold_date") or utcnow()
            start = values.get("warranty_start_date") or sold_date
            months = values.get("warranty_months") or (current.warranty_months if current else None)
        values["sold_date"] = sold_date
        if start is not None:
            values.update(_warranty_window(start, months))
        return

    offending = [k for k in SALE_FIELDS if values.get(k) is not None]
    if offending:
        raise ValidationError(
            "Sale metadata can only be set on sold units",
            fields=offending,
            status=new_status.value,
        )

    if old_status == UnitStatus.SOLD and new_status == UnitStatus.IN_STOCK:
        # back on the shelf: the unit will be sold again with a fresh window
        for key in SALE_FIELDS:
            values[key] = None
        values["warranty_start_date"] = None
        values["warranty_end_date"] = None
    elif "warranty_start_date" in values or "warranty_months" in values:
        start = values.get("warranty_start_date", current.warranty_start_date if current else None)
        months = values.get("warranty_months") or (current.warranty_months if current else None)
        values.update(_warranty_window(start, months))


class UnitRepository:
    """Persistence and lookup for serialized units, always scoped by tenant."""

    # ── Reads ────────────────────────────────────────────────────────────────

    @staticmethod
    async def find_by_id(db: AsyncSession, tenant_id: UUID, unit_id: UUID) -> SerializedUnit | None:
        result = await db.execute(
            select(SerializedUnit)
            .where(SerializedUnit.id == unit_id, SerializedUnit.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get(db: AsyncSession, tenant_id: UUID, unit_id: UUID) -> SerializedUnit:
        unit = await UnitRepository.find_by_id(db, tenant_id, unit_id)
        if not unit:
            raise NotFound(f"Serialized unit not found: {unit_id}", unit_id=str(unit_id))
        return unit

    @staticmethod
    async def get_with_links(
        db: AsyncSession, tenant_id: UUID, unit_id: UUID
    ) -> tuple[SerializedUnit, Product | None, SalesOrder | None]:
        """Unit together with its product and linked sales order (either may be missing)."""
        row = (
            await db.execute(
                select(SerializedUnit, Product, SalesOrder)
                .outerjoin(Product, Product.id == SerializedUnit.product_id)
                .outerjoin(SalesOrder, SalesOrder.id == SerializedUnit.order_id)
                .where(SerializedUnit.id == unit_id, SerializedUnit.tenant_id == tenant_id)
                .execution_options(populate_existing=True)
            )
        ).first()
        if not row:
            raise NotFound(f"Serialized unit not found: {unit_id}", unit_id=str(unit_id))
        return row[0], row[1], row[2]

    @staticmethod
    async def find_by_serial(
        db: AsyncSession,
        tenant_id: UUID,
        serial_number: str,
        product_id: UUID | None = None,
    ) -> SerializedUnit | None:
        q = select(SerializedUnit).where(
            SerializedUnit.tenant_id == tenant_id,
            SerializedUnit.serial_number == serial_number.strip(),
        )
        if product_id:
            q = q.where(SerializedUnit.product_id == product_id)
        result = await db.execute(q.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_product(db: AsyncSession, tenant_id: UUID, product_id: UUID) -> Product:
        result = await db.execute(
            select(Product)
            .where(Product.id == product_id, Product.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        product = result.scalar_one_or_none()
        if not product:
            raise NotFound(f"Product not found: {product_id}", product_id=str(product_id))
        return product

    @staticmethod
    async def list_units(
        db: AsyncSession,
        tenant_id: UUID,
        *,
        search: str | None = None,
        status: str | None = None,
        product_id: UUID | None = None,
        warehouse_id: UUID | None = None,
        customer_reference: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[SerializedUnit], int]:
        """Filtered, paginated list, most recent first. Returns (items, total)."""
        conditions = [SerializedUnit.tenant_id == tenant_id]
        if status:
            conditions.append(SerializedUnit.status == parse_status(status).value)
        if product_id:
            conditions.append(SerializedUnit.product_id == product_id)
        if warehouse_id:
            conditions.append(SerializedUnit.warehouse_id == warehouse_id)
        if customer_reference:
            conditions.append(SerializedUnit.customer_reference == customer_reference)
        if search:
            term = like_pattern(search)
            conditions.append(or_(
                SerializedUnit.serial_number.ilike(term, escape="\\"),
                Product.name.ilike(term, escape="\\"),
            ))

        count_q = (
            select(func.count(SerializedUnit.id))
            .select_from(SerializedUnit)
            .outerjoin(Product, Product.id == SerializedUnit.product_id)
            .where(*conditions)
        )
        total = (await db.execute(count_q)).scalar_one()

        q = (
            select(SerializedUnit)
            .outerjoin(Product, Product.id == SerializedUnit.product_id)
            .where(*conditions)
            .order_by(SerializedUnit.created_at.desc(), SerializedUnit.serial_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(q)
        return list(result.scalars().all()), total

    @staticmethod
    async def list_by_product(
        db: AsyncSession,
        tenant_id: UUID,
        product_id: UUID,
        status: str | None = None,
        limit: int = 1000,
    ) -> list[SerializedUnit]:
        items, _ = await UnitRepository.list_units(
            db, tenant_id, product_id=product_id, status=status, page=1, limit=limit
        )
        return items

    @staticmethod
    async def stats(db: AsyncSession, tenant_id: UUID) -> dict[str, int]:
        """Unit counts per status, plus active holds and the overall total."""
        rows = (
            await db.execute(
                select(SerializedUnit.status, func.count(SerializedUnit.id))
                .where(SerializedUnit.tenant_id == tenant_id)
                .group_by(SerializedUnit.status)
            )
        ).all()
        counts = {s.value: 0 for s in UnitStatus}
        counts.update({status: count for status, count in rows})
        counts["total"] = sum(count for _, count in rows)
        counts["reserved"] = (
            await db.execute(
                select(func.count(SerializedUnit.id)).where(
                    SerializedUnit.tenant_id == tenant_id,
                    SerializedUnit.reserved_until > utcnow(),
                )
            )
        ).scalar_one()
        return counts

    @staticmethod
    async def count_units(
        db: AsyncSession,
        tenant_id: UUID,
        product_id: UUID,
        *,
        status: UnitStatus | None = None,
        order_id: UUID | None = None,
    ) -> int:
        q = select(func.count(SerializedUnit.id)).where(
            SerializedUnit.tenant_id == tenant_id,
            SerializedUnit.product_id == product_id,
        )
        if status:
            q = q.where(SerializedUnit.status == status.value)
        if order_id:
            q = q.where(SerializedUnit.order_id == order_id)
        return (await db.execute(q)).scalar_one()

    @staticmethod
    async def stock_snapshot(db: AsyncSession, tenant_id: UUID, product_id: UUID | None = None) -> list[Any]:
        """Per product: (id, name, sku, stock, in_stock, total_units), read in one statement."""
        counts = (
            select(
                SerializedUnit.product_id.label("product_id"),
                func.count(SerializedUnit.id).label("total_units"),
                func.sum(case((SerializedUnit.status == UnitStatus.IN_STOCK.value, 1), else_=0)).label("in_stock"),
            )
            .where(SerializedUnit.tenant_id == tenant_id)
            .group_by(SerializedUnit.product_id)
            .subquery()
        )
        q = (
            select(
                Product.id,
                Product.name,
                Product.sku,
                Product.stock,
                func.coalesce(counts.c.in_stock, 0).label("in_stock"),
                func.coalesce(counts.c.total_units, 0).label("total_units"),
            )
            .outerjoin(counts, counts.c.product_id == Product.id)
            .where(Product.tenant_id == tenant_id)
            .order_by(Product.name, Product.id)
        )
        if product_id:
            q = q.where(Product.id == product_id)
        return list((await db.execute(q)).all())

    # ── Writes ───────────────────────────────────────────────────────────────

    @staticmethod
    async def adjust_stock(db: AsyncSession, tenant_id: UUID, product_id: UUID, delta: int) -> None:
        """Relative counter change; composes with concurrent adjustments."""
        if not delta:
            return
        await db.execute(
            update(Product)
            .where(Product.id == product_id, Product.tenant_id == tenant_id)
            .values(stock=Product.stock + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def overwrite_stock_if(
        db: AsyncSession, tenant_id: UUID, product_id: UUID, expected: int, new: int
    ) -> bool:
        """Set stock to `new` only if it still equals `expected`."""
        result = await db.execute(
            update(Product)
            .where(Product.id == product_id, Product.tenant_id == tenant_id, Product.stock == expected)
            .values(stock=new, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def create(
        db: AsyncSession,
        tenant_id: UUID,
        data: dict[str, Any],
        *,
        adjust_stock: bool = True,
    ) -> SerializedUnit:
        """Insert a unit; an in_stock unit bumps its product's counter by one.

        `adjust_stock=False` registers a unit the counter already accounts for
        (legacy stock without per-unit records).
        """
        values = {k: v for k, v in data.items() if k in CREATABLE_FIELDS and v is not None}
        serial = _clean_serial(values.get("serial_number"))
        status = parse_status(values.get("status") or UnitStatus.IN_STOCK)
        if not values.get("product_id"):
            raise ValidationError("product_id is required")
        product = await UnitRepository.get_product(db, tenant_id, values["product_id"])

        _normalize_dates(values)
        values.update(serial_number=serial, status=status.value, product_id=product.id)
        values.setdefault("import_date", utcnow())
        _sale_metadata(values, None, status)

        unit = SerializedUnit(tenant_id=tenant_id, **values)
        try:
            async with db.begin_nested():
                db.add(unit)
        except IntegrityError as exc:
            if _is_duplicate_serial(exc):
                raise DuplicateSerial(serial) from None
            raise

        if adjust_stock:
            await UnitRepository.adjust_stock(db, tenant_id, product.id, stock_contribution(status))
        logger.debug("Created unit %s (%s) for product %s", unit.id, serial, product.id)
        return unit

    @staticmethod
    async def update(
        db: AsyncSession,
        tenant_id: UUID,
        unit_id: UUID,
        patch: dict[str, Any],
    ) -> SerializedUnit:
        """Apply allow-listed fields; status changes go through the lifecycle table.

        The row is written only if it still has the status and product we read,
        and the counter effect is applied in the same transaction.
        """
        unit = await UnitRepository.get(db, tenant_id, unit_id)

        ignored = set(patch) - UPDATABLE_FIELDS
        if ignored:
            logger.debug("Ignoring non-updatable fields on unit %s: %s", unit_id, sorted(ignored))
        values = {k: v for k, v in patch.items() if k in UPDATABLE_FIELDS}

        old_status = parse_status(unit.status)
        new_status = parse_status(values.pop("status", None) or old_status)
        transition_delta(old_status, new_status)

        old_product_id = unit.product_id
        new_product_id = values.pop("product_id", None) or old_product_id
        if new_product_id != old_product_id:
            await UnitRepository.get_product(db, tenant_id, new_product_id)

        if "serial_number" in values:
            values["serial_number"] = _clean_serial(values["serial_number"])

        _normalize_dates(values)
        _sale_metadata(values, old_status, new_status, current=unit)
        values.update(status=new_status.value, product_id=new_product_id, updated_at=utcnow())
        if new_status != UnitStatus.IN_STOCK:
            values.update(reserved_by=None, reserved_until=None)

        stmt = (
            update(SerializedUnit)
            .where(
                SerializedUnit.id == unit.id,
                SerializedUnit.tenant_id == tenant_id,
                SerializedUnit.status == old_status.value,
                SerializedUnit.product_id == old_product_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await db.execute(stmt)
        except IntegrityError as exc:
            if _is_duplicate_serial(exc):
                raise DuplicateSerial(values["serial_number"]) from None
            raise
        if result.rowcount == 0:
            logger.warning("Lost race updating unit %s (expected status %s)", unit.id, old_status.value)
            raise ConflictLostRace(
                f"Unit {unit.id} was changed by another operation; re-read and retry",
                unit_id=str(unit.id),
                expected_status=old_status.value,
            )

        old_share = stock_contribution(old_status)
        new_share = stock_contribution(new_status)
        if new_product_id == old_product_id:
            await UnitRepository.adjust_stock(db, tenant_id, old_product_id, new_share - old_share)
        else:
            await UnitRepository.adjust_stock(db, tenant_id, old_product_id, -old_share)
            await UnitRepository.adjust_stock(db, tenant_id, new_product_id, new_share)

        if old_status != new_status:
            logger.info("Unit %s: %s -> %s", unit.id, old_status.value, new_status.value)
        return await UnitRepository.get(db, tenant_id, unit.id)

    @staticmethod
    async def delete(db: AsyncSession, tenant_id: UUID, unit_id: UUID) -> SerializedUnit:
        """Administrative delete; an in_stock unit takes one off its product's counter."""
        unit = await UnitRepository.get(db, tenant_id, unit_id)
        observed = parse_status(unit.status)
        result = await db.execute(
            delete(SerializedUnit)
            .where(
                SerializedUnit.id == unit.id,
                SerializedUnit.tenant_id == tenant_id,
                SerializedUnit.status == observed.value,
                SerializedUnit.product_id == unit.product_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictLostRace(
                f"Unit {unit.id} was changed by another operation; re-read and retry",
                unit_id=str(unit.id),
                expected_status=observed.value,
            )
        await UnitRepository.adjust_stock(db, tenant_id, unit.product_id, -stock_contribution(observed))
        db.expunge(unit)
        return unit

    # ── Holds (used by ReservationService) ───────────────────────────────────

    @staticmethod
    def _holdable(now: datetime):
        return (
            SerializedUnit.status == UnitStatus.IN_STOCK.value,
            or_(SerializedUnit.reserved_until.is_(None), SerializedUnit.reserved_until <= now),
        )

    @staticmethod
    async def count_available(db: AsyncSession, tenant_id: UUID, product_id: UUID, now: datetime) -> int:
        q = select(func.count(SerializedUnit.id)).where(
            SerializedUnit.tenant_id == tenant_id,
            SerializedUnit.product_id == product_id,
            *UnitRepository._holdable(now),
        )
        return (await db.execute(q)).scalar_one()

    @staticmethod
    async def find_available(
        db: AsyncSession,
        tenant_id: UUID,
        product_id: UUID,
        now: datetime,
        limit: int,
        *,
        exclude_ids: set[UUID] | None = None,
        unlinked_only: bool = False,
    ) -> list[SerializedUnit]:
        """In-stock, unheld units, oldest first."""
        q = select(SerializedUnit).where(
            SerializedUnit.tenant_id == tenant_id,
            SerializedUnit.product_id == product_id,
            *UnitRepository._holdable(now),
        )
        if exclude_ids:
            q = q.where(SerializedUnit.id.not_in(list(exclude_ids)))
        if unlinked_only:
            q = q.where(SerializedUnit.order_id.is_(None))
        q = (
            q.order_by(SerializedUnit.created_at.asc(), SerializedUnit.serial_number.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(q)
        return list(result.scalars().all())

    @staticmethod
    async def try_hold(
        db: AsyncSession,
        tenant_id: UUID,
        unit_id: UUID,
        requester_id: str,
        until: datetime,
        now: datetime,
    ) -> bool:
        """Grant a hold only if the unit is in_stock and has no live hold."""
        result = await db.execute(
            update(SerializedUnit)
            .where(
                SerializedUnit.id == unit_id,
                SerializedUnit.tenant_id == tenant_id,
                *UnitRepository._holdable(now),
            )
            .values(reserved_by=requester_id, reserved_until=until, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def release_hold(db: AsyncSession, tenant_id: UUID, unit_id: UUID, requester_id: str) -> bool:
        result = await db.execute(
            update(SerializedUnit)
            .where(
                SerializedUnit.id == unit_id,
                SerializedUnit.tenant_id == tenant_id,
                SerializedUnit.reserved_by == requester_id,
            )
            .values(reserved_by=None, reserved_until=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def find_expired_holds(
        db: AsyncSession, now: datetime, tenant_id: UUID | None = None
    ) -> list[SerializedUnit]:
        q = select(SerializedUnit).where(
            SerializedUnit.reserved_until.is_not(None),
            SerializedUnit.reserved_until < now,
        )
        if tenant_id:
            q = q.where(SerializedUnit.tenant_id == tenant_id)
        result = await db.execute(q.order_by(SerializedUnit.reserved_until).execution_options(populate_existing=True))
        return list(result.scalars().all())

    @staticmethod
    async def clear_expired_hold(db: AsyncSession, unit_id: UUID, now: datetime) -> bool:
        """Clear a hold only if it is still expired at write time."""
        result = await db.execute(
            update(SerializedUnit)
            .where(
                SerializedUnit.id == unit_id,
                SerializedUnit.reserved_until.is_not(None),
                SerializedUnit.reserved_until < now,
            )
            .values(reserved_by=None, reserved_until=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ── Warranty backfill ────────────────────────────────────────────────────

    @staticmethod
    async def set_warranty_window(
        db: AsyncSession,
        tenant_id: UUID,
        unit_id: UUID,
        start: datetime,
        months: int,
    ) -> bool:
        """Fill a missing warranty window on a sold unit (no-op if already set)."""
        start = as_utc(start)
        result = await db.execute(
            update(SerializedUnit)
            .where(
                SerializedUnit.id == unit_id,
                SerializedUnit.tenant_id == tenant_id,
                SerializedUnit.status == UnitStatus.SOLD.value,
                SerializedUnit.warranty_start_date.is_(None),
            )
            .values(
                warranty_start_date=start,
                warranty_end_date=add_months(start, months),
                warranty_months=months,
                sold_date=func.coalesce(SerializedUnit.sold_date, start),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

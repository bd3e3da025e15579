"""SerialStock — ReconciliationService: idempotent repair jobs.

Each job walks its items independently, runs every item in its own
savepoint, and records per-item outcomes instead of failing as a whole.
Running a job again once the data is consistent changes nothing.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from serialstock.config import get_settings
from serialstock.core.errors import DuplicateSerial, ServiceError
from serialstock.db.base import utcnow
from serialstock.models.sales_order import OrderStatus, SalesOrder
from serialstock.models.serial import SerializedUnit, UnitStatus
from serialstock.services.audit_service import (
    ACTION_SOLD_STATUS_BACKFILLED,
    ACTION_STOCK_SYNCED,
    ACTION_UNITS_AUTO_GENERATED,
    ACTION_WARRANTY_BACKFILLED,
    log_audit,
)
from serialstock.services.unit_repository import UnitRepository

logger = logging.getLogger(__name__)

# Orders whose units should already be marked sold
SOLD_ORDER_STATUSES = (
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.COMPLETED.value,
)

# Extra serials tried per product when generated serials are already taken
MAX_SERIAL_COLLISIONS = 100


@dataclass
class JobReport:
    processed: int = 0
    changed: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def fail(self, item: str, exc: Exception) -> None:
        logger.warning("Reconciliation item %s failed: %s", item, exc)
        self.errors.append({"item": item, "error": str(exc)})

    def summary(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "changed": len(self.changed),
            "skipped": len(self.skipped),
            "errors": len(self.errors),
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReconciliationService:
    """Stock counter sync and historical backfills."""

    @staticmethod
    async def sync_stock_counters(
        db: AsyncSession, tenant_id: UUID, actor_id: str | None = None
    ) -> JobReport:
        """Overwrite product.stock with the in_stock unit count where they differ."""
        report = JobReport()
        for row in await UnitRepository.stock_snapshot(db, tenant_id):
            report.processed += 1
            in_stock = int(row.in_stock)
            if row.stock == in_stock:
                continue
            try:
                async with db.begin_nested():
                    ok = await UnitRepository.overwrite_stock_if(db, tenant_id, row.id, row.stock, in_stock)
            except SQLAlchemyError as exc:
                report.fail(str(row.id), exc)
                continue
            if not ok:
                report.errors.append({"item": str(row.id), "error": "stock changed during sync; run again"})
                continue
            report.changed.append({
                "product_id": str(row.id),
                "product_name": row.name,
                "old_stock": row.stock,
                "new_stock": in_stock,
                "total_units": int(row.total_units),
            })

        if report.changed:
            log_audit(
                db, tenant_id, actor_id, ACTION_STOCK_SYNCED,
                target_type="product", payload=report.summary(),
            )
        logger.info("Stock sync for tenant %s: %s", tenant_id, report.summary())
        return report

    @staticmethod
    async def backfill_sold_status(
        db: AsyncSession, tenant_id: UUID, actor_id: str | None = None
    ) -> JobReport:
        """Mark units sold for historical orders placed before automatic transitions.

        Per (order, product), only the ordered quantity (summed over the
        order's lines) not yet linked to the order is filled, FIFO from unheld
        in_stock units; a product that cannot be filled entirely is skipped
        and reported.
        """
        report = JobReport()
        result = await db.execute(
            select(SalesOrder)
            .where(SalesOrder.tenant_id == tenant_id, SalesOrder.status.in_(SOLD_ORDER_STATUSES))
            .order_by(SalesOrder.created_at.asc())
            .options(selectinload(SalesOrder.lines))
        )
        for order in result.scalars().all():
            ordered: dict[UUID, int] = {}
            names: dict[UUID, str | None] = {}
            for line in order.lines:
                ordered[line.product_id] = ordered.get(line.product_id, 0) + line.quantity
                names.setdefault(line.product_id, line.product_name)

            for product_id, quantity in ordered.items():
                report.processed += 1
                item = f"{order.id}:{product_id}"
                linked = await UnitRepository.count_units(db, tenant_id, product_id, order_id=order.id)
                remaining = quantity - linked
                if remaining <= 0:
                    continue

                candidates = await UnitRepository.find_available(
                    db, tenant_id, product_id, utcnow(), remaining, unlinked_only=True
                )
                if len(candidates) < remaining:
                    report.skipped.append({
                        "order_id": str(order.id),
                        "product_id": str(product_id),
                        "product_name": names[product_id],
                        "needed": remaining,
                        "available": len(candidates),
                        "reason": "Not enough in_stock units",
                    })
                    continue

                sold = []
                try:
                    async with db.begin_nested():
                        for unit in candidates:
                            updated = await UnitRepository.update(
                                db, tenant_id, unit.id,
                                {
                                    "status": UnitStatus.SOLD,
                                    "sold_date": order.created_at,
                                    "order_id": order.id,
                                    "customer_reference": order.customer_name,
                                },
                            )
                            sold.append({
                                "serial_number": updated.serial_number,
                                "product_name": names[product_id],
                                "order_id": str(order.id),
                                "sold_date": updated.sold_date.isoformat() if updated.sold_date else None,
                            })
                except (ServiceError, SQLAlchemyError) as exc:
                    report.fail(item, exc)
                    continue
                report.changed.extend(sold)

        if report.changed:
            log_audit(db, tenant_id, actor_id, ACTION_SOLD_STATUS_BACKFILLED, payload=report.summary())
        logger.info("Sold-status backfill for tenant %s: %s", tenant_id, report.summary())
        return report

    @staticmethod
    async def backfill_warranty_dates(
        db: AsyncSession,
        tenant_id: UUID,
        default_months: int | None = None,
        actor_id: str | None = None,
    ) -> JobReport:
        """Derive missing warranty windows on sold units.

        Start date fallback: sold_date, then the linked order's creation
        time, then the unit's own created_at.
        """
        default_months = default_months or get_settings().DEFAULT_WARRANTY_MONTHS
        report = JobReport()
        rows = (
            await db.execute(
                select(
                    SerializedUnit.id,
                    SerializedUnit.serial_number,
                    SerializedUnit.sold_date,
                    SerializedUnit.warranty_months,
                    SerializedUnit.created_at,
                    SalesOrder.created_at.label("order_created_at"),
                )
                .outerjoin(SalesOrder, SalesOrder.id == SerializedUnit.order_id)
                .where(
                    SerializedUnit.tenant_id == tenant_id,
                    SerializedUnit.status == UnitStatus.SOLD.value,
                    SerializedUnit.warranty_start_date.is_(None),
                )
                .order_by(SerializedUnit.created_at.asc())
            )
        ).all()

        for row in rows:
            report.processed += 1
            start = row.sold_date or row.order_created_at or row.created_at
            if start is None:
                report.skipped.append({"serial_number": row.serial_number, "reason": "No date to start warranty from"})
                continue
            months = row.warranty_months or default_months
            try:
                async with db.begin_nested():
                    ok = await UnitRepository.set_warranty_window(db, tenant_id, row.id, start, months)
            except SQLAlchemyError as exc:
                report.fail(row.serial_number, exc)
                continue
            if not ok:
                report.skipped.append({"serial_number": row.serial_number, "reason": "Changed concurrently"})
                continue
            unit = await UnitRepository.get(db, tenant_id, row.id)
            report.changed.append({
                "serial_number": unit.serial_number,
                "warranty_start": unit.warranty_start_date.isoformat(),
                "warranty_end": unit.warranty_end_date.isoformat(),
                "warranty_months": months,
            })

        if report.changed:
            log_audit(db, tenant_id, actor_id, ACTION_WARRANTY_BACKFILLED, payload=report.summary())
        logger.info("Warranty backfill for tenant %s: %s", tenant_id, report.summary())
        return report

    @staticmethod
    async def auto_generate_units(
        db: AsyncSession,
        tenant_id: UUID,
        product_id: UUID | None = None,
        force: bool = False,
        actor_id: str | None = None,
    ) -> JobReport:
        """Create unit records for legacy stock that has none.

        Candidates are the named product, or every product with stock > 0 and
        no unit records (any unit records allowed when `force`). Each gets
        `stock - in_stock` new in_stock units; the counter is left alone since
        it already includes them. Serials are `<sku or product id>-<seq>`.
        """
        if product_id:
            await UnitRepository.get_product(db, tenant_id, product_id)

        report = JobReport()
        for row in await UnitRepository.stock_snapshot(db, tenant_id, product_id):
            if not product_id and (row.stock <= 0 or (row.total_units > 0 and not force)):
                continue
            report.processed += 1
            missing = row.stock - int(row.in_stock)
            if missing <= 0:
                continue

            prefix = row.sku or str(row.id)
            seq = int(row.total_units)
            created = 0
            attempts = 0
            while created < missing and attempts < missing + MAX_SERIAL_COLLISIONS:
                seq += 1
                attempts += 1
                serial = f"{prefix}-{seq:04d}"
                try:
                    unit = await UnitRepository.create(
                        db, tenant_id,
                        {
                            "serial_number": serial,
                            "product_id": row.id,
                            "status": UnitStatus.IN_STOCK,
                            "notes": "Auto-generated for existing stock",
                        },
                        adjust_stock=False,
                    )
                except DuplicateSerial:
                    continue
                except (ServiceError, SQLAlchemyError) as exc:
                    report.fail(serial, exc)
                    break
                created += 1
                report.changed.append({
                    "product_id": str(row.id),
                    "product_name": row.name,
                    "serial_number": unit.serial_number,
                })

            if created < missing:
                report.errors.append({
                    "item": str(row.id),
                    "error": f"Created {created} of {missing} missing units",
                })

        if report.changed:
            log_audit(db, tenant_id, actor_id, ACTION_UNITS_AUTO_GENERATED, payload=report.summary())
        logger.info("Unit auto-generation for tenant %s: %s", tenant_id, report.summary())
        return report

"""SerialStock — Scheduled unit maintenance (Celery).

- release_expired_reservations: clear holds whose reserved_until has passed.
- sync_stock_counters:          correct product.stock from in_stock unit counts.

Both run once per active tenant, each tenant in its own session and
transaction, so one tenant's failure does not block the others.
"""
import asyncio
import logging
from uuid import UUID

from sqlalchemy import select

from serialstock.db.session import async_session_maker, tenant_session
from serialstock.models.tenant import Tenant
from serialstock.services.reconciliation_service import ReconciliationService
from serialstock.services.reservation_service import ReservationService
from serialstock.worker import celery_app

logger = logging.getLogger(__name__)


async def _active_tenant_ids() -> list[UUID]:
    async with async_session_maker() as db:
        result = await db.execute(select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.created_at))
        return list(result.scalars().all())


async def _release_expired_async() -> dict:
    released = 0
    failed = []
    for tenant_id in await _active_tenant_ids():
        try:
            async with tenant_session(tenant_id) as db:
                result = await ReservationService.sweep_expired(db, tenant_id)
        except Exception:
            logger.exception("Expired-hold sweep failed for tenant %s", tenant_id)
            failed.append(str(tenant_id))
            continue
        released += result.released_count
    return {"released": released, "failed_tenants": failed}


async def _sync_stock_async() -> dict:
    summary = {}
    for tenant_id in await _active_tenant_ids():
        try:
            async with tenant_session(tenant_id) as db:
                report = await ReconciliationService.sync_stock_counters(db, tenant_id)
        except Exception:
            logger.exception("Stock sync failed for tenant %s", tenant_id)
            summary[str(tenant_id)] = {"error": "failed"}
            continue
        summary[str(tenant_id)] = report.summary()
    return summary


@celery_app.task(name="serialstock.tasks.unit_tasks.release_expired_reservations")
def release_expired_reservations() -> dict:
    result = asyncio.run(_release_expired_async())
    if result["released"]:
        logger.info("Released %d expired reservation(s)", result["released"])
    return result


@celery_app.task(name="serialstock.tasks.unit_tasks.sync_stock_counters")
def sync_stock_counters() -> dict:
    """Repairs drift from writes made outside this service."""
    return asyncio.run(_sync_stock_async())

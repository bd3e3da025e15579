"""SerialStock — AuditService."""
import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from serialstock.models.audit import AuditLog

logger = logging.getLogger(__name__)

# ── Audit action constants ────────────────────────────────────────────────────
ACTION_UNIT_CREATED = "unit.created"
ACTION_UNIT_UPDATED = "unit.updated"
ACTION_UNIT_DELETED = "unit.deleted"
ACTION_UNITS_IMPORTED = "unit.bulk_imported"
ACTION_UNIT_RESERVED = "unit.reserved"
ACTION_UNIT_RELEASED = "unit.released"
ACTION_UNIT_HOLD_EXPIRED = "unit.hold_expired"
ACTION_STOCK_SYNCED = "stock.synced"
ACTION_SOLD_STATUS_BACKFILLED = "unit.sold_status_backfilled"
ACTION_WARRANTY_BACKFILLED = "unit.warranty_backfilled"
ACTION_UNITS_AUTO_GENERATED = "unit.auto_generated"


def log_audit(
    db: AsyncSession,
    tenant_id: UUID,
    actor_id: str | None,
    action: str,
    target_type: str | None = "serialized_unit",
    target_id: UUID | None = None,
    payload: dict | None = None,
) -> None:
    """Queue an audit log entry in the caller's transaction.

    The row is flushed and committed together with the main action, so a
    rolled-back operation leaves no audit trail.
    """
    db.add(
        AuditLog(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            payload=payload,
        )
    )
    logger.debug("audit %s %s by %s", action, target_id, actor_id)

"""SerialStock — ReservationService: time-bounded checkout holds on in-stock units.

A hold is data (`reserved_by`, `reserved_until`), not a status and not a
lock: it never touches product.stock, it expires by timestamp, and it
survives process restarts. Grants go through UnitRepository.try_hold, a
conditional update, so two concurrent checkouts cannot both win a unit.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from serialstock.config import get_settings
from serialstock.core.errors import AlreadyReserved, InsufficientStock, NotAvailable, NotFound, ValidationError
from serialstock.db.base import utcnow
from serialstock.models.serial import SerializedUnit, UnitStatus
from serialstock.services.audit_service import (
    ACTION_UNIT_HOLD_EXPIRED,
    ACTION_UNIT_RELEASED,
    ACTION_UNIT_RESERVED,
    log_audit,
)
from serialstock.services.unit_repository import UnitRepository

logger = logging.getLogger(__name__)

# Rounds of re-selection when concurrent checkouts keep taking our candidates
MAX_SELECTION_ROUNDS = 5


@dataclass
class Reservation:
    units: list[SerializedUnit]
    reserved_until: datetime
    timeout_minutes: int

    @property
    def serial_numbers(self) -> list[str]:
        return [u.serial_number for u in self.units]


@dataclass
class SweepResult:
    released: list[dict] = field(default_factory=list)

    @property
    def released_count(self) -> int:
        return len(self.released)


class ReservationService:
    """Grant, release and expire holds."""

    @staticmethod
    async def reserve(
        db: AsyncSession,
        tenant_id: UUID,
        requester_id: str,
        product_id: UUID,
        quantity: int,
        timeout_minutes: int | None = None,
        serial_numbers: list[str] | None = None,
    ) -> Reservation:
        """Hold `quantity` oldest available units, or exactly the named serials.

        Raises InsufficientStock, AlreadyReserved, NotAvailable or NotFound;
        the caller's transaction must then be rolled back so no partial
        reservation remains.
        """
        settings = get_settings()
        if timeout_minutes is None:
            timeout_minutes = settings.DEFAULT_RESERVATION_MINUTES
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", quantity=quantity)
        if not 1 <= timeout_minutes <= settings.MAX_RESERVATION_MINUTES:
            raise ValidationError(
                f"timeout_minutes must be between 1 and {settings.MAX_RESERVATION_MINUTES}",
                timeout_minutes=timeout_minutes,
            )
        await UnitRepository.get_product(db, tenant_id, product_id)

        now = utcnow()
        until = now + timedelta(minutes=timeout_minutes)

        if serial_numbers:
            units = await ReservationService._hold_named(
                db, tenant_id, requester_id, product_id, serial_numbers, until, now
            )
        else:
            units = await ReservationService._hold_oldest(
                db, tenant_id, requester_id, product_id, quantity, until, now
            )

        reservation = Reservation(units=units, reserved_until=until, timeout_minutes=timeout_minutes)
        log_audit(
            db, tenant_id, requester_id, ACTION_UNIT_RESERVED,
            target_type="product", target_id=product_id,
            payload={
                "serial_numbers": reservation.serial_numbers,
                "reserved_until": until.isoformat(),
            },
        )
        logger.info(
            "Reserved %d unit(s) of product %s for %s until %s",
            len(units), product_id, requester_id, until.isoformat(),
        )
        return reservation

    @staticmethod
    async def _hold_named(
        db: AsyncSession,
        tenant_id: UUID,
        requester_id: str,
        product_id: UUID,
        serial_numbers: list[str],
        until: datetime,
        now: datetime,
    ) -> list[SerializedUnit]:
        held: list[SerializedUnit] = []
        for raw in dict.fromkeys(s.strip() for s in serial_numbers if s and s.strip()):
            unit = await UnitRepository.find_by_serial(db, tenant_id, raw, product_id=product_id)
            if not unit:
                raise NotFound(f"Serial not found for product: {raw}", serial_number=raw)
            if not await UnitRepository.try_hold(db, tenant_id, unit.id, requester_id, until, now):
                current = await UnitRepository.get(db, tenant_id, unit.id)
                if current.status != UnitStatus.IN_STOCK.value:
                    raise NotAvailable(
                        f"Serial {raw} is not available (status={current.status})",
                        serial_number=raw,
                        status=current.status,
                    )
                raise AlreadyReserved(f"Serial {raw} is already reserved", serial_number=raw)
            held.append(unit)
        if not held:
            raise ValidationError("serial_numbers must name at least one serial")
        return [await UnitRepository.get(db, tenant_id, u.id) for u in held]

    @staticmethod
    async def _hold_oldest(
        db: AsyncSession,
        tenant_id: UUID,
        requester_id: str,
        product_id: UUID,
        quantity: int,
        until: datetime,
        now: datetime,
    ) -> list[SerializedUnit]:
        available = await UnitRepository.count_available(db, tenant_id, product_id, now)
        if available < quantity:
            raise InsufficientStock(
                f"Not enough available units. Need {quantity}, found {available}",
                requested=quantity,
                available=available,
            )

        held: list[SerializedUnit] = []
        tried: set[UUID] = set()
        for _ in range(MAX_SELECTION_ROUNDS):
            needed = quantity - len(held)
            candidates = await UnitRepository.find_available(
                db, tenant_id, product_id, now, needed, exclude_ids=tried
            )
            if not candidates:
                break
            for unit in candidates:
                tried.add(unit.id)
                if await UnitRepository.try_hold(db, tenant_id, unit.id, requester_id, until, now):
                    held.append(unit)
                else:
                    logger.warning("Lost unit %s to a concurrent reservation", unit.id)
            if len(held) == quantity:
                return [await UnitRepository.get(db, tenant_id, u.id) for u in held]

        raise InsufficientStock(
            f"Not enough available units. Need {quantity}, secured {len(held)}",
            requested=quantity,
            available=len(held),
        )

    @staticmethod
    async def release(
        db: AsyncSession,
        tenant_id: UUID,
        requester_id: str,
        unit_ids: list[UUID],
    ) -> list[UUID]:
        """Clear holds owned by `requester_id`; other units are left alone."""
        released = []
        for unit_id in dict.fromkeys(unit_ids):
            if await UnitRepository.release_hold(db, tenant_id, unit_id, requester_id):
                released.append(unit_id)
        if released:
            log_audit(
                db, tenant_id, requester_id, ACTION_UNIT_RELEASED,
                payload={"unit_ids": [str(u) for u in released], "requested": len(unit_ids)},
            )
        return released

    @staticmethod
    async def sweep_expired(db: AsyncSession, tenant_id: UUID | None = None) -> SweepResult:
        """Clear every hold whose reserved_until has passed.

        Each clear is conditional on the hold still being expired, so running
        this alongside live traffic or another sweep is harmless.
        """
        now = utcnow()
        result = SweepResult()
        for unit in await UnitRepository.find_expired_holds(db, now, tenant_id):
            snapshot = {
                "id": str(unit.id),
                "serial_number": unit.serial_number,
                "reserved_by": unit.reserved_by,
            }
            if await UnitRepository.clear_expired_hold(db, unit.id, now):
                result.released.append(snapshot)
                log_audit(
                    db, unit.tenant_id, None, ACTION_UNIT_HOLD_EXPIRED,
                    target_id=unit.id, payload=snapshot,
                )
        if result.released:
            logger.info("Released %d expired reservation(s)", result.released_count)
        return result

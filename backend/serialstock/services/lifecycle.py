"""SerialStock — Unit lifecycle state machine.

Pure functions over (old status, new status). No I/O, no state: the unit
repository asks for the stock delta before it writes and applies it in the
same transaction.
"""
from serialstock.core.errors import IllegalTransition, ValidationError
from serialstock.models.serial import UnitStatus

IN_STOCK = UnitStatus.IN_STOCK
SOLD = UnitStatus.SOLD
RETURNED = UnitStatus.RETURNED
WARRANTY = UnitStatus.WARRANTY
DEFECTIVE = UnitStatus.DEFECTIVE
SCRAPPED = UnitStatus.SCRAPPED

# (from, to) -> change to the owning product's stock counter
TRANSITIONS: dict[tuple[UnitStatus, UnitStatus], int] = {
    (IN_STOCK, SOLD): -1,
    (IN_STOCK, WARRANTY): -1,
    (IN_STOCK, DEFECTIVE): -1,
    (IN_STOCK, SCRAPPED): -1,
    (SOLD, IN_STOCK): 1,
    (WARRANTY, IN_STOCK): 1,
    (DEFECTIVE, IN_STOCK): 1,
    (RETURNED, IN_STOCK): 1,
    (RETURNED, WARRANTY): 0,
    (RETURNED, SCRAPPED): 0,
    (RETURNED, SOLD): 0,
}


def parse_status(value: str | UnitStatus) -> UnitStatus:
    """Coerce a raw status string, rejecting anything outside UnitStatus."""
    try:
        return UnitStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown unit status: {value!r}", status=str(value)) from None


def transition_delta(old: str | UnitStatus, new: str | UnitStatus) -> int:
    """Stock delta implied by moving a unit from `old` to `new`.

    Same-status moves are idempotent no-ops (delta 0). Raises
    IllegalTransition for anything not in the transition table.
    """
    old, new = parse_status(old), parse_status(new)
    if old == new:
        return 0
    try:
        return TRANSITIONS[(old, new)]
    except KeyError:
        raise IllegalTransition(old.value, new.value) from None


def allowed_targets(old: str | UnitStatus) -> frozenset[UnitStatus]:
    old = parse_status(old)
    return frozenset(to for (frm, to) in TRANSITIONS if frm == old)


def stock_contribution(status: str | UnitStatus) -> int:
    """1 if a unit in this status counts towards product.stock, else 0."""
    return 1 if parse_status(status) == IN_STOCK else 0

"""
Domain vocabulary shared by every module: roles, status enumerations and
the few pure rules that operate on them.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable

CENT = Decimal("0.01")


class Role(str, Enum):
    ADMIN = "ADMIN"
    RESTAURANT = "RESTAURANT"
    COURIER = "COURIER"
    CUSTOMER = "CUSTOMER"


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PREPARING = "PREPARING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class AssignmentStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"


# Assignments holding a courier; anything else leaves the courier available.
ACTIVE_ASSIGNMENT_STATUSES = (AssignmentStatus.ASSIGNED, AssignmentStatus.PICKED_UP)

_ASSIGNMENT_ORDER = {
    AssignmentStatus.ASSIGNED: 0,
    AssignmentStatus.PICKED_UP: 1,
    AssignmentStatus.DELIVERED: 2,
}


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    CASH = "CASH"
    WALLET = "WALLET"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FulfillmentMode(str, Enum):
    """How far a freshly placed order is advanced inside the placement transaction.

    INSTANT delivers and pays in one shot (demo flow); STAGED leaves the order
    CREATED, the assignment ASSIGNED and the payment PENDING so the usual
    transitions drive it forward.
    """

    INSTANT = "instant"
    STAGED = "staged"


def has_any_role(required: Iterable[Role], held: Iterable[Role | str]) -> bool:
    """True iff the held role set intersects the required one."""
    held_values = {Role(role) for role in held if role in Role.__members__}
    return bool(held_values & set(required))


def can_advance(current: AssignmentStatus, target: AssignmentStatus) -> bool:
    return _ASSIGNMENT_ORDER[target] > _ASSIGNMENT_ORDER[current]


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .auth import Identity
from .database import ConnectionFactory, placeholder_for, transaction
from .domain import (
    TERMINAL_ORDER_STATUSES,
    AssignmentStatus,
    OrderStatus,
    Role,
    can_advance,
    to_money,
)
from .errors import Conflict, NotFound, ValidationFailed

logger = logging.getLogger("delivery-service.couriers")

ASSIGNMENT_COLUMNS = """
    ca.id, ca.order_id, ca.courier_id, ca.status, ca.assigned_at, ca.picked_at,
    ca.delivered_at, o.total_amount, r.name AS restaurant_name
"""

# Statuses stamped onto the parent order when an assignment reaches them.
_MIRRORED_ORDER_STATUS = {
    AssignmentStatus.PICKED_UP: OrderStatus.PICKED_UP,
    AssignmentStatus.DELIVERED: OrderStatus.DELIVERED,
}

_TIMESTAMP_COLUMN = {
    AssignmentStatus.PICKED_UP: "picked_at",
    AssignmentStatus.DELIVERED: "delivered_at",
}


@dataclass(frozen=True)
class AssignmentRecord:
    id: int
    order_id: int
    courier_id: Optional[int]
    status: str
    assigned_at: str
    picked_at: Optional[str]
    delivered_at: Optional[str]
    total_amount: Optional[Decimal] = None
    restaurant_name: Optional[str] = None


class CourierService:
    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def assign_courier(self, order_id: int, courier_id: int) -> AssignmentRecord:
        """Manually (re)assign a courier; the assignment restarts in ASSIGNED."""
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            order = conn.execute(
                f"SELECT status FROM orders WHERE id = {placeholder};", (order_id,)
            ).fetchone()
            if order is None:
                raise NotFound("Order not found")
            if OrderStatus(order["status"]) in TERMINAL_ORDER_STATUSES:
                raise Conflict(f"Order is already {order['status']}")
            courier = conn.execute(
                f"""
                SELECT 1 FROM user_roles ur
                JOIN roles r ON r.id = ur.role_id
                WHERE ur.user_id = {placeholder} AND r.name = {placeholder};
                """,
                (courier_id, Role.COURIER.value),
            ).fetchone()
            if courier is None:
                raise ValidationFailed(f"User {courier_id} is not a courier")

            conn.execute(
                f"""
                INSERT INTO courier_assignments (order_id, courier_id, status, assigned_at)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder})
                ON CONFLICT (order_id) DO UPDATE SET
                    courier_id = excluded.courier_id,
                    status = excluded.status,
                    assigned_at = excluded.assigned_at,
                    picked_at = NULL,
                    delivered_at = NULL;
                """,
                (order_id, courier_id, AssignmentStatus.ASSIGNED.value, _now()),
            )
            record = _fetch_one(conn, "ca.order_id", order_id)

        logger.info("Courier %s assigned to order %s", courier_id, order_id)
        return record

    def list_active_assignments(self, courier_id: int) -> list[AssignmentRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT {ASSIGNMENT_COLUMNS}
                FROM courier_assignments ca
                JOIN orders o ON o.id = ca.order_id
                LEFT JOIN restaurants r ON r.id = o.restaurant_id
                WHERE ca.courier_id = {placeholder} AND ca.status != {placeholder}
                ORDER BY ca.id ASC;
                """,
                (courier_id, AssignmentStatus.DELIVERED.value),
            ).fetchall()
        return [_assignment_from_row(row) for row in rows]

    def list_all_assignments(self) -> list[AssignmentRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {ASSIGNMENT_COLUMNS}
                FROM courier_assignments ca
                JOIN orders o ON o.id = ca.order_id
                LEFT JOIN restaurants r ON r.id = o.restaurant_id
                ORDER BY ca.id DESC;
                """
            ).fetchall()
        return [_assignment_from_row(row) for row in rows]

    def delete_assignment(self, assignment_id: int) -> None:
        """Drop an assignment outright; its courier becomes available again."""
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            cur = conn.execute(
                f"DELETE FROM courier_assignments WHERE id = {placeholder};", (assignment_id,)
            )
            if cur.rowcount == 0:
                raise NotFound("Assignment not found")
        logger.info("Assignment %s deleted", assignment_id)

    def get_assignment(self, identity: Identity, assignment_id: int) -> AssignmentRecord:
        with self._connection() as conn:
            record = _fetch_one(conn, "ca.id", assignment_id)
        if record is None or not _may_touch(identity, record):
            raise NotFound("Assignment not found")
        return record

    def update_assignment_status(
        self, identity: Identity, assignment_id: int, status: str
    ) -> AssignmentRecord:
        """Advance an assignment and mirror the new state onto its order.

        Moves are strictly forward along ASSIGNED -> PICKED_UP -> DELIVERED.
        Both writes share one transaction so the order never disagrees with
        its assignment.
        """
        try:
            target = AssignmentStatus(status)
        except ValueError:
            allowed = ", ".join(item.value for item in AssignmentStatus)
            raise ValidationFailed(f"Invalid status, allowed: {allowed}")

        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            current = _fetch_one(conn, "ca.id", assignment_id)
            if current is None or not _may_touch(identity, current):
                raise NotFound("Assignment not found or not yours")
            if not can_advance(AssignmentStatus(current.status), target):
                raise Conflict(f"Cannot move assignment from {current.status} to {target.value}")

            now = _now()
            conn.execute(
                f"""
                UPDATE courier_assignments
                SET status = {placeholder}, {_TIMESTAMP_COLUMN[target]} = {placeholder}
                WHERE id = {placeholder};
                """,
                (target.value, now, assignment_id),
            )
            conn.execute(
                f"UPDATE orders SET status = {placeholder}, updated_at = {placeholder} WHERE id = {placeholder};",
                (_MIRRORED_ORDER_STATUS[target].value, now, current.order_id),
            )
            record = _fetch_one(conn, "ca.id", assignment_id)

        logger.info(
            "Assignment %s: %s -> %s (order %s)",
            assignment_id,
            current.status,
            target.value,
            current.order_id,
        )
        return record


def _may_touch(identity: Identity, record: AssignmentRecord) -> bool:
    return identity.has_role(Role.ADMIN) or record.courier_id == identity.id


def _fetch_one(conn, column: str, value: int) -> AssignmentRecord | None:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT {ASSIGNMENT_COLUMNS}
        FROM courier_assignments ca
        JOIN orders o ON o.id = ca.order_id
        LEFT JOIN restaurants r ON r.id = o.restaurant_id
        WHERE {column} = {placeholder};
        """,
        (value,),
    ).fetchone()
    return _assignment_from_row(row) if row is not None else None


def _assignment_from_row(row) -> AssignmentRecord:
    return AssignmentRecord(
        id=row["id"],
        order_id=row["order_id"],
        courier_id=row["courier_id"],
        status=row["status"],
        assigned_at=row["assigned_at"],
        picked_at=row["picked_at"],
        delivered_at=row["delivered_at"],
        total_amount=to_money(row["total_amount"]),
        restaurant_name=row["restaurant_name"],
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

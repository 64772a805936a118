from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .auth import Identity
from .database import ConnectionFactory, placeholder_for, transaction
from .domain import OrderStatus, PaymentMethod, PaymentStatus, Role, to_money
from .errors import Conflict, Forbidden, NotFound, ValidationFailed

logger = logging.getLogger("delivery-service.payments")


@dataclass(frozen=True)
class PaymentRecord:
    id: int
    order_id: int
    amount: Decimal
    payment_method: Optional[str]
    status: str
    created_at: str


class PaymentService:
    """Simulated payment completion; no gateway is contacted."""

    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def complete_payment(self, customer_id: int, order_id: int, payment_method: str) -> PaymentRecord:
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            allowed = ", ".join(item.value for item in PaymentMethod)
            raise ValidationFailed(f"Invalid payment_method, allowed: {allowed}")

        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            order = conn.execute(
                f"SELECT total_amount, customer_id, status FROM orders WHERE id = {placeholder};",
                (order_id,),
            ).fetchone()
            if order is None:
                raise NotFound("Order not found")
            if order["customer_id"] != customer_id:
                raise Forbidden("Forbidden")
            if order["status"] == OrderStatus.CANCELLED.value:
                raise Conflict("Order is cancelled")

            existing = _fetch(conn, order_id)
            if existing is not None and existing.status == PaymentStatus.COMPLETED.value:
                raise Conflict("Payment already completed")

            conn.execute(
                f"""
                INSERT INTO payments (order_id, amount, payment_method, status, created_at)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
                ON CONFLICT (order_id) DO UPDATE SET
                    payment_method = excluded.payment_method,
                    status = excluded.status;
                """,
                (
                    order_id,
                    to_money(order["total_amount"]),
                    method.value,
                    PaymentStatus.COMPLETED.value,
                    _now(),
                ),
            )
            record = _fetch(conn, order_id)

        logger.info("Payment completed order=%s amount=%s method=%s", order_id, record.amount, method.value)
        return record

    def get_payment_for_order(
        self, order_id: int, identity: Optional[Identity] = None
    ) -> PaymentRecord | None:
        """Payment of an order; with ``identity``, only its customer or an admin may see it."""
        with self._connection() as conn:
            if identity is not None and not identity.has_role(Role.ADMIN):
                placeholder = placeholder_for(conn)
                order = conn.execute(
                    f"SELECT customer_id FROM orders WHERE id = {placeholder};", (order_id,)
                ).fetchone()
                if order is None or order["customer_id"] != identity.id:
                    return None
            return _fetch(conn, order_id)

    def delete_payment_for_order(self, order_id: int) -> None:
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            cur = conn.execute(f"DELETE FROM payments WHERE order_id = {placeholder};", (order_id,))
            if cur.rowcount == 0:
                raise NotFound("Payment not found")
        logger.info("Payment of order %s deleted", order_id)


def _fetch(conn, order_id: int) -> PaymentRecord | None:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT id, order_id, amount, payment_method, status, created_at
        FROM payments
        WHERE order_id = {placeholder};
        """,
        (order_id,),
    ).fetchone()
    if row is None:
        return None
    return PaymentRecord(
        id=row["id"],
        order_id=row["order_id"],
        amount=to_money(row["amount"]),
        payment_method=row["payment_method"],
        status=row["status"],
        created_at=row["created_at"],
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from .database import ConnectionFactory, placeholder_for
from .domain import to_money

ORDER_COLUMNS = """
    o.id, o.customer_id, o.restaurant_id, o.address_id, o.status, o.total_amount,
    o.created_at, o.updated_at, r.name AS restaurant_name
"""


@dataclass(frozen=True)
class OrderItemRecord:
    id: int
    menu_item_id: Optional[int]
    name: Optional[str]
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class OrderRecord:
    id: int
    customer_id: Optional[int]
    restaurant_id: Optional[int]
    address_id: Optional[int]
    status: str
    total_amount: Decimal
    created_at: str
    updated_at: str
    restaurant_name: Optional[str] = None
    items: List[OrderItemRecord] = field(default_factory=list)


class OrderRepository:
    """Read side of orders; writes go through the transactional services."""

    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def get_order(self, order_id: int) -> OrderRecord | None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders o
                LEFT JOIN restaurants r ON r.id = o.restaurant_id
                WHERE o.id = {placeholder};
                """,
                (order_id,),
            ).fetchone()
            if row is None:
                return None
            items = conn.execute(
                f"""
                SELECT oi.id, oi.menu_item_id, mi.name, oi.quantity, oi.unit_price
                FROM order_items oi
                LEFT JOIN menu_items mi ON mi.id = oi.menu_item_id
                WHERE oi.order_id = {placeholder}
                ORDER BY oi.id ASC;
                """,
                (order_id,),
            ).fetchall()
            return _order_from_row(row, [_item_from_row(item) for item in items])

    def list_customer_orders(self, customer_id: int, limit: int = 50) -> list[OrderRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders o
                LEFT JOIN restaurants r ON r.id = o.restaurant_id
                WHERE o.customer_id = {placeholder}
                ORDER BY o.created_at DESC, o.id DESC
                LIMIT {placeholder};
                """,
                (customer_id, limit),
            ).fetchall()
        return [_order_from_row(row) for row in rows]


def _order_from_row(row, items: Optional[List[OrderItemRecord]] = None) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        customer_id=row["customer_id"],
        restaurant_id=row["restaurant_id"],
        address_id=row["address_id"],
        status=row["status"],
        total_amount=to_money(row["total_amount"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        restaurant_name=row["restaurant_name"],
        items=items or [],
    )


def _item_from_row(row) -> OrderItemRecord:
    return OrderItemRecord(
        id=row["id"],
        menu_item_id=row["menu_item_id"],
        name=row["name"],
        quantity=row["quantity"],
        unit_price=to_money(row["unit_price"]),
    )

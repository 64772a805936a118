"""
Read-only reporting queries over orders and ratings.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .database import ConnectionFactory, placeholder_for
from .domain import to_money


@dataclass(frozen=True)
class RestaurantScore:
    id: int
    name: str
    avg_rating: float
    rating_count: int


@dataclass(frozen=True)
class PopularItem:
    id: int
    name: str
    price: Decimal
    total_sold: int


@dataclass(frozen=True)
class OrderHistoryEntry:
    id: int
    created_at: str
    status: str
    total_amount: Decimal
    restaurant_name: Optional[str]
    item_count: int


class AnalyticsRepository:
    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def top_restaurants(self, min_ratings: int = 1, limit: int = 10) -> List[RestaurantScore]:
        """Restaurants with at least ``min_ratings`` ratings, best average first."""
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT r.id, r.name, AVG(rt.score) AS avg_rating, COUNT(rt.id) AS rating_count
                FROM restaurants r
                JOIN ratings rt ON rt.restaurant_id = r.id
                GROUP BY r.id, r.name
                HAVING COUNT(rt.id) >= {placeholder}
                ORDER BY avg_rating DESC, r.id ASC
                LIMIT {placeholder};
                """,
                (min_ratings, limit),
            ).fetchall()
        return [
            RestaurantScore(
                id=row["id"],
                name=row["name"],
                avg_rating=round(float(row["avg_rating"]), 2),
                rating_count=int(row["rating_count"]),
            )
            for row in rows
        ]

    def popular_items(self, restaurant_id: int, limit: int = 5) -> List[PopularItem]:
        """Menu items of a restaurant ranked by units sold across all its orders."""
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT mi.id, mi.name, mi.price, item_stats.total_sold
                FROM menu_items mi
                JOIN (
                    SELECT menu_item_id, SUM(quantity) AS total_sold
                    FROM order_items
                    WHERE order_id IN (SELECT id FROM orders WHERE restaurant_id = {placeholder})
                    GROUP BY menu_item_id
                ) AS item_stats ON item_stats.menu_item_id = mi.id
                WHERE mi.restaurant_id = {placeholder}
                ORDER BY item_stats.total_sold DESC, mi.id ASC
                LIMIT {placeholder};
                """,
                (restaurant_id, restaurant_id, limit),
            ).fetchall()
        return [
            PopularItem(
                id=row["id"],
                name=row["name"],
                price=to_money(row["price"]),
                total_sold=int(row["total_sold"]),
            )
            for row in rows
        ]

    def order_history(self, customer_id: int) -> List[OrderHistoryEntry]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT o.id, o.created_at, o.status, o.total_amount, r.name AS restaurant_name,
                       (SELECT COUNT(*) FROM order_items oi WHERE oi.order_id = o.id) AS item_count
                FROM orders o
                LEFT JOIN restaurants r ON r.id = o.restaurant_id
                WHERE o.customer_id = {placeholder}
                ORDER BY o.created_at DESC, o.id DESC;
                """,
                (customer_id,),
            ).fetchall()
        return [
            OrderHistoryEntry(
                id=row["id"],
                created_at=row["created_at"],
                status=row["status"],
                total_amount=to_money(row["total_amount"]),
                restaurant_name=row["restaurant_name"],
                item_count=int(row["item_count"]),
            )
            for row in rows
        ]

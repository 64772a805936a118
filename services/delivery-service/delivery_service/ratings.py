from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .database import ConnectionFactory, placeholder_for, transaction
from .domain import OrderStatus
from .errors import Forbidden, NotFound, ValidationFailed


@dataclass(frozen=True)
class RatingRecord:
    id: int
    order_id: int
    user_id: Optional[int]
    restaurant_id: int
    score: int
    comment: Optional[str]
    created_at: str
    customer_name: Optional[str] = None


class RatingRepository:
    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def add_rating(
        self, customer_id: int, order_id: int, score: int, comment: Optional[str] = None
    ) -> RatingRecord:
        """Rate a delivered order; rating the same order again replaces the score."""
        if not order_id or score is None or not 1 <= score <= 5:
            raise ValidationFailed("order_id and score(1-5) are required")

        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            order = conn.execute(
                f"SELECT restaurant_id, customer_id, status FROM orders WHERE id = {placeholder};",
                (order_id,),
            ).fetchone()
            if order is None:
                raise NotFound("Order not found")
            if order["customer_id"] != customer_id:
                raise Forbidden("Forbidden")
            if order["status"] != OrderStatus.DELIVERED.value:
                raise ValidationFailed("Can only rate delivered orders")

            conn.execute(
                f"""
                INSERT INTO ratings (order_id, user_id, restaurant_id, score, comment, created_at)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
                ON CONFLICT (order_id) DO UPDATE SET
                    score = excluded.score,
                    comment = excluded.comment;
                """,
                (
                    order_id,
                    customer_id,
                    order["restaurant_id"],
                    score,
                    comment,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            row = conn.execute(
                f"""
                SELECT id, order_id, user_id, restaurant_id, score, comment, created_at
                FROM ratings WHERE order_id = {placeholder};
                """,
                (order_id,),
            ).fetchone()
            return _rating_from_row(row)

    def delete_rating(self, customer_id: int, rating_id: int) -> None:
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            cur = conn.execute(
                f"DELETE FROM ratings WHERE id = {placeholder} AND user_id = {placeholder};",
                (rating_id, customer_id),
            )
            if cur.rowcount == 0:
                raise NotFound("Rating not found")

    def list_ratings(self, restaurant_id: int) -> List[RatingRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT rt.id, rt.order_id, rt.user_id, rt.restaurant_id, rt.score,
                       rt.comment, rt.created_at, u.full_name AS customer_name
                FROM ratings rt
                LEFT JOIN users u ON u.id = rt.user_id
                WHERE rt.restaurant_id = {placeholder}
                ORDER BY rt.created_at DESC;
                """,
                (restaurant_id,),
            ).fetchall()
        return [_rating_from_row(row) for row in rows]


def _rating_from_row(row) -> RatingRecord:
    return RatingRecord(
        id=row["id"],
        order_id=row["order_id"],
        user_id=row["user_id"],
        restaurant_id=row["restaurant_id"],
        score=row["score"],
        comment=row["comment"],
        created_at=row["created_at"],
        customer_name=row["customer_name"] if "customer_name" in row.keys() else None,
    )

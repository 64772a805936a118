from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import pytest

from delivery_service.database import init_db


def open_sqlite(db_path, connection_class=sqlite3.Connection):
    """Factory for connections to ``db_path``, built from ``connection_class``."""

    def factory() -> sqlite3.Connection:
        conn = sqlite3.connect(db_path, factory=connection_class)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    return factory


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "delivery.db"


@pytest.fixture()
def connection_factory(db_path):
    factory = open_sqlite(db_path)
    init_db(factory)
    return factory


class TotalsWriteFails(sqlite3.Connection):
    """Fails the order-total UPDATE, which runs after the line items are inserted."""

    def execute(self, sql, parameters=()):
        if "SET total_amount" in sql:
            raise sqlite3.OperationalError("disk I/O error")
        return super().execute(sql, parameters)


@pytest.fixture()
def failing_totals_factory(db_path, connection_factory):
    return open_sqlite(db_path, TotalsWriteFails)


class Seeder:
    """Writes fixture rows straight into the database, bypassing the services."""

    def __init__(self, connection_factory):
        self._connection_factory = connection_factory

    def user(self, email: str, *roles: str, user_id: Optional[int] = None) -> int:
        with self._connection_factory() as conn:
            cur = conn.execute(
                """
                INSERT INTO users (id, full_name, email, password, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (user_id, email.split("@")[0].title(), email, "not-a-hash", "2024-01-01T00:00:00+00:00"),
            )
            new_id = cur.lastrowid
            for role in roles:
                conn.execute(
                    """
                    INSERT INTO user_roles (user_id, role_id)
                    SELECT ?, id FROM roles WHERE name = ?;
                    """,
                    (new_id, role),
                )
        return new_id

    def restaurant(self, owner_id: Optional[int], name: str, restaurant_id: Optional[int] = None) -> int:
        with self._connection_factory() as conn:
            cur = conn.execute(
                """
                INSERT INTO restaurants (id, owner_id, name, is_active, created_at)
                VALUES (?, ?, ?, 1, ?);
                """,
                (restaurant_id, owner_id, name, "2024-01-01T00:00:00+00:00"),
            )
            return cur.lastrowid

    def menu_item(
        self,
        restaurant_id: int,
        name: str,
        price: str,
        is_available: bool = True,
        menu_item_id: Optional[int] = None,
    ) -> int:
        with self._connection_factory() as conn:
            cur = conn.execute(
                """
                INSERT INTO menu_items (id, restaurant_id, name, price, is_available)
                VALUES (?, ?, ?, ?, ?);
                """,
                (menu_item_id, restaurant_id, name, Decimal(price), is_available),
            )
            return cur.lastrowid

    def address(self, user_id: int, address_id: Optional[int] = None) -> int:
        with self._connection_factory() as conn:
            cur = conn.execute(
                """
                INSERT INTO user_addresses (id, user_id, title, street, city)
                VALUES (?, ?, 'Home', 'Via Roma 1', 'Milano');
                """,
                (address_id, user_id),
            )
            return cur.lastrowid

    def count(self, table: str, **where) -> int:
        clause = " AND ".join(f"{column} = ?" for column in where) or "1 = 1"
        conn = self._connection_factory()
        try:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM {table} WHERE {clause};", tuple(where.values())
            ).fetchone()
            return row["n"]
        finally:
            conn.close()

    def scalar(self, sql: str, *params):
        conn = self._connection_factory()
        try:
            row = conn.execute(sql, params).fetchone()
            return row[0] if row is not None else None
        finally:
            conn.close()


@pytest.fixture()
def seed(connection_factory) -> Seeder:
    return Seeder(connection_factory)


@dataclass
class Marketplace:
    customer_id: int
    owner_id: int
    restaurant_id: int
    other_restaurant_id: int
    address_id: int
    item_a: int
    item_b: int
    foreign_item: int


@pytest.fixture()
def marketplace(seed: Seeder) -> Marketplace:
    """Restaurant 3 sells A (10.00) and B (5.00); restaurant 4 sells C."""
    customer_id = seed.user("alice@example.com", "CUSTOMER", user_id=1)
    owner_id = seed.user("owner@example.com", "RESTAURANT", user_id=2)
    restaurant_id = seed.restaurant(owner_id, "Trattoria", restaurant_id=3)
    other_restaurant_id = seed.restaurant(owner_id, "Sushi Bar", restaurant_id=4)
    return Marketplace(
        customer_id=customer_id,
        owner_id=owner_id,
        restaurant_id=restaurant_id,
        other_restaurant_id=other_restaurant_id,
        address_id=seed.address(customer_id, address_id=7),
        item_a=seed.menu_item(restaurant_id, "Pizza", "10.00", menu_item_id=21),
        item_b=seed.menu_item(restaurant_id, "Tiramisu", "5.00", menu_item_id=22),
        foreign_item=seed.menu_item(other_restaurant_id, "Nigiri", "5.00", menu_item_id=41),
    )

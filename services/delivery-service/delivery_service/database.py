from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Mapping, Tuple

import psycopg
from psycopg.rows import dict_row

from .domain import Role

logger = logging.getLogger("delivery-service.database")

ConnectionFactory = Callable[[], object]

# SQLite has no DECIMAL type; store money as text and let NUMERIC affinity convert it.
sqlite3.register_adapter(Decimal, str)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS roles (
    id {pk},
    name VARCHAR(20) UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id {pk},
    full_name VARCHAR(100) NOT NULL,
    email VARCHAR(100) UNIQUE NOT NULL,
    password VARCHAR(255) NOT NULL,
    phone VARCHAR(20),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_roles (
    user_id INTEGER REFERENCES users (id) ON DELETE CASCADE,
    role_id INTEGER REFERENCES roles (id) ON DELETE CASCADE,
    PRIMARY KEY (user_id, role_id)
);

CREATE TABLE IF NOT EXISTS restaurants (
    id {pk},
    owner_id INTEGER REFERENCES users (id) ON DELETE SET NULL,
    name VARCHAR(100) NOT NULL,
    description TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_addresses (
    id {pk},
    user_id INTEGER REFERENCES users (id) ON DELETE CASCADE,
    title VARCHAR(50) NOT NULL DEFAULT 'Home',
    street VARCHAR(255) NOT NULL,
    city VARCHAR(100) NOT NULL,
    postal_code VARCHAR(20),
    is_default BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS restaurant_addresses (
    restaurant_id INTEGER PRIMARY KEY REFERENCES restaurants (id) ON DELETE CASCADE,
    street VARCHAR(255) NOT NULL,
    city VARCHAR(100) NOT NULL,
    state VARCHAR(100),
    postal_code VARCHAR(20),
    latitude DECIMAL(10, 8),
    longitude DECIMAL(11, 8)
);

CREATE TABLE IF NOT EXISTS categories (
    id {pk},
    name VARCHAR(50) UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS menu_items (
    id {pk},
    restaurant_id INTEGER REFERENCES restaurants (id) ON DELETE CASCADE,
    name VARCHAR(100) NOT NULL,
    description TEXT,
    price DECIMAL(10, 2) NOT NULL,
    is_available BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS menu_item_categories (
    menu_item_id INTEGER REFERENCES menu_items (id) ON DELETE CASCADE,
    category_id INTEGER REFERENCES categories (id) ON DELETE CASCADE,
    PRIMARY KEY (menu_item_id, category_id)
);

CREATE TABLE IF NOT EXISTS orders (
    id {pk},
    customer_id INTEGER REFERENCES users (id) ON DELETE SET NULL,
    restaurant_id INTEGER REFERENCES restaurants (id) ON DELETE SET NULL,
    address_id INTEGER REFERENCES user_addresses (id) ON DELETE SET NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'CREATED'
        CHECK (status IN ('CREATED', 'PREPARING', 'READY', 'PICKED_UP', 'DELIVERED', 'CANCELLED')),
    total_amount DECIMAL(10, 2) NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS order_items (
    id {pk},
    order_id INTEGER REFERENCES orders (id) ON DELETE CASCADE,
    menu_item_id INTEGER REFERENCES menu_items (id) ON DELETE SET NULL,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    unit_price DECIMAL(10, 2) NOT NULL
);

CREATE TABLE IF NOT EXISTS courier_assignments (
    id {pk},
    order_id INTEGER UNIQUE REFERENCES orders (id) ON DELETE CASCADE,
    courier_id INTEGER REFERENCES users (id) ON DELETE SET NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'ASSIGNED'
        CHECK (status IN ('ASSIGNED', 'PICKED_UP', 'DELIVERED')),
    assigned_at TEXT NOT NULL,
    picked_at TEXT,
    delivered_at TEXT
);

CREATE TABLE IF NOT EXISTS payments (
    id {pk},
    order_id INTEGER UNIQUE REFERENCES orders (id) ON DELETE CASCADE,
    amount DECIMAL(10, 2) NOT NULL,
    payment_method VARCHAR(20) CHECK (payment_method IN ('CREDIT_CARD', 'CASH', 'WALLET')),
    status VARCHAR(20) NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'COMPLETED', 'FAILED')),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ratings (
    id {pk},
    order_id INTEGER UNIQUE REFERENCES orders (id) ON DELETE CASCADE,
    user_id INTEGER REFERENCES users (id) ON DELETE SET NULL,
    restaurant_id INTEGER REFERENCES restaurants (id) ON DELETE CASCADE,
    score INTEGER NOT NULL CHECK (score >= 1 AND score <= 5),
    comment TEXT,
    created_at TEXT NOT NULL
);
"""

_PRIMARY_KEYS = {
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "postgres": "SERIAL PRIMARY KEY",
}


def build_database_url(env) -> str:
    if url := env.get("DATABASE_URL"):
        return url
    user = env.get("DB_USER", "delivery")
    password = env.get("DB_PASSWORD", "delivery")
    host = env.get("DB_HOST", "delivery-db")
    port = env.get("DB_PORT", "5432")
    name = env.get("DB_NAME", "delivery_service")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def make_connection_factory(
    database_url: str, retries: int = 30, delay: float = 2.0
) -> ConnectionFactory:
    """Return a callable handing out one fresh connection per call."""

    def get_connection():
        last_exc: Exception | None = None
        for attempt in range(retries):
            try:
                return _connect_once(database_url)
            except Exception as exc:  # pragma: no cover - only hits when DB down
                last_exc = exc
                if attempt == retries - 1:
                    raise
                logger.warning("Database not reachable (attempt %d/%d): %s", attempt + 1, retries, exc)
                time.sleep(delay)
        raise last_exc  # pragma: no cover

    return get_connection


def _connect_once(database_url: str):
    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite:///", "")
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    return psycopg.connect(database_url, autocommit=False, row_factory=dict_row)


@contextmanager
def transaction(connection_factory: ConnectionFactory, *, exclusive: bool = False) -> Iterator:
    """Scoped acquisition: commit on success, roll back on error, always release."""
    conn = connection_factory()
    try:
        _begin(conn, exclusive)
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _begin(conn, exclusive: bool) -> None:
    if is_sqlite(conn):
        conn.execute("BEGIN IMMEDIATE;" if exclusive else "BEGIN;")
    elif exclusive:
        # Self-conflicting lock mode: concurrent placements queue up here.
        conn.execute("LOCK TABLE courier_assignments IN SHARE ROW EXCLUSIVE MODE;")


def init_db(connection_factory: ConnectionFactory) -> None:
    conn = connection_factory()
    try:
        apply_schema(conn)
        seed_roles(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    dialect = "sqlite" if is_sqlite(conn) else "postgres"
    schema = SCHEMA_SQL.format(pk=_PRIMARY_KEYS[dialect])
    if hasattr(conn, "executescript"):
        conn.executescript(schema)
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(schema):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def seed_roles(conn) -> None:
    placeholder = placeholder_for(conn)
    cur = conn.cursor()
    cur.executemany(
        f"INSERT INTO roles (name) VALUES ({placeholder}) ON CONFLICT (name) DO NOTHING",
        [(role.value,) for role in Role],
    )
    conn.commit()


def is_sqlite(conn) -> bool:
    return isinstance(conn, sqlite3.Connection)


def placeholder_for(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"


def set_clause(conn, fields: Mapping[str, object]) -> Tuple[str, list]:
    """Build ``col = ?, ...`` for the entries of ``fields`` that are not None."""
    placeholder = placeholder_for(conn)
    present = {column: value for column, value in fields.items() if value is not None}
    clause = ", ".join(f"{column} = {placeholder}" for column in present)
    return clause, list(present.values())


def insert_returning_id(conn, statement: str, params) -> int:
    # Drain the cursor so SQLite finishes the statement before the next one runs.
    rows = conn.execute(statement, params).fetchall()
    return rows[0]["id"]

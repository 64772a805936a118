from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .auth import Identity
from .database import (
    ConnectionFactory,
    insert_returning_id,
    placeholder_for,
    set_clause,
    transaction,
)
from .domain import Role, to_money
from .errors import Conflict, Forbidden, NotFound, ValidationFailed

logger = logging.getLogger("delivery-service.catalog")

RESTAURANT_COLUMNS = """
    r.id, r.owner_id, r.name, r.description, r.is_active,
    ra.street, ra.city, ra.state, ra.postal_code
"""


@dataclass(frozen=True)
class RestaurantRecord:
    id: int
    owner_id: Optional[int]
    name: str
    description: Optional[str]
    is_active: bool
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass(frozen=True)
class RestaurantAddressRecord:
    restaurant_id: int
    street: str
    city: str
    state: Optional[str]
    postal_code: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]


@dataclass(frozen=True)
class MenuItemRecord:
    id: int
    restaurant_id: int
    name: str
    description: Optional[str]
    price: Decimal
    is_available: bool
    categories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CategoryRecord:
    id: int
    name: str


class CatalogRepository:
    """Thin data-access layer for restaurants, their menus and menu categories."""

    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    # -- restaurants ------------------------------------------------------

    def list_restaurants(self) -> List[RestaurantRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {RESTAURANT_COLUMNS}
                FROM restaurants r
                LEFT JOIN restaurant_addresses ra ON ra.restaurant_id = r.id
                WHERE r.is_active = TRUE
                ORDER BY r.name ASC;
                """
            ).fetchall()
            return [_restaurant_from_row(row) for row in rows]

    def list_owned_restaurants(self, identity: Identity) -> List[RestaurantRecord]:
        """Restaurants owned by ``identity``, active or not; admins see every restaurant."""
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            if identity.has_role(Role.ADMIN):
                where, params = "", ()
            else:
                where, params = f"WHERE r.owner_id = {placeholder}", (identity.id,)
            rows = conn.execute(
                f"""
                SELECT {RESTAURANT_COLUMNS}
                FROM restaurants r
                LEFT JOIN restaurant_addresses ra ON ra.restaurant_id = r.id
                {where}
                ORDER BY r.id DESC;
                """,
                params,
            ).fetchall()
            return [_restaurant_from_row(row) for row in rows]

    def get_restaurant(self, restaurant_id: int) -> RestaurantRecord:
        with self._connection() as conn:
            return _get_restaurant(conn, restaurant_id)

    def create_restaurant(
        self, owner_id: int, name: str, description: Optional[str] = None
    ) -> RestaurantRecord:
        if not name:
            raise ValidationFailed("Restaurant name is required")
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            restaurant_id = insert_returning_id(
                conn,
                f"""
                INSERT INTO restaurants (owner_id, name, description, is_active, created_at)
                VALUES ({placeholder}, {placeholder}, {placeholder}, TRUE, {placeholder})
                RETURNING id;
                """,
                (owner_id, name, description, datetime.now(timezone.utc).isoformat()),
            )
        logger.info("Restaurant %s created by user=%s", restaurant_id, owner_id)
        return RestaurantRecord(
            id=restaurant_id,
            owner_id=owner_id,
            name=name,
            description=description,
            is_active=True,
        )

    def update_restaurant(
        self,
        identity: Identity,
        restaurant_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> RestaurantRecord:
        """Change the given fields; fields left as None keep their value."""
        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _get_restaurant(conn, restaurant_id).owner_id)
            clause, values = set_clause(
                conn, {"name": name, "description": description, "is_active": is_active}
            )
            if clause:
                placeholder = placeholder_for(conn)
                conn.execute(
                    f"UPDATE restaurants SET {clause} WHERE id = {placeholder};",
                    (*values, restaurant_id),
                )
            return _get_restaurant(conn, restaurant_id)

    def deactivate_restaurant(self, identity: Identity, restaurant_id: int) -> RestaurantRecord:
        return self.update_restaurant(identity, restaurant_id, is_active=False)

    def set_restaurant_address(
        self,
        identity: Identity,
        restaurant_id: int,
        street: str,
        city: str,
        state: Optional[str] = None,
        postal_code: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> RestaurantAddressRecord:
        if not street or not city:
            raise ValidationFailed("street and city are required")

        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _get_restaurant(conn, restaurant_id).owner_id)
            placeholder = placeholder_for(conn)
            conn.execute(
                f"""
                INSERT INTO restaurant_addresses
                    (restaurant_id, street, city, state, postal_code, latitude, longitude)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder},
                        {placeholder}, {placeholder}, {placeholder})
                ON CONFLICT (restaurant_id) DO UPDATE SET
                    street = excluded.street,
                    city = excluded.city,
                    state = excluded.state,
                    postal_code = excluded.postal_code,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude;
                """,
                (restaurant_id, street, city, state, postal_code, latitude, longitude),
            )
        return RestaurantAddressRecord(
            restaurant_id=restaurant_id,
            street=street,
            city=city,
            state=state,
            postal_code=postal_code,
            latitude=latitude,
            longitude=longitude,
        )

    # -- menu -------------------------------------------------------------

    def get_menu(self, restaurant_id: int) -> List[MenuItemRecord]:
        with self._connection() as conn:
            _get_restaurant(conn, restaurant_id)
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT id, restaurant_id, name, description, price, is_available
                FROM menu_items
                WHERE restaurant_id = {placeholder}
                ORDER BY name ASC;
                """,
                (restaurant_id,),
            ).fetchall()
            links = conn.execute(
                f"""
                SELECT mic.menu_item_id, c.name
                FROM menu_item_categories mic
                JOIN categories c ON c.id = mic.category_id
                JOIN menu_items mi ON mi.id = mic.menu_item_id
                WHERE mi.restaurant_id = {placeholder}
                ORDER BY c.name ASC;
                """,
                (restaurant_id,),
            ).fetchall()

        categories = {}
        for link in links:
            categories.setdefault(link["menu_item_id"], []).append(link["name"])
        return [
            _menu_item_from_row(row, categories.get(row["id"], ())) for row in rows
        ]

    def add_menu_item(
        self,
        identity: Identity,
        restaurant_id: int,
        name: str,
        price: Decimal,
        description: Optional[str] = None,
        is_available: bool = True,
        category_ids: Iterable[int] = (),
    ) -> MenuItemRecord:
        if not name or price is None or price < 0:
            raise ValidationFailed("name and a non-negative price are required")

        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _get_restaurant(conn, restaurant_id).owner_id)
            placeholder = placeholder_for(conn)
            price = to_money(price)
            menu_item_id = insert_returning_id(
                conn,
                f"""
                INSERT INTO menu_items (restaurant_id, name, description, price, is_available)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
                RETURNING id;
                """,
                (restaurant_id, name, description, price, bool(is_available)),
            )
            for category_id in category_ids:
                _link_category(conn, menu_item_id, category_id)
            return _get_menu_item(conn, menu_item_id)

    def update_menu_item(
        self,
        identity: Identity,
        menu_item_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        price: Optional[Decimal] = None,
        is_available: Optional[bool] = None,
    ) -> MenuItemRecord:
        """Change the given fields of a menu item; placed orders keep their snapshot price."""
        if price is not None and price < 0:
            raise ValidationFailed("price must be non-negative")

        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _menu_item_owner(conn, menu_item_id))
            clause, values = set_clause(
                conn,
                {
                    "name": name,
                    "description": description,
                    "price": to_money(price) if price is not None else None,
                    "is_available": is_available,
                },
            )
            if clause:
                placeholder = placeholder_for(conn)
                conn.execute(
                    f"UPDATE menu_items SET {clause} WHERE id = {placeholder};",
                    (*values, menu_item_id),
                )
            record = _get_menu_item(conn, menu_item_id)
        logger.info("Menu item %s updated by user=%s", menu_item_id, identity.id)
        return record

    def delete_menu_item(self, identity: Identity, menu_item_id: int) -> None:
        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _menu_item_owner(conn, menu_item_id))
            placeholder = placeholder_for(conn)
            conn.execute(f"DELETE FROM menu_items WHERE id = {placeholder};", (menu_item_id,))
        logger.info("Menu item %s deleted by user=%s", menu_item_id, identity.id)

    # -- categories -------------------------------------------------------

    def list_categories(self) -> List[CategoryRecord]:
        with self._connection() as conn:
            rows = conn.execute("SELECT id, name FROM categories ORDER BY name ASC;").fetchall()
        return [CategoryRecord(id=row["id"], name=row["name"]) for row in rows]

    def create_category(self, name: str) -> CategoryRecord:
        if not name:
            raise ValidationFailed("Name is required")
        with transaction(self._connection_factory) as conn:
            _ensure_category_name_free(conn, name)
            placeholder = placeholder_for(conn)
            category_id = insert_returning_id(
                conn,
                f"INSERT INTO categories (name) VALUES ({placeholder}) RETURNING id;",
                (name,),
            )
        return CategoryRecord(id=category_id, name=name)

    def rename_category(self, category_id: int, name: str) -> CategoryRecord:
        if not name:
            raise ValidationFailed("name is required")
        with transaction(self._connection_factory) as conn:
            _ensure_category_name_free(conn, name, exclude_id=category_id)
            placeholder = placeholder_for(conn)
            cur = conn.execute(
                f"UPDATE categories SET name = {placeholder} WHERE id = {placeholder};",
                (name, category_id),
            )
            if cur.rowcount == 0:
                raise NotFound("Category not found")
        return CategoryRecord(id=category_id, name=name)

    def delete_category(self, category_id: int) -> None:
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            cur = conn.execute(f"DELETE FROM categories WHERE id = {placeholder};", (category_id,))
            if cur.rowcount == 0:
                raise NotFound("Category not found")

    def link_category(self, identity: Identity, menu_item_id: int, category_id: int) -> MenuItemRecord:
        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _menu_item_owner(conn, menu_item_id))
            _link_category(conn, menu_item_id, category_id)
            return _get_menu_item(conn, menu_item_id)

    def unlink_category(self, identity: Identity, menu_item_id: int, category_id: int) -> MenuItemRecord:
        with transaction(self._connection_factory) as conn:
            _require_owner(identity, _menu_item_owner(conn, menu_item_id))
            placeholder = placeholder_for(conn)
            conn.execute(
                f"""
                DELETE FROM menu_item_categories
                WHERE menu_item_id = {placeholder} AND category_id = {placeholder};
                """,
                (menu_item_id, category_id),
            )
            return _get_menu_item(conn, menu_item_id)


def _require_owner(identity: Identity, owner_id: Optional[int]) -> None:
    if owner_id != identity.id and not identity.has_role(Role.ADMIN):
        raise Forbidden("Only the restaurant owner can change this restaurant")


def _get_restaurant(conn, restaurant_id: int) -> RestaurantRecord:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT {RESTAURANT_COLUMNS}
        FROM restaurants r
        LEFT JOIN restaurant_addresses ra ON ra.restaurant_id = r.id
        WHERE r.id = {placeholder};
        """,
        (restaurant_id,),
    ).fetchone()
    if row is None:
        raise NotFound(f"Restaurant {restaurant_id} not found")
    return _restaurant_from_row(row)


def _menu_item_owner(conn, menu_item_id: int) -> Optional[int]:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT r.owner_id
        FROM menu_items mi
        JOIN restaurants r ON r.id = mi.restaurant_id
        WHERE mi.id = {placeholder};
        """,
        (menu_item_id,),
    ).fetchone()
    if row is None:
        raise NotFound("Menu item not found")
    return row["owner_id"]


def _get_menu_item(conn, menu_item_id: int) -> MenuItemRecord:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT id, restaurant_id, name, description, price, is_available
        FROM menu_items WHERE id = {placeholder};
        """,
        (menu_item_id,),
    ).fetchone()
    names = conn.execute(
        f"""
        SELECT c.name FROM categories c
        JOIN menu_item_categories mic ON mic.category_id = c.id
        WHERE mic.menu_item_id = {placeholder}
        ORDER BY c.name ASC;
        """,
        (menu_item_id,),
    ).fetchall()
    return _menu_item_from_row(row, [entry["name"] for entry in names])


def _link_category(conn, menu_item_id: int, category_id: int) -> None:
    placeholder = placeholder_for(conn)
    exists = conn.execute(
        f"SELECT id FROM categories WHERE id = {placeholder};", (category_id,)
    ).fetchone()
    if exists is None:
        raise NotFound(f"Category {category_id} not found")
    conn.execute(
        f"""
        INSERT INTO menu_item_categories (menu_item_id, category_id)
        VALUES ({placeholder}, {placeholder})
        ON CONFLICT DO NOTHING;
        """,
        (menu_item_id, category_id),
    )


def _ensure_category_name_free(conn, name: str, exclude_id: Optional[int] = None) -> None:
    placeholder = placeholder_for(conn)
    row = conn.execute(f"SELECT id FROM categories WHERE name = {placeholder};", (name,)).fetchone()
    if row is not None and row["id"] != exclude_id:
        raise Conflict(f"Category {name!r} already exists")


def _restaurant_from_row(row) -> RestaurantRecord:
    return RestaurantRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        description=row["description"],
        is_active=bool(row["is_active"]),
        street=row["street"],
        city=row["city"],
        state=row["state"],
        postal_code=row["postal_code"],
    )


def _menu_item_from_row(row, categories: Iterable[str] = ()) -> MenuItemRecord:
    return MenuItemRecord(
        id=row["id"],
        restaurant_id=row["restaurant_id"],
        name=row["name"],
        description=row["description"],
        price=to_money(row["price"]),
        is_available=bool(row["is_available"]),
        categories=tuple(categories),
    )

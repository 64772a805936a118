from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .auth import Identity, check_password, hash_password
from .database import (
    ConnectionFactory,
    insert_returning_id,
    placeholder_for,
    seed_roles,
    set_clause,
    transaction,
)
from .domain import Role
from .errors import AuthenticationFailed, Conflict, Forbidden, NotFound, ValidationFailed

logger = logging.getLogger("delivery-service.accounts")


@dataclass(frozen=True)
class UserRecord:
    id: int
    full_name: str
    email: str
    phone: Optional[str]


@dataclass(frozen=True)
class AddressRecord:
    id: int
    user_id: int
    title: str
    street: str
    city: str
    postal_code: Optional[str]
    is_default: bool


class AccountRepository:
    """Users, their roles and their delivery addresses."""

    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def register(
        self,
        full_name: str,
        email: str,
        password: str,
        role: Role,
        phone: Optional[str] = None,
    ) -> UserRecord:
        if not full_name or not email or not password:
            raise ValidationFailed("Missing required fields")

        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            exists = conn.execute(
                f"SELECT id FROM users WHERE email = {placeholder};", (email,)
            ).fetchone()
            if exists is not None:
                raise Conflict("User already exists")

            role_id = _role_id(conn, role)
            user_id = insert_returning_id(
                conn,
                f"""
                INSERT INTO users (full_name, email, password, phone, created_at)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
                RETURNING id;
                """,
                (full_name, email, hash_password(password), phone, _now()),
            )
            conn.execute(
                f"INSERT INTO user_roles (user_id, role_id) VALUES ({placeholder}, {placeholder});",
                (user_id, role_id),
            )

        logger.info("Registered %s user id=%s", role.value, user_id)
        return UserRecord(id=user_id, full_name=full_name, email=email, phone=phone)

    def authenticate(self, email: str, password: str, required_role: Optional[Role] = None) -> Identity:
        if not email or not password:
            raise ValidationFailed("Email and password are required")

        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            user = conn.execute(
                f"SELECT id, email, password FROM users WHERE email = {placeholder};", (email,)
            ).fetchone()
            if user is None or not check_password(password, user["password"]):
                raise AuthenticationFailed("Invalid credentials")
            roles = _roles_of(conn, user["id"])

        if required_role is not None and required_role not in roles:
            held = ", ".join(role.value for role in roles)
            raise Forbidden(
                f"This login is for role={required_role.value}. Your roles: {held}"
            )
        return Identity(id=user["id"], email=user["email"], roles=roles)

    def assign_role(self, email: str, role: Role) -> None:
        """Grant ``role`` to the user; granting a held role is a no-op."""
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            user = conn.execute(
                f"SELECT id FROM users WHERE email = {placeholder};", (email,)
            ).fetchone()
            if user is None:
                raise NotFound("User not found")
            conn.execute(
                f"""
                INSERT INTO user_roles (user_id, role_id) VALUES ({placeholder}, {placeholder})
                ON CONFLICT DO NOTHING;
                """,
                (user["id"], _role_id(conn, role)),
            )
        logger.info("Role %s assigned to user id=%s", role.value, user["id"])

    def seed_roles(self) -> None:
        with self._connection() as conn:
            seed_roles(conn)

    def list_addresses(self, user_id: int) -> list[AddressRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT id, user_id, title, street, city, postal_code, is_default
                FROM user_addresses
                WHERE user_id = {placeholder}
                ORDER BY is_default DESC, id DESC;
                """,
                (user_id,),
            ).fetchall()
        return [_address_from_row(row) for row in rows]

    def add_address(
        self,
        user_id: int,
        street: str,
        city: str,
        title: Optional[str] = None,
        postal_code: Optional[str] = None,
        is_default: bool = False,
    ) -> AddressRecord:
        if not street or not city:
            raise ValidationFailed("street and city are required")

        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            if is_default:
                conn.execute(
                    f"UPDATE user_addresses SET is_default = FALSE WHERE user_id = {placeholder};",
                    (user_id,),
                )
            address_id = insert_returning_id(
                conn,
                f"""
                INSERT INTO user_addresses (user_id, title, street, city, postal_code, is_default)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
                RETURNING id;
                """,
                (user_id, title or "Home", street, city, postal_code, bool(is_default)),
            )

        return AddressRecord(
            id=address_id,
            user_id=user_id,
            title=title or "Home",
            street=street,
            city=city,
            postal_code=postal_code,
            is_default=bool(is_default),
        )

    def update_address(
        self,
        user_id: int,
        address_id: int,
        title: Optional[str] = None,
        street: Optional[str] = None,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        is_default: Optional[bool] = None,
    ) -> AddressRecord:
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            current = _get_address(conn, user_id, address_id)
            if is_default:
                conn.execute(
                    f"UPDATE user_addresses SET is_default = FALSE WHERE user_id = {placeholder};",
                    (user_id,),
                )
            clause, values = set_clause(
                conn,
                {
                    "title": title,
                    "street": street,
                    "city": city,
                    "postal_code": postal_code,
                    # Always present, so the SET clause is never empty.
                    "is_default": current.is_default if is_default is None else is_default,
                },
            )
            conn.execute(
                f"UPDATE user_addresses SET {clause} WHERE id = {placeholder};",
                (*values, address_id),
            )
            return _get_address(conn, user_id, address_id)

    def delete_address(self, user_id: int, address_id: int) -> None:
        """Remove an address; orders that used it keep their row with a NULL address."""
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            cur = conn.execute(
                f"DELETE FROM user_addresses WHERE id = {placeholder} AND user_id = {placeholder};",
                (address_id, user_id),
            )
            if cur.rowcount == 0:
                raise NotFound("Address not found")


def _role_id(conn, role: Role) -> int:
    placeholder = placeholder_for(conn)
    row = conn.execute(f"SELECT id FROM roles WHERE name = {placeholder};", (role.value,)).fetchone()
    if row is None:
        raise ValidationFailed("Role not found. Run /admin/seed-roles first.")
    return row["id"]


def _roles_of(conn, user_id: int) -> tuple:
    placeholder = placeholder_for(conn)
    rows = conn.execute(
        f"""
        SELECT r.name FROM roles r
        JOIN user_roles ur ON ur.role_id = r.id
        WHERE ur.user_id = {placeholder}
        ORDER BY r.name ASC;
        """,
        (user_id,),
    ).fetchall()
    return tuple(Role(row["name"]) for row in rows)


def _get_address(conn, user_id: int, address_id: int) -> AddressRecord:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT id, user_id, title, street, city, postal_code, is_default
        FROM user_addresses
        WHERE id = {placeholder} AND user_id = {placeholder};
        """,
        (address_id, user_id),
    ).fetchone()
    if row is None:
        raise NotFound("Address not found")
    return _address_from_row(row)


def _address_from_row(row) -> AddressRecord:
    return AddressRecord(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        street=row["street"],
        city=row["city"],
        postal_code=row["postal_code"],
        is_default=bool(row["is_default"]),
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

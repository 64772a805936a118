from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Tuple

import bcrypt
import jwt
from fastapi import Depends, Request

from .domain import Role, has_any_role
from .errors import AuthenticationFailed, Forbidden

JWT_ALGORITHM = "HS256"
SALT_ROUNDS = 10


@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    roles: Tuple[Role, ...] = field(default_factory=tuple)

    def has_role(self, role: Role) -> bool:
        return role in self.roles


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(SALT_ROUNDS)).decode("utf-8")


def check_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def generate_token(identity: Identity, secret: str, expires_hours: int) -> str:
    payload = {
        "id": identity.id,
        "email": identity.email,
        "roles": [role.value for role in identity.roles],
        "exp": datetime.now(timezone.utc) + timedelta(hours=expires_hours),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str) -> Identity:
    try:
        data = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationFailed("Invalid or expired token")
    if "id" not in data:
        raise AuthenticationFailed("Invalid or expired token")

    roles = tuple(Role(role) for role in data.get("roles", []) if role in Role.__members__)
    return Identity(id=data["id"], email=data.get("email", ""), roles=roles)


def get_identity(request: Request) -> Identity:
    """FastAPI dependency resolving the bearer token of the current request."""
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise AuthenticationFailed("No token provided")
    token = header.split(" ", 1)[1].strip()
    return decode_token(token, request.app.state.settings.jwt_secret)


def require_roles(*roles: Role):
    """Build a dependency admitting identities whose roles intersect ``roles``."""

    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not has_any_role(roles, identity.roles):
            allowed = ", ".join(role.value for role in roles)
            raise Forbidden(f"This action requires one of the following roles: {allowed}")
        return identity

    return dependency

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .database import build_database_url
from .domain import FulfillmentMode


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str = "change_this_secret"
    jwt_expires_hours: int = 168
    fulfillment_mode: FulfillmentMode = FulfillmentMode.INSTANT
    serialize_courier_selection: bool = False
    allowed_origins: tuple = ("*",)
    log_level: str = "INFO"
    db_connect_max_retries: int = 30
    db_connect_retry_delay: float = 2.0


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    mode = env.get("FULFILLMENT_MODE", FulfillmentMode.INSTANT.value).lower()
    try:
        fulfillment_mode = FulfillmentMode(mode)
    except ValueError:
        raise RuntimeError(f"FULFILLMENT_MODE must be 'instant' or 'staged', got {mode!r}")

    return Settings(
        database_url=build_database_url(env),
        jwt_secret=env.get("JWT_SECRET", "change_this_secret"),
        jwt_expires_hours=int(env.get("JWT_EXPIRES_HOURS", "168")),
        fulfillment_mode=fulfillment_mode,
        serialize_courier_selection=_flag(env.get("SERIALIZE_COURIER_SELECTION", "false")),
        allowed_origins=tuple(
            origin.strip() for origin in env.get("ALLOWED_ORIGINS", "*").split(",")
        ),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        db_connect_max_retries=int(env.get("DB_CONNECT_MAX_RETRIES", "30")),
        db_connect_retry_delay=float(env.get("DB_CONNECT_RETRY_DELAY", "2")),
    )


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}

"""Billing webhook configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import math
import os

STORE_BACKENDS = ("firestore", "postgres", "memory")


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL entitlement store."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int
    statement_timeout_ms: int

    def connect_kwargs(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing webhook engine and its collaborators."""

    stripe_secret_key: str
    stripe_webhook_secret: str
    signature_tolerance_seconds: int
    provider_timeout_seconds: float
    provider_max_retries: int
    store_backend: str
    users_collection: str
    firebase_service_account: Optional[str]
    google_credentials_path: Optional[str]
    firestore_timeout_seconds: float
    firestore_transaction_attempts: int
    database: DatabaseConfig
    user_id_metadata_key: str
    log_level: str


def _to_int(name: str, value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _to_float(name: str, value: Optional[str], *, default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    store_backend = (env_mapping.get("ENTITLEMENT_STORE") or "firestore").strip().lower()
    if store_backend not in STORE_BACKENDS:
        raise ValueError(
            f"ENTITLEMENT_STORE must be one of {', '.join(STORE_BACKENDS)}, got {store_backend!r}"
        )

    tolerance = _to_int(
        "STRIPE_SIGNATURE_TOLERANCE_SEC",
        env_mapping.get("STRIPE_SIGNATURE_TOLERANCE_SEC"),
        default=300,
    )
    if tolerance <= 0:
        raise ValueError("STRIPE_SIGNATURE_TOLERANCE_SEC must be positive")

    connect_timeout = _to_float("DB_CONNECT_TIMEOUT", env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")

    database = DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int("DB_PORT", env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "billing_db"),
        user=env_mapping.get("DB_USER", "billing_user"),
        password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        connect_timeout=int(math.ceil(connect_timeout)),
        statement_timeout_ms=max(
            0,
            _to_int("DB_STATEMENT_TIMEOUT_MS", env_mapping.get("DB_STATEMENT_TIMEOUT_MS"), default=10000),
        ),
    )

    return BillingConfig(
        stripe_secret_key=(env_mapping.get("STRIPE_SECRET_KEY") or "").strip(),
        stripe_webhook_secret=(env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip(),
        signature_tolerance_seconds=tolerance,
        provider_timeout_seconds=max(
            0.1,
            _to_float("STRIPE_API_TIMEOUT_SEC", env_mapping.get("STRIPE_API_TIMEOUT_SEC"), default=8.0),
        ),
        provider_max_retries=max(
            0,
            _to_int("STRIPE_MAX_NETWORK_RETRIES", env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2),
        ),
        store_backend=store_backend,
        users_collection=(env_mapping.get("USERS_COLLECTION") or "users").strip() or "users",
        firebase_service_account=env_mapping.get("FIREBASE_SERVICE_ACCOUNT") or None,
        google_credentials_path=env_mapping.get("GOOGLE_APPLICATION_CREDENTIALS") or None,
        firestore_timeout_seconds=max(
            0.1,
            _to_float("FIRESTORE_TIMEOUT_SEC", env_mapping.get("FIRESTORE_TIMEOUT_SEC"), default=10.0),
        ),
        firestore_transaction_attempts=max(
            1,
            _to_int(
                "FIRESTORE_TRANSACTION_ATTEMPTS",
                env_mapping.get("FIRESTORE_TRANSACTION_ATTEMPTS"),
                default=5,
            ),
        ),
        database=database,
        user_id_metadata_key=(env_mapping.get("USER_ID_METADATA_KEY") or "uid").strip() or "uid",
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


__all__ = ["BillingConfig", "DatabaseConfig", "STORE_BACKENDS", "load_billing_config"]

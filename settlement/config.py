from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


# =============================================================================
# Utils
# =============================================================================

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def env_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def env_decimal(key: str, default: str) -> Decimal:
    raw = os.getenv(key)
    try:
        return Decimal((raw or default).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        return Decimal(default)


def normalize_database_url(raw: Optional[str]) -> str:
    """
    Render/Heroku entregan DATABASE_URL con 'postgres://'
    SQLAlchemy espera 'postgresql://'
    """
    if not raw or not raw.strip():
        return "sqlite:///settlement_local.db"

    url = raw.strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url


# =============================================================================
# Config Base
# =============================================================================

class BaseConfig:
    """
    Configuración base del motor de liquidación.
    - Segura por defecto
    - Ajustable por env vars
    """

    # -------------------------------------------------------------------------
    # Entorno
    # -------------------------------------------------------------------------
    ENV: str = env_str("FLASK_ENV", "production").lower()
    DEBUG: bool = False
    TESTING: bool = False

    SECRET_KEY: str = env_str("SECRET_KEY", "dev_settlement_fallback")

    SESSION_COOKIE_HTTPONLY: bool = True
    SESSION_COOKIE_SAMESITE: str = env_str("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE: bool = truthy(os.getenv("SESSION_COOKIE_SECURE"), default=(ENV == "production"))

    JSON_SORT_KEYS: bool = False

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = env_str("LOG_LEVEL", "INFO").upper()

    # -------------------------------------------------------------------------
    # Database (SQLAlchemy)
    # -------------------------------------------------------------------------
    DATABASE_URL: str = normalize_database_url(os.getenv("DATABASE_URL"))
    SQLALCHEMY_DATABASE_URI: str = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False

    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_recycle": env_int("DB_POOL_RECYCLE", 280),
        "pool_size": env_int("DB_POOL_SIZE", 5),
        "max_overflow": env_int("DB_MAX_OVERFLOW", 10),
    }

    # Reintentos de una unidad transaccional completa (errores transitorios)
    TX_RETRIES: int = env_int("TX_RETRIES", 3)

    # -------------------------------------------------------------------------
    # Cache (también usado como lock consultivo entre procesos)
    # -------------------------------------------------------------------------
    CACHE_TYPE: str = env_str("CACHE_TYPE", "SimpleCache")
    CACHE_DEFAULT_TIMEOUT: int = env_int("CACHE_DEFAULT_TIMEOUT", 300)
    ENABLE_COMPRESS: bool = truthy(os.getenv("ENABLE_COMPRESS"), default=True)

    # -------------------------------------------------------------------------
    # Seguridad HTTP (Flask-Talisman)
    # -------------------------------------------------------------------------
    ENABLE_TALISMAN: bool = truthy(os.getenv("ENABLE_TALISMAN"), default=(ENV == "production"))
    FORCE_HTTPS: bool = truthy(os.getenv("FORCE_HTTPS"), default=(ENV == "production"))

    # -------------------------------------------------------------------------
    # Jobs / cron (credencial de servicio, no sesión)
    # -------------------------------------------------------------------------
    CRON_SECRET: str = env_str("CRON_SECRET", "")

    # -------------------------------------------------------------------------
    # Liquidación
    # -------------------------------------------------------------------------
    SETTLEMENT_CURRENCY: str = env_str("SETTLEMENT_CURRENCY", "BRL").upper()

    AFFILIATE_HOLDBACK_DAYS: int = env_int("AFFILIATE_HOLDBACK_DAYS", 7)
    AFFILIATE_MIN_WITHDRAWAL: Decimal = env_decimal("AFFILIATE_MIN_WITHDRAWAL", "50.00")
    SELLER_MIN_WITHDRAWAL: Decimal = env_decimal("SELLER_MIN_WITHDRAWAL", "0.01")

    TRANSFER_MIN_AMOUNT: Decimal = env_decimal("TRANSFER_MIN_AMOUNT", "1.00")
    TRANSFER_MAX_AMOUNT: Decimal = env_decimal("TRANSFER_MAX_AMOUNT", "50000.00")

    RELEASE_BATCH_LIMIT: int = env_int("RELEASE_BATCH_LIMIT", 500)
    LEDGER_LOCK_TIMEOUT: int = env_int("LEDGER_LOCK_TIMEOUT", 8)

    # -------------------------------------------------------------------------
    # Auditoría de consistencia
    # -------------------------------------------------------------------------
    STUCK_PROCESSING_HOURS: int = env_int("STUCK_PROCESSING_HOURS", 48)
    FRAUD_SCORE_REVIEW_THRESHOLD: int = env_int("FRAUD_SCORE_REVIEW_THRESHOLD", 30)
    AUDIT_SAMPLE_SIZE: int = env_int("AUDIT_SAMPLE_SIZE", 20)

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENV == "production"


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True
    LOG_LEVEL = env_str("LOG_LEVEL", "DEBUG").upper()

    SESSION_COOKIE_SECURE = False
    ENABLE_TALISMAN = False
    FORCE_HTTPS = False

    # SQLite/Dev: pool simple
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    CRON_SECRET = env_str("CRON_SECRET", "dev-cron-secret")


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    SECRET_KEY = "test-secret"

    SESSION_COOKIE_SECURE = False
    ENABLE_TALISMAN = False
    FORCE_HTTPS = False
    ENABLE_COMPRESS = False

    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {}

    CACHE_TYPE = "SimpleCache"
    CRON_SECRET = "test-cron-secret"
    TX_RETRIES = 1


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False
    LOG_LEVEL = env_str("LOG_LEVEL", "INFO").upper()

    # En producción: secret key real (sin fallback)
    SECRET_KEY = env_str("SECRET_KEY", "")
    SESSION_COOKIE_SECURE = truthy(os.getenv("SESSION_COOKIE_SECURE"), default=True)


def get_config(env_name: Optional[str] = None):
    """
    Devuelve la clase correcta.
    Prioridad:
      1) parámetro env_name
      2) FLASK_ENV
    """
    env = (env_name or env_str("FLASK_ENV", "production")).lower()
    if env == "development":
        return DevelopmentConfig
    if env == "testing":
        return TestingConfig
    return ProductionConfig


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}

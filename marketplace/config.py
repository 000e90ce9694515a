"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Runtime env wins over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _str_to_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if not value:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "marketplace.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "GoCart Marketplace")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Identity: ids handed over by the upstream auth provider that act as platform admins
    ADMIN_USER_IDS: Final[tuple[str, ...]] = _str_to_tuple(os.getenv("ADMIN_USER_IDS"))

    # Catalog policy
    ENFORCE_PRICE_NOT_ABOVE_MRP: Final[bool] = _str_to_bool(
        os.getenv("ENFORCE_PRICE_NOT_ABOVE_MRP"), default=True
    )
    MAX_PRODUCT_IMAGES: Final[int] = int(os.getenv("MAX_PRODUCT_IMAGES", "4"))

    # Checkout
    MAX_LINE_QUANTITY: Final[int] = int(os.getenv("MAX_LINE_QUANTITY", "1000"))

    # Blob storage
    UPLOAD_ALLOWED_EXTENSIONS: Final[tuple[str, ...]] = tuple(
        ext.lower()
        for ext in _str_to_tuple(
            os.getenv("UPLOAD_ALLOWED_EXTENSIONS"),
            default=("jpg", "jpeg", "png", "gif", "webp"),
        )
    )
    BLOB_STORAGE_BACKEND: Final[str] = os.getenv("BLOB_STORAGE_BACKEND", "local")
    MEDIA_ROOT: Final[Path] = Path(os.getenv("MEDIA_ROOT", (BASE_DIR / "static" / "media").as_posix()))
    MEDIA_BASE_URL: Final[str] = os.getenv("MEDIA_BASE_URL", "/static/media/")
    BLOB_STORAGE_URL: Final[str] = os.getenv("BLOB_STORAGE_URL", "")
    BLOB_STORAGE_TOKEN: Final[str] = os.getenv("BLOB_STORAGE_TOKEN", "")
    BLOB_STORAGE_TIMEOUT: Final[float] = float(os.getenv("BLOB_STORAGE_TIMEOUT", "10"))
    PRODUCT_BUCKET: Final[str] = os.getenv("PRODUCT_BUCKET", "products")
    LOGO_BUCKET: Final[str] = os.getenv("LOGO_BUCKET", "store-logos")

    # Dashboard
    DASHBOARD_SERIES_DAYS: Final[int] = int(os.getenv("DASHBOARD_SERIES_DAYS", "30"))
    DASHBOARD_MAX_DAYS: Final[int] = int(os.getenv("DASHBOARD_MAX_DAYS", "366"))
    DEFAULT_TIMEZONE: Final[str] = os.getenv("DEFAULT_TIMEZONE", "UTC")

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["ADMIN_USER_IDS"] = cls.ADMIN_USER_IDS
        app.config["ENFORCE_PRICE_NOT_ABOVE_MRP"] = cls.ENFORCE_PRICE_NOT_ABOVE_MRP
        app.config["MAX_PRODUCT_IMAGES"] = cls.MAX_PRODUCT_IMAGES
        app.config["UPLOAD_ALLOWED_EXTENSIONS"] = cls.UPLOAD_ALLOWED_EXTENSIONS
        app.config["BLOB_STORAGE_BACKEND"] = cls.BLOB_STORAGE_BACKEND
        if cls.BLOB_STORAGE_BACKEND == "local":
            cls.MEDIA_ROOT.mkdir(parents=True, exist_ok=True)
        app.config["MEDIA_ROOT"] = str(cls.MEDIA_ROOT)
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED

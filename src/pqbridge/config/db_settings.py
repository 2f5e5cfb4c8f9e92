from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ALLOWED_SCHEMES = ("postgresql", "postgres")


def validate_dsn(value: str) -> str:
    """Validate that a connection string is a ``postgresql://`` URI."""
    if not value or not value.strip():
        raise ValueError("connection string cannot be empty")
    dsn = value.strip()
    scheme = urlsplit(dsn).scheme
    if scheme not in _ALLOWED_SCHEMES:
        raise ValueError(
            "connection string must start with postgresql:// or postgres://. "
            "Got a URL starting with a different scheme."
        )
    return dsn


def redact_dsn(dsn: str) -> str:
    """Return ``dsn`` with its password replaced by ``***`` (for logging)."""
    parts = urlsplit(dsn)
    if parts.password is None:
        return dsn
    userinfo = parts.username or ""
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    netloc = f"{userinfo}:***@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class ConnectionSettings(BaseSettings):
    """Per-connection settings: target database, timeouts and worker tuning."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    database_url: str = Field(..., alias="DATABASE_URL", min_length=1)
    query_timeout_seconds: float | None = Field(
        default=None, alias="DB_QUERY_TIMEOUT_SECONDS", gt=0
    )
    connect_timeout_seconds: float = Field(default=10.0, alias="DB_CONNECT_TIMEOUT_SECONDS", gt=0)
    connect_attempts: int = Field(default=1, alias="DB_CONNECT_ATTEMPTS", ge=1)
    connect_retry_wait_seconds: float = Field(
        default=0.5, alias="DB_CONNECT_RETRY_WAIT_SECONDS", ge=0
    )
    notify_poll_interval_seconds: float = Field(
        default=0.05, alias="DB_NOTIFY_POLL_INTERVAL_SECONDS", gt=0
    )
    close_timeout_seconds: float = Field(default=5.0, alias="DB_CLOSE_TIMEOUT_SECONDS", gt=0)
    max_prepared_statements: int = Field(default=256, alias="DB_MAX_PREPARED_STATEMENTS", ge=1)
    application_name: str = Field(default="pqbridge", alias="DB_APPLICATION_NAME")

    @property
    def dsn(self) -> str:
        """Database connection string (DSN)."""
        return self.database_url

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        return validate_dsn(v)


class PoolConfig(BaseSettings):
    """Sizing and timeout policy for :class:`pqbridge.db.pool.Pool`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    min_size: int = Field(
        default=0, validation_alias=AliasChoices("DB_POOL_MIN_SIZE", "min_size", "min"), ge=0
    )
    max_size: int = Field(
        default=10, validation_alias=AliasChoices("DB_POOL_MAX_SIZE", "max_size", "max"), ge=1
    )
    idle_timeout_millis: int = Field(
        default=30_000,
        validation_alias=AliasChoices(
            "DB_POOL_IDLE_TIMEOUT_MILLIS", "idle_timeout_millis", "idleTimeoutMillis"
        ),
        gt=0,
    )
    connection_timeout_millis: int = Field(
        default=30_000,
        validation_alias=AliasChoices(
            "DB_POOL_CONNECTION_TIMEOUT_MILLIS",
            "connection_timeout_millis",
            "connectionTimeoutMillis",
        ),
        gt=0,
    )
    reap_interval_millis: int = Field(
        default=1_000,
        validation_alias=AliasChoices("DB_POOL_REAP_INTERVAL_MILLIS", "reap_interval_millis"),
        gt=0,
    )
    validate_on_acquire: bool = Field(
        default=False,
        validation_alias=AliasChoices("DB_POOL_VALIDATE_ON_ACQUIRE", "validate_on_acquire"),
    )

    @property
    def idle_timeout(self) -> float:
        return self.idle_timeout_millis / 1000

    @property
    def connection_timeout(self) -> float:
        return self.connection_timeout_millis / 1000

    @property
    def reap_interval(self) -> float:
        return self.reap_interval_millis / 1000

    def model_post_init(self, __context: Any) -> None:
        """Validate that max_size >= min_size after all fields are set."""
        if self.max_size < self.min_size:
            raise ValueError("DB_POOL_MAX_SIZE must be greater than or equal to DB_POOL_MIN_SIZE")


class ConnectionConfig(BaseModel):
    """``{connection_string, pool_size}`` pair accepted by ``Pool(...)``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    connection_string: str = Field(
        ..., validation_alias=AliasChoices("connection_string", "connectionString")
    )
    pool_size: int | None = Field(
        default=None, validation_alias=AliasChoices("pool_size", "poolSize"), ge=1
    )

    @field_validator("connection_string")
    @classmethod
    def validate_connection_string(cls, v: str) -> str:
        return validate_dsn(v)

from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    normalized = urlunparse(
        parsed._replace(
            scheme=scheme,
            query=new_query,
        )
    )
    return normalized


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Minimum loguru level for stderr output")
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/predictsync.db",
        description="SQLAlchemy compatible database URL backing the cache store",
    )
    rpc_url: AnyUrl | str = Field(
        default="https://mainnet.base.org",
        description="JSON-RPC endpoint of the ledger provider",
    )
    rpc_timeout_seconds: float = Field(
        default=10.0,
        description="Per-call timeout applied to every provider request",
        gt=0,
    )
    v1_contract_address: str = Field(
        default="0xdc21A340835C41a14Eb1C856Ce902464D04774E3",
        description="Address of the legacy (V1 schema) prediction market contract",
    )
    v2_contract_address: str = Field(
        default="0x2bA339Df34B98099a9047d9442075F7B3a792f74",
        description="Address of the current (V2 schema) prediction market contract",
    )
    usdc_contract_address: str | None = Field(
        default="0xf5Fa6206c2a7d5473ae7468082c9D260DFF83205",
        description="Address of the stable-token dual-pool contract; blank disables stable-token reads",
    )
    log_chunk_size: int = Field(
        default=1000,
        description="Maximum number of blocks requested per event-log query",
        ge=1,
    )
    retry_attempts: int = Field(
        default=3,
        description="Number of attempts for a provider call before the error is surfaced",
        ge=1,
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        description="Base delay for exponential backoff between provider retries",
        ge=0,
    )
    retry_max_delay_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single backoff delay",
        ge=0,
    )
    sync_concurrency: int = Field(
        default=1,
        description="Number of ids fetched concurrently within one sync run",
    )
    sync_inter_call_delay_seconds: float = Field(
        default=0.1,
        description="Pause between per-id fetches when running sequentially",
        ge=0,
    )
    recent_window_size: int = Field(
        default=10,
        description="Number of trailing ids re-checked by the recent-window strategy",
        ge=1,
    )
    resolved_sync_limit: int = Field(
        default=50,
        description="Maximum number of resolved/cancelled markets re-read per resolved sync",
        ge=1,
    )
    resolution_grace_seconds: int = Field(
        default=7 * 24 * 60 * 60,
        description="Window after the deadline in which a market must be resolved (derived for V2)",
        ge=0,
    )
    stats_ttl_seconds: float = Field(
        default=120.0,
        description="Seconds before the cached aggregate statistics snapshot is recomputed",
        gt=0,
    )
    lock_ttl_seconds: float = Field(
        default=30.0,
        description="Lifetime of a per-market advisory lock",
        gt=0,
    )
    lock_wait_seconds: float = Field(
        default=5.0,
        description="How long a writer waits for a held per-market lock before skipping the id",
        ge=0,
    )

    @field_validator("sync_concurrency")
    @classmethod
    def _validate_concurrency(cls, value: int) -> int:
        if not 1 <= value <= 5:
            raise ValueError("sync_concurrency must be between 1 and 5")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        candidate = value.strip().upper()
        if candidate not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {value}")
        return candidate

    @field_validator("usdc_contract_address", mode="before")
    @classmethod
    def _blank_address_disables(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def consecutive_failure_limit(self) -> int:
        return self.retry_attempts * 2


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

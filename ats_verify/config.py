"""
ATS Verify - Configuration

Strict settings loader. Auto-loading of .env files is DISABLED; every value
comes from os.environ (or the defaults below).

Usage:
    from ats_verify.config import get_settings

    settings = get_settings()
    normalizer = RecordNormalizer.from_settings(settings)

Environment variables:
  DATABASE_URL              - Postgres connection string
  LOG_LEVEL                 - DEBUG / INFO / WARNING / ERROR
  LOG_JSON                  - JSON log lines (true) or plain console (false)
  ATS_MARKETPLACE_PREFIXES  - JSON object mapping uploader prefix -> marketplace
  ATS_NULL_TOKEN            - literal placeholder treated as an empty field
  ATS_IDENTITY_SENTINELS    - JSON list of identity keys that count as missing
  ATS_LEDGER_CHUNK_SIZE     - rows per INSERT statement in the ledger loader
  ATS_DB_PARAMETER_LIMIT    - bind-parameter limit per statement (Postgres: 65535)
  ATS_POOL_MIN_SIZE / ATS_POOL_MAX_SIZE - connection pool bounds
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, List, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Number of bound columns per ledger row (created_at is NOW() server-side)
LEDGER_COLUMN_COUNT = 9

DEFAULT_MARKETPLACE_PREFIXES: Dict[str, str] = {
    "wb": "Wildberries",
    "ozon": "Ozon",
    "kaspi": "Kaspi",
    "ali": "AliExpress",
    "temu": "Temu",
}


class Settings(BaseSettings):
    """
    Application settings.

    Does NOT auto-load any .env file. Values are read from os.environ at
    instantiation; use reset_settings() after changing the environment.
    """

    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================

    DATABASE_URL: str = Field(
        default="",
        description="Postgres connection string",
    )
    ATS_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    ATS_POOL_MAX_SIZE: int = Field(default=10, ge=1)

    # =========================================================================
    # LOGGING
    # =========================================================================

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit structured JSON log lines",
    )

    # =========================================================================
    # INGESTION
    # =========================================================================

    ATS_MARKETPLACE_PREFIXES: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_MARKETPLACE_PREFIXES),
        description="Uploader prefix -> marketplace display name",
    )
    ATS_NULL_TOKEN: str = Field(
        default="<nil>",
        description="Literal placeholder exported by upstream systems for NULL",
    )
    ATS_IDENTITY_SENTINELS: List[str] = Field(
        default_factory=lambda: ["0"],
        description="Identity keys treated as missing",
    )
    ATS_LEDGER_CHUNK_SIZE: int = Field(default=5000, ge=1)
    ATS_DB_PARAMETER_LIMIT: int = Field(default=65535, ge=LEDGER_COLUMN_COUNT + 1)

    @model_validator(mode="after")
    def _validate_chunk_size(self) -> "Settings":
        """Reject a ledger chunk size that would overflow the parameter limit."""
        params = self.ATS_LEDGER_CHUNK_SIZE * LEDGER_COLUMN_COUNT
        if params >= self.ATS_DB_PARAMETER_LIMIT:
            raise ValueError(
                f"ATS_LEDGER_CHUNK_SIZE={self.ATS_LEDGER_CHUNK_SIZE} binds {params} "
                f"parameters per statement; limit is {self.ATS_DB_PARAMETER_LIMIT}"
            )
        if self.ATS_POOL_MIN_SIZE > self.ATS_POOL_MAX_SIZE:
            raise ValueError("ATS_POOL_MIN_SIZE must not exceed ATS_POOL_MAX_SIZE")
        return self

    @property
    def database_url(self) -> str:
        """Effective DSN with surrounding whitespace removed."""
        return self.DATABASE_URL.strip()

    @property
    def marketplace_prefixes(self) -> Dict[str, str]:
        """Prefix table with lower-cased keys."""
        return {k.strip().lower(): v for k, v in self.ATS_MARKETPLACE_PREFIXES.items()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings instance."""
    settings = Settings()
    logger.debug(
        "Settings loaded",
        extra={"count": len(settings.ATS_MARKETPLACE_PREFIXES)},
    )
    return settings


def reset_settings() -> None:
    """Clear the cached settings (tests, env reloads)."""
    get_settings.cache_clear()

import json
import os
import re
from pathlib import Path
from typing import List, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = Field(default=os.getenv("PROJECT_NAME", "OTC Desk API"))
    environment: str = Field(default="dev")
    build_version: Optional[str] = Field(default=None)
    database_url: str = Field(default="sqlite+aiosqlite:///./otc-desk-dev.db")
    # API prefix used by FastAPI router include (e.g. "/api/v1").
    api_prefix: str = Field(default="", validation_alias="API_V1_STR")
    enable_docs: Optional[bool] = Field(default=None)
    cors_origins_raw: Optional[str] = Field(default=None, validation_alias="CORS_ORIGINS")
    create_tables_on_start: bool = Field(default=False)

    # Shared secret for the inbound-message webhook (X-Ingest-Token).
    # If not set, the webhook accepts unauthenticated calls outside production.
    ingest_token: Optional[str] = Field(default=None)

    # Deal sweep
    sweep_enabled: bool = Field(default=True)
    sweep_interval_seconds: float = Field(default=30.0)

    # Caches
    rule_cache_ttl_seconds: float = Field(default=60.0)
    spread_cache_ttl_seconds: float = Field(default=300.0)
    active_quote_ttl_seconds: float = Field(default=300.0)
    active_quote_capacity: int = Field(default=1024)

    # Deal defaults (overridable per group)
    default_quote_ttl_seconds: int = Field(default=180)
    default_amount_timeout_seconds: int = Field(default=60)

    # Price feeds
    binance_price_url: str = Field(
        default="https://api.binance.com/api/v3/ticker/price?symbol=USDTBRL"
    )
    commercial_dollar_url: str = Field(
        default="https://economia.awesomeapi.com.br/json/last/USD-BRL"
    )
    price_feed_timeout_seconds: float = Field(default=2.0)

    @field_validator("enable_docs", mode="before")
    @classmethod
    def default_enable_docs(cls, value, info: ValidationInfo):
        if value is None or value == "":
            env = str(info.data.get("environment", "dev") or "dev").lower()
            return env in {"dev", "development", "test"}
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)

    @field_validator("api_prefix", mode="before")
    @classmethod
    def normalize_api_prefix(cls, v) -> str:
        if v is None:
            return ""
        s = str(v).strip()
        if not s:
            return ""
        if s.startswith("/api/") or s == "/api":
            return s
        # Git Bash on Windows may expand "/api/v1" into a filesystem path.
        m = re.search(r"(/api/[^\s]+)$", s.replace("\\", "/"))
        if m:
            return m.group(1)
        if s.startswith("api/"):
            return f"/{s}"
        return s

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v) -> str:
        """Map plain URLs onto the async drivers we ship.

        - postgres:// and postgresql:// -> postgresql+psycopg:// (psycopg3 async)
        - sqlite:// -> sqlite+aiosqlite://, with ./relative paths anchored at the repo root
        """

        if v is None:
            return v

        s = str(v).strip()
        if not s:
            return s

        if s.startswith("postgres://"):
            s = "postgresql://" + s[len("postgres://") :]
        if s.startswith("postgresql://"):
            return "postgresql+psycopg://" + s[len("postgresql://") :]
        if s.startswith("postgresql+psycopg2://"):
            return "postgresql+psycopg://" + s[len("postgresql+psycopg2://") :]

        if not s.startswith("sqlite"):
            return s

        scheme, sep, rest = s.partition("://")
        if scheme in {"sqlite", "sqlite+pysqlite"}:
            s = f"sqlite+aiosqlite{sep}{rest}"

        marker = ":///"
        i = s.find(marker)
        if i == -1:
            return s

        path_part = s[i + len(marker) :]
        if not path_part or path_part.startswith(":memory:"):
            return s
        if path_part.startswith("/") or re.match(r"^[A-Za-z]:/", path_part):
            return s
        if path_part.startswith("./") or path_part.startswith(".\\"):
            repo_root = Path(__file__).resolve().parents[1]
            abs_path = (repo_root / path_part[2:]).resolve().as_posix()
            return f"{s[: i + len(marker)]}{abs_path}"
        return s

    @field_validator("database_url")
    @classmethod
    def validate_database_url_for_environment(cls, v: str, info: ValidationInfo) -> str:
        env = str(info.data.get("environment", "dev") or "dev").strip().lower()
        s = str(v or "").strip()
        if env in {"prod", "production"}:
            if not os.getenv("DATABASE_URL"):
                raise ValueError("DATABASE_URL must be explicitly set in production")
            if s.startswith("sqlite"):
                raise ValueError("SQLite DATABASE_URL is not allowed in production")
        return s

    @field_validator("sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("SWEEP_INTERVAL_SECONDS must be positive")
        return v

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS_ORIGINS from a JSON array or a comma-separated string."""
        env = str(self.environment or "dev").lower()
        raw = (self.cors_origins_raw or "").strip()
        if not raw:
            if env in {"prod", "production"}:
                return []
            return list(_DEV_CORS_ORIGINS)

        if (raw.startswith('"') and raw.endswith('"')) or (
            raw.startswith("'") and raw.endswith("'")
        ):
            raw = raw[1:-1].strip()

        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(o).strip().rstrip("/") for o in parsed if str(o).strip()]
            except json.JSONDecodeError:
                pass
        return [o.strip().rstrip("/") for o in raw.split(",") if o.strip()]

    @property
    def is_test(self) -> bool:
        return str(self.environment or "").lower() == "test"


settings = Settings()

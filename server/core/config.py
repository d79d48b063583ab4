"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3020, ge=1024, le=65535)
    debug: bool = Field(default=False)
    workers: int = Field(default=1, ge=1, le=8)
    cors_origins: List[str] = Field(default=["*"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Cache Configuration (frequency/cooldown state, tag lookups)
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)

    # Execution Engine
    execution_workers: int = Field(default=4, ge=1, le=64)
    dlq_enabled: bool = Field(default=True)
    default_cooldown_seconds: int = Field(default=86400, ge=0)
    tag_cache_ttl: int = Field(default=300, ge=1)
    retry_jitter: bool = Field(default=True)

    # Outbound delivery
    webhook_hmac_secret: Optional[str] = Field(default=None)
    webhook_timeout: float = Field(default=10.0, ge=1.0, le=120.0)
    email_api_key: Optional[str] = Field(default=None)
    email_api_url: str = Field(default="https://api.resend.com/emails")
    email_from: str = Field(default="no-reply@example.com")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }

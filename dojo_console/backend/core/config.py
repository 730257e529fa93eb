"""Admin console configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebSettings(BaseSettings):
    """Settings for the admin console backend."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # App
    debug: bool = Field(default=False, alias="WEB_DEBUG")
    host: str = Field(default="0.0.0.0", alias="WEB_HOST")
    port: int = Field(default=8081, alias="WEB_PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="WEB_LOG_LEVEL")
    log_dir: Optional[str] = Field(default=None, alias="WEB_LOG_DIR")

    # CORS
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="WEB_CORS_ORIGINS"
    )

    # Platform API (role provider, user store, audit store)
    api_base_url: str = Field(..., alias="API_BASE_URL")
    api_token: Optional[str] = Field(default=None, alias="API_TOKEN")
    roles_api_path: str = Field(default="/api/v1/roles", alias="ROLES_API_PATH")
    users_api_path: str = Field(default="/api/v1/users", alias="USERS_API_PATH")
    # Empty = write audit entries to the "audit" logger only
    audit_api_path: Optional[str] = Field(default=None, alias="AUDIT_API_PATH")

    # Role hierarchy
    owner_role_name: str = Field(default="owner", alias="OWNER_ROLE_NAME")
    roles_refresh_seconds: int = Field(default=0, ge=0, alias="ROLES_REFRESH_SECONDS")  # 0 = explicit refresh only

    # Bulk operations
    bulk_max_batch_size: int = Field(default=100, alias="BULK_MAX_BATCH_SIZE")
    bulk_workers: int = Field(default=5, alias="BULK_WORKERS")
    bulk_item_timeout: float = Field(default=10.0, alias="BULK_ITEM_TIMEOUT")
    audit_timeout: float = Field(default=5.0, alias="AUDIT_TIMEOUT")
    bulk_reason_max_length: int = Field(default=500, alias="BULK_REASON_MAX_LENGTH")
    bulk_max_retained_operations: int = Field(default=200, alias="BULK_MAX_RETAINED_OPERATIONS")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")

    @field_validator(
        "bulk_max_batch_size", "bulk_workers", "bulk_reason_max_length",
        "bulk_max_retained_operations",
        mode="after",
    )
    @classmethod
    def validate_positive_int(cls, v):
        """Counts and sizes must be at least 1."""
        if v < 1:
            raise ValueError(f"must be >= 1, got: {v}")
        return v

    @field_validator("bulk_item_timeout", "audit_timeout", mode="after")
    @classmethod
    def validate_positive_timeout(cls, v):
        """Timeouts must be strictly positive."""
        if v <= 0:
            raise ValueError(f"timeout must be > 0, got: {v}")
        return v

    @field_validator("audit_api_path", mode="before")
    @classmethod
    def blank_audit_path_to_none(cls, v):
        """Treat an empty AUDIT_API_PATH as unset."""
        if v is None or not str(v).strip():
            return None
        return str(v).strip()

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins_raw:
            return []
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache()
def get_web_settings() -> WebSettings:
    """Get cached web settings."""
    return WebSettings()

from __future__ import annotations

from datetime import date, datetime
from functools import lru_cache
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "dominus-qbo"
    app_version: str = "0.3.0"
    environment: Literal["sandbox", "prod"] = Field(default="sandbox", alias="ENV")

    api_key: str = Field(..., alias="API_KEY")
    reports_api_key: Optional[str] = Field(default=None, alias="REPORTS_API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")

    qbo_client_id: str = Field(..., alias="QBO_CLIENT_ID")
    qbo_client_secret: str = Field(..., alias="QBO_CLIENT_SECRET")
    qbo_redirect_uri: HttpUrl = Field(..., alias="QBO_REDIRECT_URI")

    database_url: str = Field(..., alias="DATABASE_URL")

    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")

    token_refresh_margin_seconds: int = Field(default=300, alias="TOKEN_REFRESH_MARGIN_SECONDS")
    oauth_state_ttl_seconds: int = Field(default=600, alias="OAUTH_STATE_TTL_SECONDS")

    report_timezone: str = Field(default="UTC", alias="REPORT_TIMEZONE")
    invoices_per_page: int = Field(default=50, ge=1, le=500, alias="INVOICES_PER_PAGE")
    public_base_url: Optional[str] = Field(default=None, alias="PUBLIC_BASE_URL")

    default_terms: str = Field(default="Net 60", alias="DEFAULT_TERMS")
    default_activity: str = Field(default="Labor Rate HR", alias="DEFAULT_ACTIVITY")
    allowed_activities_raw: str = Field(default="Labor Rate HR", alias="ALLOWED_ACTIVITIES")

    allow_docs_without_auth: bool = Field(default=True, alias="ALLOW_DOCS_WITHOUT_AUTH")

    @field_validator("report_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @property
    def allowed_activities(self) -> list[str]:
        """Comma separated ALLOWED_ACTIVITIES as a list, default activity included."""
        items = [item.strip() for item in self.allowed_activities_raw.split(",") if item.strip()]
        if self.default_activity not in items:
            items.append(self.default_activity)
        return items

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.report_timezone)

    def today(self) -> date:
        """Calendar date in the reporting timezone."""
        return datetime.now(self.tzinfo).date()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

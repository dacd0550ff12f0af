"""
Configuration loader for the batch HTML-to-PDF service.

Environment variables are centralized here to keep the rest of the code
focused on rendering and to make operational tuning clear. List settings
are read from the environment as JSON arrays.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LOGO_URL = "https://images.seeklogo.com/logo-png/62/2/edp-logo-png_seeklogo-621425.png"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0 Safari/537.36"
)
MAX_RENDER_CONCURRENCY = 4


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Shared asset (logo)
    logo_url: str = DEFAULT_LOGO_URL
    logo_url_aliases: List[str] = Field(default_factory=list)
    logo_marker_attribute: str = "alt"
    logo_marker_value: str = "logo"
    asset_ttl_seconds: float = 6 * 60 * 60
    asset_fetch_timeout_seconds: float = 10.0
    asset_connect_timeout_seconds: float = 5.0
    asset_serve_stale_on_error: bool = True
    asset_referer: str = "https://vercel.app/"

    # Preprocessing
    strip_external_fonts: bool = False
    font_hosts: List[str] = Field(
        default_factory=lambda: ["fonts.googleapis.com", "fonts.gstatic.com", "use.typekit.net"]
    )

    # Rendering engine
    chromium_executable_path: Optional[Path] = None
    chromium_args: List[str] = Field(
        default_factory=lambda: ["--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage"]
    )
    chromium_headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    engine_start_timeout_seconds: float = 20.0
    item_timeout_seconds: float = 15.0
    warm_page_wait_ms: int = 1500
    fresh_page_wait_ms: int = 8000

    # Batch orchestration
    render_concurrency: int = 1
    batch_deadline_seconds: float = 55.0
    deadline_reserve_seconds: float = 5.0
    failure_mode: str = "omit"
    default_document_name: str = "documento"

    # API
    archive_filename: str = "notificacoes.zip"
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @field_validator("failure_mode")
    @classmethod
    def validate_failure_mode(cls, v: str) -> str:
        if v not in {"omit", "marker"}:
            raise ValueError("FAILURE_MODE must be one of omit|marker")
        return v

    @field_validator("render_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= MAX_RENDER_CONCURRENCY:
            raise ValueError(f"RENDER_CONCURRENCY must be between 1 and {MAX_RENDER_CONCURRENCY}")
        return v

    @property
    def asset_urls(self) -> List[str]:
        """The logo URL followed by any aliases, without duplicates."""
        urls = [self.logo_url, *self.logo_url_aliases]
        return list(dict.fromkeys(u for u in urls if u))


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def wait_ceiling_ms(page_is_warm: bool, settings: Optional[Settings] = None) -> int:
    """
    Translate page warmth into the resource-readiness wait ceiling.

    A fresh page has nothing in Chromium's memory cache yet, so it gets the
    longer budget.
    """
    settings = settings or get_settings()
    if page_is_warm:
        return settings.warm_page_wait_ms
    return settings.fresh_page_wait_ms

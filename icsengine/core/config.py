"""Settings: YAML loader, pydantic models, and per-share defaults."""

import os
from pathlib import Path
from typing import Literal, Optional

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator

from icsengine.core.retry import RetryPolicy

CONFIG_ENV_VAR = "ICSENGINE_CONFIG"
DEFAULT_CONFIG_PATH = Path("config") / "settings.yaml"

ReasoningEffort = Literal["none", "low", "medium", "high"]


# ── Routing ──────────────────────────────────────────────────────────


class RoutingSettings(BaseModel):
    """Global sender and recipient addresses (job overrides win)."""

    from_email: str = ""
    to_tentative_email: str = ""
    to_confirmed_email: str = ""
    confirm_link_template: Optional[str] = Field(
        default=None,
        description="Deep link with a {token} placeholder, e.g. emailtoics://confirm?token={token}",
    )

    @field_validator("confirm_link_template")
    @classmethod
    def has_token_placeholder(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and "{token}" not in v:
            raise ValueError("confirm_link_template must contain '{token}'")
        return v


# ── Model ────────────────────────────────────────────────────────────


class ModelSettings(BaseModel):
    """Model-serving host and extraction tuning."""

    default_model: str = "llama3.1:8b"
    allowed_models: list[str] = Field(default_factory=list)
    host: str = "http://localhost:11434"
    reasoning_effort: ReasoningEffort = "none"
    timeout_seconds: float = Field(default=120.0, gt=0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_content_chars: int = Field(default=60000, ge=1000)
    default_timezone: str = "America/New_York"


# ── Fetcher ──────────────────────────────────────────────────────────


class Viewport(BaseModel):
    width: int = 1280
    height: int = 720


class FetcherSettings(BaseModel):
    """Fetch sidecar (headless browser) endpoint."""

    sidecar_url: str = "http://curlbrowser:8080"
    timeout_ms: int = Field(default=30000, gt=0)
    render_wait_ms: int = Field(default=2000, ge=0)
    health_timeout_ms: int = Field(default=5000, gt=0)
    viewport: Viewport = Field(default_factory=Viewport)
    include_screenshot: bool = False


# ── Storage ──────────────────────────────────────────────────────────


class CacheSettings(BaseModel):
    db_path: Path = Path("data") / "cache.db"
    ttl_seconds: int = Field(default=86400, gt=0)
    sweep_interval_seconds: int = Field(default=900, gt=0)


class QueueSettings(BaseModel):
    db_path: Path = Path("data") / "queue.db"
    inbox_dir: Path = Path("data") / "inbox"
    stale_after_seconds: int = Field(default=900, gt=0)
    poll_interval_seconds: int = Field(default=60, gt=0)


# ── Email / Calendar ─────────────────────────────────────────────────


class EmailSettings(BaseModel):
    api_url: str = "https://api.postmarkapp.com/email"
    token_env: str = "POSTMARK_API_KEY"
    timeout_seconds: float = Field(default=30.0, gt=0)


class CalendarSettings(BaseModel):
    method: Literal["PUBLISH", "REQUEST"] = "PUBLISH"
    prod_id: str = "-//ICS Engine//Share to Calendar//EN"
    timezone: str = "America/New_York"
    include_html_description: bool = True


class ShareDefaults(BaseModel):
    """Toggles snapshotted onto a job when the share itself does not set them."""

    tentative: bool = False
    multiday: bool = False
    review_first: bool = False
    instructions: str = ""


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


# ── Settings (top-level) ─────────────────────────────────────────────


class Settings(BaseModel):
    """Top-level configuration for the pipeline."""

    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    fetcher: FetcherSettings = Field(default_factory=FetcherSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    calendar: CalendarSettings = Field(default_factory=CalendarSettings)
    defaults: ShareDefaults = Field(default_factory=ShareDefaults)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def is_model_allowed(self, model: str) -> bool:
        allowed = self.model.allowed_models
        return not allowed or model in allowed


# ── Loading ──────────────────────────────────────────────────────────


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Explicit path, else $ICSENGINE_CONFIG, else config/settings.yaml."""
    if path is not None:
        return Path(path)
    env = os.getenv(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    return DEFAULT_CONFIG_PATH


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings YAML from disk and return a validated model.

    A missing file yields the built-in defaults; an invalid one raises
    ``ValueError`` naming each failing field.
    """
    path = resolve_config_path(path)
    if not path.exists():
        return Settings()

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    try:
        return Settings.model_validate(raw)
    except pydantic.ValidationError as exc:
        issues = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValueError(
            f"Settings validation failed ({path}):\n" + "\n".join(issues)
        ) from exc

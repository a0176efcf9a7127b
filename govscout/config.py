from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CAPABILITIES = (
    "Government contracting experience with cloud infrastructure, "
    "cybersecurity, and data analytics"
)


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    return [part.strip() for part in _env(name).split(",") if part.strip()]


def _resolve_data_dir() -> Path:
    override = _env("GOVSCOUT_HOME")
    root = Path(override).expanduser().resolve() if override else Path.cwd().resolve()
    return root / "data"


class ScoringSettings(BaseModel):
    provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    api_key: str = Field(default_factory=lambda: _env("GOVSCOUT_LLM_API_KEY"))
    base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))
    capabilities: str = Field(
        default_factory=lambda: _env("GOVSCOUT_CAPABILITIES", DEFAULT_CAPABILITIES)
    )
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    max_tokens: int = 2048
    page_size: int = 50
    chunk_size: int = 10


class ImportSettings(BaseModel):
    data_directory: Path = Field(
        default_factory=lambda: Path(_env("GOVSCOUT_DATA_DIRECTORY") or _resolve_data_dir() / "sam-gov")
    )
    chunk_size: int = 50


class AlertSettings(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_bool("GOVSCOUT_ALERTS_ENABLED", True))
    threshold: int = Field(default_factory=lambda: _env_int("GOVSCOUT_ALERT_THRESHOLD", 80))
    lookback_hours: int = Field(default_factory=lambda: _env_int("GOVSCOUT_ALERT_LOOKBACK_HOURS", 24))
    cron: str = Field(default_factory=lambda: _env("GOVSCOUT_ALERT_CRON", "0 8 * * mon-fri"))
    recipients: list[str] = Field(default_factory=lambda: _env_list("GOVSCOUT_ALERT_RECIPIENTS"))
    # Off by default: repeated runs inside the lookback window resend alerts.
    dedupe: bool = Field(default_factory=lambda: _env_bool("GOVSCOUT_ALERT_DEDUPE", False))


class DigestSettings(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_bool("GOVSCOUT_DIGEST_ENABLED", True))
    cron: str = Field(default_factory=lambda: _env("GOVSCOUT_DIGEST_CRON", "0 9 * * mon"))
    recipients: list[str] = Field(default_factory=lambda: _env_list("GOVSCOUT_DIGEST_RECIPIENTS"))
    window_days: int = 7


class NotificationSettings(BaseModel):
    teams_webhook_url: str = Field(default_factory=lambda: _env("TEAMS_WEBHOOK_URL"))
    teams_enabled: bool = Field(default_factory=lambda: _env_bool("TEAMS_WEBHOOK_ENABLED", True))
    smtp_host: str = Field(default_factory=lambda: _env("SMTP_HOST"))
    smtp_port: int = Field(default_factory=lambda: _env_int("SMTP_PORT", 587))
    smtp_user: str = Field(default_factory=lambda: _env("SMTP_USER"))
    smtp_password: str = Field(default_factory=lambda: _env("SMTP_PASS"))
    smtp_starttls: bool = Field(default_factory=lambda: _env_bool("SMTP_STARTTLS", True))
    email_from: str = Field(default_factory=lambda: _env("GOVSCOUT_EMAIL_FROM", "noreply@govscout.local"))
    email_enabled: bool = Field(default_factory=lambda: _env_bool("GOVSCOUT_EMAIL_ENABLED", True))
    timeout_seconds: float = 10.0


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: _env("GOVSCOUT_DATABASE_URL") or f"sqlite:///{_resolve_data_dir() / 'govscout.db'}"
    )
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    imports: ImportSettings = Field(default_factory=ImportSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    digest: DigestSettings = Field(default_factory=DigestSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(config_file: str | Path | None = None) -> Settings:
    """Build settings from the environment, overridden by an optional YAML file.

    Keys missing from the file keep their environment-derived defaults, so a
    file only needs the sections it changes::

        alerts:
          threshold: 85
          recipients: [capture@example.com]
    """
    if config_file is None:
        config_file = _env("GOVSCOUT_CONFIG") or None
    if config_file is None:
        return Settings()
    return Settings.model_validate(_load_yaml(Path(config_file).expanduser()))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()

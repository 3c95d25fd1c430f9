"""Pydantic settings for the jot triggers.

Values come from ``.jot/config.toml`` (found by walking up from the working
directory) and from ``JOT__`` environment variables:

- JOT__TELEGRAM_BOT_TOKEN -> telegram_bot_token
- JOT__POLL__RUN_BUDGET_S -> poll.run_budget_s
- JOT__SOURCES__CACHE_TTL_S -> sources.cache_ttl_s
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_store import find_config_root, get_config_path, load_config_file
from .errors import ConfigError
from .logging import get_logger
from .retry import RetryPolicy

logger = get_logger(__name__)

DEFAULT_REMOTE_BASE_URL = "https://jules.googleapis.com/v1alpha"
DEFAULT_STORE_PATH = Path("~/.jot/state.db")


class PollSettings(BaseModel):
    """Activity polling thresholds and budgets."""

    collapse_threshold: int = Field(default=200, ge=1)
    plan_step_threshold: int = Field(default=5, ge=0)
    message_limit: int = Field(default=4096, ge=64)
    caption_limit: int = Field(default=1024, ge=16)
    run_budget_s: float = Field(default=50.0, gt=0)
    activities_budget_s: float = Field(default=8.0, gt=0)
    sync_budget_s: float = Field(default=8.0, gt=0)
    lease_ttl_s: float = Field(default=300.0, gt=0)
    # 0 retries a failing activity forever
    max_activity_attempts: int = Field(default=5, ge=0)


class RetrySettings(BaseModel):
    """Backoff for transient remote and chat failures."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_s: float = Field(default=1.0, ge=0)
    max_delay_s: float = Field(default=10.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay_s,
            max_delay=self.max_delay_s,
            multiplier=self.multiplier,
        )


class SourcesSettings(BaseModel):
    """Source catalog cache and paging."""

    cache_ttl_s: float = Field(default=3600.0, gt=0)
    budget_s: float = Field(default=8.0, gt=0)
    refresh_budget_s: float = Field(default=9.0, gt=0)
    page_size: int = Field(default=100, ge=1, le=100)
    max_pages: int = Field(default=500, ge=1)


class JotSettings(BaseSettings):
    """Settings shared by every trigger.

    Environment variables use the JOT__ prefix with __ as nested delimiter.
    """

    model_config = SettingsConfigDict(
        env_prefix="JOT__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    telegram_bot_token: SecretStr | None = None
    telegram_api_url: str = "https://api.telegram.org"
    remote_base_url: str = DEFAULT_REMOTE_BASE_URL
    store_path: Path = DEFAULT_STORE_PATH
    http_timeout_s: float = Field(default=30.0, gt=0)

    poll: PollSettings = PollSettings()
    retry: RetrySettings = RetrySettings()
    sources: SourcesSettings = SourcesSettings()

    def require_bot_token(self) -> str:
        if self.telegram_bot_token is None:
            raise ConfigError(
                "telegram bot token is not configured "
                "(set JOT__TELEGRAM_BOT_TOKEN or [telegram] bot_token)"
            )
        return self.telegram_bot_token.get_secret_value()


def _file_values(data: dict[str, Any]) -> dict[str, Any]:
    """Map the TOML layout onto JotSettings fields."""
    values: dict[str, Any] = {}
    telegram = data.get("telegram", {})
    if "bot_token" in telegram:
        values["telegram_bot_token"] = telegram["bot_token"]
    if "api_url" in telegram:
        values["telegram_api_url"] = telegram["api_url"]
    remote = data.get("remote", {})
    if "base_url" in remote:
        values["remote_base_url"] = remote["base_url"]
    if "timeout_s" in remote:
        values["http_timeout_s"] = remote["timeout_s"]
    store = data.get("store", {})
    if "path" in store:
        values["store_path"] = Path(store["path"])
    for section in ("poll", "retry", "sources"):
        if isinstance(data.get(section), dict):
            values[section] = data[section]
    return values


def load_settings(root: Path | None = None) -> JotSettings:
    """Load settings from the config file (if any) and the environment.

    Raises:
        ConfigError: the file is unreadable or a value fails validation.
    """
    if root is None:
        root = find_config_root()

    values: dict[str, Any] = {}
    if root is not None:
        config_path = get_config_path(root)
        if config_path.exists():
            values = _file_values(load_config_file(config_path))
            logger.debug("settings.loaded", path=str(config_path))

    try:
        return JotSettings(**values)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e

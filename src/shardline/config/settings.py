"""
config/settings.py — Shardline Runtime Settings

Merges config.yaml (structure/defaults) with environment variables and .env
(secrets). All fields are validated and typed by pydantic.

  - GatewayConfig rejects shard counts that are neither "auto" nor >= 1
  - TimingsConfig rejects negative delays
  - validate_all() performs cross-field startup validation and raises
    ConfigError listing every problem found
  - load_settings() respects SHARDLINE_CONFIG as a fallback when no explicit
    config_path argument is given
"""

from __future__ import annotations

import os
import sys
import threading as _threading
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shardline.exceptions import ConfigError
from shardline.gateway.codec import etf_available
from shardline.gateway.info import DEFAULT_API_BASE
from shardline.gateway.protocol import LARGE_THRESHOLD
from shardline.gateway.timing import ShardTimings

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class ClientProperties(BaseModel):
    """Sent verbatim as ``properties`` in every identify."""
    os: str = Field(default_factory=lambda: sys.platform)
    browser: str = "shardline"
    device: str = "shardline"


class GatewayConfig(BaseModel):
    shard_count: Union[Literal["auto"], int] = "auto"
    encoding: Literal["auto", "json", "etf"] = "auto"
    api_base: str = DEFAULT_API_BASE
    large_threshold: int = LARGE_THRESHOLD
    client_properties: ClientProperties = Field(default_factory=ClientProperties)

    @field_validator("shard_count", mode="before")
    @classmethod
    def _valid_shard_count(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().lower() == "auto":
            return "auto"
        try:
            count = int(v)
        except (TypeError, ValueError):
            raise ValueError(f"gateway.shard_count must be 'auto' or an integer, got {v!r}")
        if count < 1:
            raise ValueError("gateway.shard_count must be >= 1")
        return count

    @field_validator("large_threshold")
    @classmethod
    def _valid_threshold(cls, v: int) -> int:
        if not (50 <= v <= 250):
            raise ValueError("gateway.large_threshold must be between 50 and 250")
        return v

    @field_validator("api_base")
    @classmethod
    def _https_api_base(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError(f"gateway.api_base must be an http(s) URL, got '{v}'")
        return v.rstrip("/")


class TimingsConfig(BaseModel):
    """Fixed gateway delays in seconds."""
    identify_spacing_seconds: float = 5.0
    error_reconnect_seconds: float = 5.0
    close_reconnect_seconds: float = 10.0
    invalid_session_seconds: float = 5.0

    @field_validator("*")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timings must be >= 0 seconds")
        return v

    def to_shard_timings(self) -> ShardTimings:
        return ShardTimings(
            identify_spacing=self.identify_spacing_seconds,
            error_reconnect=self.error_reconnect_seconds,
            close_reconnect=self.close_reconnect_seconds,
            invalid_session=self.invalid_session_seconds,
        )


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Shardline runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # -- Secrets from .env ---------------------------------------------------
    token: Optional[str] = Field(default=None, alias="SHARDLINE_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    timings: TimingsConfig = Field(default_factory=TimingsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML sections arrive as init kwargs; the environment must still win.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("token", mode="before")
    @classmethod
    def _blank_token_is_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v).strip() or None

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level

    @property
    def log_dir(self) -> Optional[Path]:
        return Path(self.logging.log_dir) if self.logging.log_dir else None

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field and environment problems (missing token,
        an ETF encoding request without erlpack installed).
        """
        errors: list[str] = []

        if not self.token:
            errors.append("SHARDLINE_TOKEN must be set in the environment or your .env file.")
        elif self.token.lower().startswith("bot "):
            errors.append("SHARDLINE_TOKEN must be the bare token, without the 'Bot ' prefix.")

        if self.gateway.encoding == "etf" and not etf_available():
            errors.append(
                "gateway.encoding is 'etf' but the 'erlpack' package is not installed. "
                "Install shardline[etf] or use 'auto'/'json'."
            )

        if self.timings.identify_spacing_seconds < 5.0:
            errors.append(
                "timings.identify_spacing_seconds below 5 will trip the gateway's "
                "identify rate limit."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nShardline startup failed: {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"gateway", "timings", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. SHARDLINE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("SHARDLINE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def _build_settings(config_path: str | Path | None) -> Settings:
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    return Settings(**{k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS})


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    instance = _build_settings(config_path)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use. Guarded by a lock against double initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = _build_settings(None)
    return _singleton

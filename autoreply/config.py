"""
Configuration module for the Ticket Auto-Reply Pipeline.

Two layers of configuration live here:

- ``AutoReplyConfig``: the per-event plugin options (rule set, AI settings,
  prefixes, delays). It is resolved once at dispatch time and travels with
  every queued work item, so a later settings change never affects a retry.
- Process settings (worker lane, Telegram alerts, logging) loaded from
  environment variables with secure defaults.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


# Load environment variables from .env file
load_dotenv()


DEFAULT_TRANSFER_KEYWORDS = "转人工,人工客服,联系客服,人工服务"
DEFAULT_SYSTEM_PROMPT = "You are a professional and friendly customer support assistant."
DEFAULT_AUTO_REPLY_PREFIX = "[Auto-Reply] "
DEFAULT_AI_REPLY_PREFIX = "[AI Assistant] "


class ConfigError(Exception):
    """Error while resolving or loading configuration."""
    pass


class AutoReplyConfig(BaseModel):
    """
    Resolved auto-reply options captured for a single work item.

    Every option is optional and falls back to its documented default.
    Values coming from a settings store are often strings, so pydantic's
    lax coercion is relied upon ("1" -> True, "0.7" -> 0.7).
    """

    enable_keyword_reply: bool = True
    # Decoded leniently by the engine; a malformed rule set means no rules.
    keyword_rules: Any = "{}"
    transfer_keywords: str = DEFAULT_TRANSFER_KEYWORDS
    enable_telegram_notify: bool = True

    enable_ai_reply: bool = False
    ai_api_key: str = ""
    ai_api_base: str = "https://api.openai.com/v1"
    ai_model: str = "gpt-3.5-turbo"
    ai_temperature: float = 0.7
    ai_max_tokens: int = Field(default=500, ge=1)
    ai_timeout: float = Field(default=60, gt=0)
    ai_system_prompt: str = DEFAULT_SYSTEM_PROMPT

    enable_user_context: bool = True
    max_conversation_history: int = 0
    speed_limit_warning: int = 50

    auto_reply_delay: float = Field(default=2, ge=0)
    auto_reply_prefix: str = DEFAULT_AUTO_REPLY_PREFIX
    ai_reply_prefix: str = DEFAULT_AI_REPLY_PREFIX

    model_config = {"frozen": True, "extra": "ignore"}

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "AutoReplyConfig":
        """
        Build a config snapshot from an already-resolved key-value bag.

        Unknown keys and null values are ignored. Empty strings are ignored
        for non-text options so that a blank form field keeps the default.

        Args:
            values: Raw option mapping (may be None).

        Returns:
            Frozen AutoReplyConfig.

        Raises:
            ConfigError: If a value cannot be coerced to its option type.
        """
        if not values:
            return cls()

        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if key not in cls.model_fields or value is None:
                continue
            if value == "" and key not in _TEXT_OPTIONS:
                continue
            cleaned[key] = value

        try:
            return cls.model_validate(cleaned)
        except ValidationError as e:
            raise ConfigError(f"Invalid auto-reply configuration: {e}") from e

    @property
    def synthetic_markers(self) -> tuple[str, ...]:
        """Markers identifying replies authored by this pipeline."""
        markers: list[str] = []
        for prefix in (
            self.auto_reply_prefix,
            self.ai_reply_prefix,
            DEFAULT_AUTO_REPLY_PREFIX,
            DEFAULT_AI_REPLY_PREFIX,
        ):
            marker = prefix.strip()
            if marker and marker not in markers:
                markers.append(marker)
        return tuple(markers)


_TEXT_OPTIONS = frozenset(
    {
        "keyword_rules",
        "transfer_keywords",
        "ai_api_key",
        "auto_reply_prefix",
        "ai_reply_prefix",
    }
)


def load_plugin_config(path: Path) -> AutoReplyConfig:
    """
    Load auto-reply options from a YAML or JSON file.

    Args:
        path: File holding a top-level mapping of options.

    Returns:
        Resolved AutoReplyConfig.

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping.
    """
    try:
        raw_content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(raw_content)
        else:
            data = yaml.safe_load(raw_content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping of options")

    return AutoReplyConfig.from_mapping(data)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the background auto-reply job lane."""

    queue_name: str = field(
        default_factory=lambda: os.getenv("AUTO_REPLY_QUEUE", "auto_reply")
    )
    max_attempts: int = field(
        default_factory=lambda: int(os.getenv("AUTO_REPLY_MAX_ATTEMPTS", "2"))
    )
    attempt_timeout: float = field(
        default_factory=lambda: float(os.getenv("AUTO_REPLY_TIMEOUT", "60"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("AUTO_REPLY_RETRY_DELAY", "30"))
    )
    concurrency: int = field(
        default_factory=lambda: int(os.getenv("AUTO_REPLY_WORKERS", "1"))
    )


@dataclass(frozen=True)
class TelegramConfig:
    """Configuration for operator alerts via the Telegram Bot API."""

    bot_token: str = field(
        default_factory=lambda: os.getenv("TELEGRAM_BOT_TOKEN", "")
    )
    admin_chat_ids: tuple[str, ...] = field(
        default_factory=lambda: _split_csv(os.getenv("TELEGRAM_ADMIN_CHAT_IDS", ""))
    )
    api_base: str = field(
        default_factory=lambda: os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org")
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("TELEGRAM_TIMEOUT", "10"))
    )

    @property
    def is_enabled(self) -> bool:
        """Check if alerts can be delivered."""
        return bool(self.bot_token and self.admin_chat_ids)


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration aggregating all config sections."""

    worker: WorkerConfig = field(default_factory=WorkerConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)

    # Logging level
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )

    # Default location of the auto-reply options file
    plugin_config_path: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["AUTO_REPLY_CONFIG_PATH"])
            if os.getenv("AUTO_REPLY_CONFIG_PATH")
            else None
        )
    )

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if not self.worker.queue_name:
            errors.append("AUTO_REPLY_QUEUE must not be empty")
        if self.worker.max_attempts < 1:
            errors.append("AUTO_REPLY_MAX_ATTEMPTS must be at least 1")
        if self.worker.attempt_timeout <= 0:
            errors.append("AUTO_REPLY_TIMEOUT must be positive")
        if self.worker.retry_delay < 0:
            errors.append("AUTO_REPLY_RETRY_DELAY must not be negative")
        if self.worker.concurrency < 1:
            errors.append("AUTO_REPLY_WORKERS must be at least 1")

        if self.telegram.admin_chat_ids and not self.telegram.bot_token:
            errors.append("TELEGRAM_BOT_TOKEN is required when TELEGRAM_ADMIN_CHAT_IDS is set")

        if self.plugin_config_path and not self.plugin_config_path.exists():
            errors.append(f"AUTO_REPLY_CONFIG_PATH does not exist: {self.plugin_config_path}")

        return errors


def get_config() -> AppConfig:
    """
    Get application configuration.

    Returns:
        AppConfig instance with all settings loaded from environment.
    """
    return AppConfig()

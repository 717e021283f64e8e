"""Configuration management."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from newsletter_courier.core.errors import ConfigurationError
from newsletter_courier.core.link_extractor import DEFAULT_RULES


@dataclass
class ImapConfig:
    """Inbox settings. Credentials come from the environment."""
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = ""
    mailbox: str = "INBOX"
    mark_seen_on_fetch: bool = False


@dataclass
class DiscordConfig:
    """Discord delivery settings."""
    bot_token: str = ""
    api_base: str = "https://discord.com/api/v10"
    min_interval: float = 1.0
    default_retry_after: float = 5.0
    max_retries: int = 3
    embed_color: int = 0x3498DB
    timeout: float = 30.0


@dataclass
class StorageConfig:
    """Storage settings."""
    data_dir: Path = Path("data")
    cache_ttl: float = 60.0


@dataclass
class ExtractionConfig:
    """Link extraction heuristics that vary per deployment."""
    proximity_window: int = DEFAULT_RULES.proximity_window
    fallback_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_RULES.fallback_keywords))
    esp_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_RULES.esp_keywords))
    excluded_domains: list[str] = field(default_factory=lambda: list(DEFAULT_RULES.excluded_domains))


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"


@dataclass
class Settings:
    """Application settings."""

    imap: ImapConfig = field(default_factory=ImapConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def data_dir(self) -> Path:
        return self.storage.data_dir

    @property
    def log_level(self) -> str:
        return self.logging.level

    def require_imap(self) -> ImapConfig:
        """Return IMAP settings, failing if credentials are missing."""
        missing = [
            name
            for name, value in (
                ("EMAIL_HOST", self.imap.host),
                ("EMAIL_USER", self.imap.user),
                ("EMAIL_PASSWORD", self.imap.password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing inbox settings: {', '.join(missing)}")
        return self.imap

    def require_discord(self) -> DiscordConfig:
        if not self.discord.bot_token:
            raise ConfigurationError("DISCORD_BOT_TOKEN is required")
        return self.discord


def load_config(config_path: Path = Path("config.yaml")) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_settings(config_path: Path = Path("config.yaml")) -> Settings:
    """Get application settings from YAML config and environment."""
    config = load_config(config_path)
    settings = Settings()

    # Apply YAML config
    if "imap" in config:
        for key, value in config["imap"].items():
            setattr(settings.imap, key, value)

    if "discord" in config:
        for key, value in config["discord"].items():
            setattr(settings.discord, key, value)

    if "storage" in config:
        for key, value in config["storage"].items():
            if key == "data_dir":
                value = Path(value)
            setattr(settings.storage, key, value)

    if "extraction" in config:
        settings.extraction = ExtractionConfig(**config["extraction"])

    if "logging" in config:
        for key, value in config["logging"].items():
            setattr(settings.logging, key, value)

    # Secrets and connection details from environment override the file
    _apply_env(settings)

    return settings


def _apply_env(settings: Settings) -> None:
    settings.imap.host = os.getenv("EMAIL_HOST", settings.imap.host)
    settings.imap.port = int(os.getenv("EMAIL_PORT", settings.imap.port))
    settings.imap.user = os.getenv("EMAIL_USER", settings.imap.user)
    settings.imap.password = os.getenv("EMAIL_PASSWORD", settings.imap.password)
    settings.imap.mailbox = os.getenv("EMAIL_MAILBOX", settings.imap.mailbox)

    settings.discord.bot_token = os.getenv("DISCORD_BOT_TOKEN", settings.discord.bot_token)

    log_level: Optional[str] = os.getenv("COURIER_LOG_LEVEL")
    if log_level:
        settings.logging.level = log_level

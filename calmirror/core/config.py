"""Settings for the mirror: TOML file, then CALMIRROR_* environment overrides."""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Google refuses channel lifetimes longer than one week for calendar resources
MAX_CHANNEL_TTL_HOURS = 7 * 24

# Largest page the events.list endpoint will return in one response
MAX_PAGE_SIZE = 250


class GoogleConfig(BaseModel):
    """Configuration for the Google Calendar provider."""

    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    request_timeout: float = 30.0
    page_size: int = 50
    default_timezone: str = "UTC"

    @field_validator("api_base_url", mode="before")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate API base URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Google API base URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Keep the remote fetch bounded."""
        if v <= 0:
            raise ValueError("request_timeout must be greater than zero")
        return v

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        """Validate snapshot page size."""
        if not 1 <= v <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        return v


class WebhookConfig(BaseModel):
    """Configuration for push-notification channels.

    Attributes:
        callback_url: Publicly reachable HTTPS address the provider pushes to
        channel_ttl_hours: Requested channel lifetime, capped at one week
        renewal_margin_hours: Channels expiring within this window get rotated
        renewal_check_minutes: How often the renewal sweep runs
        reconcile_mode: 'background' acknowledges first and reconciles afterwards,
                        'inline' reconciles before responding
    """

    callback_url: str | None = None
    channel_ttl_hours: int = MAX_CHANNEL_TTL_HOURS
    renewal_margin_hours: int = 24
    renewal_check_minutes: int = 60
    reconcile_mode: str = "background"

    @field_validator("callback_url", mode="before")
    @classmethod
    def validate_callback_url(cls, v: str | None) -> str | None:
        """Validate callback URL format."""
        if v and not v.startswith("https://"):
            raise ValueError("Webhook callback URL must start with https://")
        return v

    @field_validator("channel_ttl_hours")
    @classmethod
    def cap_channel_ttl(cls, v: int) -> int:
        """Cap the channel lifetime to what the provider accepts."""
        if v < 1:
            raise ValueError("channel_ttl_hours must be at least 1")
        return min(v, MAX_CHANNEL_TTL_HOURS)

    @field_validator("reconcile_mode", mode="before")
    @classmethod
    def validate_reconcile_mode(cls, v: str) -> str:
        """Validate reconcile mode."""
        valid_modes = {"background", "inline"}
        v = v.lower()
        if v not in valid_modes:
            raise ValueError(f"Reconcile mode must be one of: {', '.join(sorted(valid_modes))}")
        return v


class SyncConfig(BaseModel):
    """Configuration for the reconciliation engine."""

    # "none" never deletes mirrored events; "window" prunes upcoming events
    # missing from a complete (non-truncated) snapshot.
    prune_policy: str = "none"

    @field_validator("prune_policy", mode="before")
    @classmethod
    def validate_prune_policy(cls, v: str) -> str:
        """Validate prune policy."""
        valid_policies = {"none", "window"}
        v = v.lower()
        if v not in valid_policies:
            raise ValueError(f"Prune policy must be one of: {', '.join(sorted(valid_policies))}")
        return v


class PollingConfig(BaseModel):
    """Configuration for the polling client."""

    server_url: str = "http://127.0.0.1:8000"
    user_email: str | None = None
    interval_seconds: float = 30.0
    enabled: bool = True

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Validate poll interval."""
        if v <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        return v


class ApiConfig(BaseModel):
    """Configuration for the HTTP API."""

    host: str = "127.0.0.1"
    port: int = 8000
    # Header set by the sign-in proxy with the authenticated user's email
    user_header: str = "X-Forwarded-Email"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class GeneralConfig(BaseModel):
    """Data directory and logging settings."""

    log_level: str = "INFO"
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".calmirror")
    log_file_name: str = "calmirror.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    # Per-category level overrides, e.g. {"webhook": "DEBUG"}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Runtime metadata - not serialized to config file
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise to an upper-case stdlib level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Resolve `~` and relative paths."""
        return Path(v).expanduser().resolve()


class AppConfig(BaseSettings):
    """Top-level settings, one section per concern."""

    model_config = SettingsConfigDict(
        env_prefix="CALMIRROR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Read a TOML settings file; a missing file yields defaults."""
        if not config_path.exists():
            logger.warning(f"No settings file at {config_path}; falling back to defaults")
            return cls()

        import tomllib

        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

        return cls(**config_dict)

    def save_to_file(self, config_path: Path) -> None:
        """Write these settings as TOML."""
        import tomli_w

        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Path values serialise as strings; unset options are omitted
        config_dict = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config_dict, f)

        logger.info(f"Wrote settings to {config_path}")

    def ensure_data_dir(self) -> None:
        """Create the data directory if needed."""
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Using data directory {self.general.data_dir}")

    @property
    def store_db_path(self) -> Path:
        """Path to the event store database."""
        return self.general.data_dir / "calmirror.db"

    @property
    def default_config_path(self) -> Path:
        """Where `config --init` writes when no path is given."""
        return self.general.data_dir / "config.toml"


# Process-wide settings, set by load_config or set_config
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Return the process-wide settings, building defaults on first use."""
    global _config
    if _config is None:
        _config = AppConfig()
        _config.ensure_data_dir()
    return _config


def set_config(config: AppConfig) -> None:
    """Install settings as the process-wide instance."""
    global _config
    _config = config
    _config.ensure_data_dir()


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load settings from `config_path` (or the default location) and install them."""
    if config_path is None:
        config = AppConfig()
        config_path = config.default_config_path

    if config_path.exists():
        config = AppConfig.load_from_file(config_path)
    else:
        config = AppConfig()

    config.general.config_file = config_path
    set_config(config)
    return config

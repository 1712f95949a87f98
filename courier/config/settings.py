"""
Courier Configuration System
============================

Configuration management with environment variables and Pydantic models.
Environment variables (prefix ``COURIER_``, nested with ``__``) override
Field defaults, e.g. ``COURIER_CRAWL__BATCH_SIZE=100``.
"""

from pathlib import Path
from typing import Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from ..utils.exceptions import ConfigurationError, ErrorCode


class LogLevel(str, Enum):
    """Available log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CrawlSettings(BaseModel):
    """Crawl tick configuration."""
    interval_seconds: int = Field(default=120, ge=1, description="Seconds between crawl ticks; also the tick deadline")
    batch_size: int = Field(default=250, ge=1, le=10000, description="Documents per index flush")
    content_max_length: int = Field(default=2000, ge=1, description="Max characters of sanitized entry text")


class BackoffSettings(BaseModel):
    """Per-source backoff after failed fetches."""
    floor_seconds: float = Field(default=30.0, gt=0, description="Delay after the first failure")
    ceiling_seconds: float = Field(default=600.0, gt=0, description="Maximum delay")
    factor: float = Field(default=2.0, ge=1.0, description="Growth factor between consecutive failures")


class FetchSettings(BaseModel):
    """HTTP client configuration for feed fetches."""
    timeout_seconds: float = Field(default=20.0, gt=0, description="Total timeout of one fetch")
    user_agent: str = Field(default="courier/1.0 (+feed ingestion)", description="User-Agent header")
    max_connections: int = Field(default=10, ge=1, le=100, description="Connection pool limit")
    max_connections_per_host: int = Field(default=2, ge=1, le=100, description="Concurrent connections to one host")
    max_redirects: int = Field(default=10, ge=0, le=30, description="Redirects followed per fetch")


class DatabaseSettings(BaseModel):
    """Database configuration."""
    path: str = Field(default="data/courier.db", description="SQLite database file path")
    pool_size: int = Field(default=5, ge=1, le=20, description="Connection pool size")


class SearchSettings(BaseModel):
    """Search engine (Meilisearch) configuration."""
    url: str = Field(default="http://localhost:7700", description="Search engine base URL")
    index: str = Field(default="items", description="Index uid")
    api_key: Optional[str] = Field(default=None, description="API key sent as a bearer token")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout of one index request")
    startup_timeout_seconds: float = Field(default=15.0, gt=0, description="Deadline for index bootstrap at start")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        """Strip trailing slashes so paths can be appended."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("search url must start with http:// or https://")
        return v


class LoggingSettings(BaseModel):
    """Where logs go and how they look."""
    level: LogLevel = Field(default=LogLevel.INFO, description="Level of the courier logger tree")
    file_path: Optional[str] = Field(default="logs/courier.log", description="JSON log file; empty disables it")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Rotate the log file at this size")
    backup_count: int = Field(default=5, ge=1, le=20, description="Rotated files kept")
    structured_logging: bool = Field(default=False, description="JSON on the console too")
    console_logging: bool = Field(default=True, description="Log to stdout")


class CourierSettings(BaseSettings):
    """Root settings object, one section per component."""

    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    app_name: str = Field(default="Courier", description="Name shown by the CLI")
    debug: bool = Field(default=False, description="Force DEBUG logging")

    model_config = {
        "env_prefix": "COURIER_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def validate_configuration(self) -> None:
        """Cross-section checks that single fields cannot express.

        Also creates the parent directories of the database and log file.

        Raises:
            ConfigurationError: Listing every problem found
        """
        problems = []

        if self.backoff.ceiling_seconds < self.backoff.floor_seconds:
            problems.append("backoff ceiling must not be below the floor")

        writable = {"database.path": self.database.path, "logging.file_path": self.logging.file_path}
        for key, path in writable.items():
            if not path:
                continue
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                problems.append(f"cannot create directory for {key}: {e}")

        if problems:
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(problems),
                error_code=ErrorCode.CONFIG_INVALID,
            )

    def get_effective_log_level(self) -> str:
        return LogLevel.DEBUG.value if self.debug else self.logging.level.value


def load_settings() -> CourierSettings:
    """Build settings from ``.env``, the environment and defaults.

    Raises:
        ConfigurationError: When a value does not parse or checks fail
    """
    from dotenv import load_dotenv
    load_dotenv()

    try:
        settings = CourierSettings()
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        raise ConfigurationError(f"Cannot load settings: {e}") from e

    settings.validate_configuration()
    return settings


_settings: Optional[CourierSettings] = None


def get_settings(reload: bool = False) -> CourierSettings:
    """Process-wide settings, loaded on first use or when ``reload`` is set."""
    global _settings

    if reload or _settings is None:
        _settings = load_settings()

    return _settings

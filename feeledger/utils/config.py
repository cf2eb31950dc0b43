"""Application settings.

Pydantic-based configuration read from environment variables (no prefix,
case-insensitive) and an optional ``.env`` file.

Environment Variables (selection):
- DATABASE_URL: SQLAlchemy URL (default: SQLite file in the user data dir)
- MAX_BATCH_SIZE: Largest number of records written in one atomic batch (default: 500)
- REMINDER_DAYS_THRESHOLD: Days before due date for "upcoming" reminders (default: 7)
- PAYMENT_METHODS: Comma separated list of accepted payment methods
"""

from functools import lru_cache
from pathlib import Path

from platformdirs import PlatformDirs
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

dirs = PlatformDirs("feeledger", appauthor=False)

DEFAULT_UPCOMING_TEMPLATE = "Your payment of ₱{amount} for {type} is due in {days} days."
DEFAULT_OVERDUE_TEMPLATE = "Your payment of ₱{amount} for {type} is overdue by {days} days."


class Settings(BaseSettings):
    """feeledger configuration.

    Example:
        >>> settings = Settings(max_batch_size=100)
        >>> settings.reminder_days_threshold
        7
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path(dirs.user_data_dir))

    # Database
    database_url: str = Field(default="", description="SQLAlchemy database URL")
    database_echo: bool = False
    database_busy_timeout: float = Field(
        default=15.0, gt=0, description="Seconds a SQLite writer waits on a locked database"
    )

    # Logging
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Ledger
    max_batch_size: int = Field(
        default=500,
        ge=1,
        le=10_000,
        description="Upper bound on records written by one atomic batch",
    )
    reference_prefix: str = Field(default="PAY", min_length=1, max_length=10)
    currency_symbol: str = "₱"
    payment_methods: str = Field(
        default="gcash,maya,bank_transfer,cash,card",
        description="Comma separated accepted payment methods (empty = accept any)",
    )
    notify_on_payment: bool = True

    # Reminders
    reminder_days_threshold: int = Field(default=7, ge=0, le=365)
    reminder_include_overdue: bool = True
    reminder_send_all: bool = False
    reminder_upcoming_template: str = DEFAULT_UPCOMING_TEMPLATE
    reminder_overdue_template: str = DEFAULT_OVERDUE_TEMPLATE

    # Activity log / events
    activity_log_enabled: bool = True
    event_listeners: str = Field(
        default="", description="Comma separated dotted paths of extra event listeners"
    )

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {value}")
        return level

    @model_validator(mode="after")
    def _default_database_url(self) -> "Settings":
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir / 'feeledger.db'}"
        return self

    @property
    def payment_methods_list(self) -> list[str]:
        return [m.strip().lower() for m in self.payment_methods.split(",") if m.strip()]

    @property
    def event_listeners_list(self) -> list[str]:
        return [p.strip() for p in self.event_listeners.split(",") if p.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings singleton."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read them again from the environment."""
    get_settings.cache_clear()
    return get_settings()

"""Configuration loader for the outreach scheduler with validation."""
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

from outreach.utils.datetime_utils import get_zone

load_dotenv()


@dataclass
class Config:
    """
    Scheduler configuration from environment variables.

    All settings are validated on load to fail fast if misconfigured.
    """

    # Dotted path of the module that defines the campaign catalog
    campaigns_module: str

    # Database (falls back to the DATABASE_URL read by database.db)
    database_url: str = ""

    # Scheduling
    default_time_zone: str = "UTC"
    campaign_priority: list[str] = field(default_factory=list)
    scheduler_interval_seconds: int = 60
    run_once: bool = False

    # Telegram delivery (optional)
    bot_token: str = ""

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.campaigns_module.strip():
            raise ValueError("campaigns_module must not be empty")

        if self.scheduler_interval_seconds < 1:
            raise ValueError("Scheduler interval must be at least 1 second")

        get_zone(self.default_time_zone)

        self.campaign_priority = [name.strip() for name in self.campaign_priority if name.strip()]

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Raises:
            RuntimeError: If required environment variables are missing
            ValueError: If configuration values are invalid
        """
        campaigns_module = os.getenv("CAMPAIGNS_MODULE")
        if not campaigns_module:
            raise RuntimeError("CAMPAIGNS_MODULE environment variable is required")

        return cls(
            campaigns_module=campaigns_module,
            database_url=os.getenv("DATABASE_URL", ""),
            default_time_zone=os.getenv("DEFAULT_TIME_ZONE", "UTC"),
            campaign_priority=os.getenv("CAMPAIGN_PRIORITY", "").split(","),
            scheduler_interval_seconds=int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60")),
            run_once=os.getenv("RUN_ONCE", "false").lower() == "true",
            bot_token=os.getenv("BOT_TOKEN", ""),
        )

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.bot_token)

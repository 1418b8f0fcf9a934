"""
PostgreSQL and change-feed configuration
Reads from saved config file first, then falls back to environment variables
"""
import os
import json
import logging
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Path to saved configuration
CONFIG_DIR = Path(__file__).parent.parent / "data"
CONFIG_FILE = CONFIG_DIR / "config.json"


def load_saved_config():
    """Load database configuration from saved file if exists"""
    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, 'r') as f:
                config = json.load(f)
                return config.get('database', {})
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load saved config: {e}")
    return {}


class PostgresSettings(BaseSettings):
    """PostgreSQL configuration - reads from saved config or environment variables."""

    # Direct DATABASE_URL support (for deployment)
    database_url_direct: str = ""

    # Database Configuration
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = ""
    postgres_db: str = "postgres"

    # SSL/TLS Configuration
    postgres_sslmode: str = "disable"

    # Connection Pool Configuration
    pool_size: int = 10
    max_overflow: int = 5
    pool_pre_ping: bool = True
    pool_recycle: int = 1800

    # Change feed (LISTEN/NOTIFY)
    change_feed_channel: str = "change_feed"
    change_feed_reconnect_delay: float = 2.0

    # Approval queries
    approvals_max_list_limit: int = 200

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        # Load saved config and override if exists
        saved = load_saved_config()
        if saved:
            if saved.get('host'):
                self.postgres_host = saved['host']
            if saved.get('port'):
                self.postgres_port = int(saved['port'])
            if saved.get('database'):
                self.postgres_db = saved['database']
            if saved.get('username'):
                self.postgres_user = saved['username']
            if saved.get('password'):
                self.postgres_password = saved['password']
            if saved.get('ssl_mode'):
                self.postgres_sslmode = saved['ssl_mode']

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL (asyncpg driver) from environment or saved config."""

        # Check for direct DATABASE_URL (for deployment)
        direct_url = os.environ.get("DATABASE_URL", self.database_url_direct)
        if direct_url:
            if direct_url.startswith("postgres://"):
                direct_url = direct_url.replace("postgres://", "postgresql+asyncpg://", 1)
            elif direct_url.startswith("postgresql://") and "+asyncpg" not in direct_url:
                direct_url = direct_url.replace("postgresql://", "postgresql+asyncpg://", 1)
            direct_url = direct_url.replace("sslmode=require", "ssl=require")
            direct_url = direct_url.replace("sslmode=disable", "ssl=disable")
            return direct_url

        ssl_param = f"?ssl={self.postgres_sslmode}" if self.postgres_sslmode != "disable" else ""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            f"{ssl_param}"
        )

    @property
    def listen_dsn(self) -> str:
        """Plain libpq-style DSN for the dedicated asyncpg LISTEN connection."""
        dsn = self.database_url.replace("postgresql+asyncpg://", "postgresql://", 1)
        return dsn.replace("?ssl=", "?sslmode=").replace("&ssl=", "&sslmode=")


postgres_settings = PostgresSettings()

import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        provider_client_id: str,
        provider_client_secret: str,
        provider_api_url: str,
        provider_timeout_secs: float,
        transactions_page_size: int,
        sync_cooldown_minutes: int,
        scheduled_sync_hours: int,
        scheduled_sync_min_age_minutes: int,
        provider_refresh_delay_secs: float,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.provider_client_id = provider_client_id
        self.provider_client_secret = provider_client_secret
        self.provider_api_url = provider_api_url
        self.provider_timeout_secs = provider_timeout_secs
        self.transactions_page_size = transactions_page_size
        self.sync_cooldown_minutes = sync_cooldown_minutes
        self.scheduled_sync_hours = scheduled_sync_hours
        self.scheduled_sync_min_age_minutes = scheduled_sync_min_age_minutes
        self.provider_refresh_delay_secs = provider_refresh_delay_secs
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINSYNC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finsync.db"
    database_url = os.getenv("FINSYNC_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINSYNC_TIMEZONE", "America/Sao_Paulo")
    provider_client_id = os.getenv("FINSYNC_PROVIDER_CLIENT_ID", "")
    provider_client_secret = os.getenv("FINSYNC_PROVIDER_CLIENT_SECRET", "")
    provider_api_url = os.getenv("FINSYNC_PROVIDER_API_URL", "https://api.pluggy.ai")
    provider_timeout_secs = float(os.getenv("FINSYNC_PROVIDER_TIMEOUT_SECS", "15"))
    transactions_page_size = int(os.getenv("FINSYNC_TRANSACTIONS_PAGE_SIZE", "500"))
    sync_cooldown_minutes = int(os.getenv("FINSYNC_SYNC_COOLDOWN_MINUTES", "5"))
    scheduled_sync_hours = int(os.getenv("FINSYNC_SCHEDULED_SYNC_HOURS", "6"))
    scheduled_sync_min_age_minutes = int(
        os.getenv("FINSYNC_SCHEDULED_SYNC_MIN_AGE_MINUTES", "60")
    )
    provider_refresh_delay_secs = float(
        os.getenv("FINSYNC_PROVIDER_REFRESH_DELAY_SECS", "2")
    )
    scheduler_enabled = _env_flag("FINSYNC_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        provider_client_id=provider_client_id,
        provider_client_secret=provider_client_secret,
        provider_api_url=provider_api_url.rstrip("/"),
        provider_timeout_secs=provider_timeout_secs,
        transactions_page_size=transactions_page_size,
        sync_cooldown_minutes=sync_cooldown_minutes,
        scheduled_sync_hours=scheduled_sync_hours,
        scheduled_sync_min_age_minutes=scheduled_sync_min_age_minutes,
        provider_refresh_delay_secs=provider_refresh_delay_secs,
        scheduler_enabled=scheduler_enabled,
    )


def get_current_user_id() -> int:
    return 1

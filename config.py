import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        reconcile_interval_hours: int,
        default_currency: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.reconcile_interval_hours = reconcile_interval_hours
        self.default_currency = default_currency


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    reconcile_interval_hours = int(os.getenv("LEDGER_RECONCILE_INTERVAL_HOURS", "1"))
    if reconcile_interval_hours < 1:
        raise ValueError("LEDGER_RECONCILE_INTERVAL_HOURS must be at least 1")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "EUR").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        reconcile_interval_hours=reconcile_interval_hours,
        default_currency=default_currency,
    )

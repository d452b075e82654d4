import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        overdue_sweep_hour: int,
        match_date_tolerance_days: int,
        match_min_score: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.overdue_sweep_hour = overdue_sweep_hour
        self.match_date_tolerance_days = match_date_tolerance_days
        self.match_min_score = match_min_score


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
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    overdue_sweep_hour = int(os.getenv("LEDGER_OVERDUE_SWEEP_HOUR", "2"))
    match_date_tolerance_days = int(os.getenv("LEDGER_MATCH_DATE_TOLERANCE_DAYS", "3"))
    match_min_score = float(os.getenv("LEDGER_MATCH_MIN_SCORE", "0.3"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        overdue_sweep_hour=overdue_sweep_hour,
        match_date_tolerance_days=match_date_tolerance_days,
        match_min_score=match_min_score,
    )

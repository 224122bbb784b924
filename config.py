import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        scheduler_enabled: bool,
        reconcile_hour: int,
        reconcile_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.scheduler_enabled = scheduler_enabled
        self.reconcile_hour = reconcile_hour
        self.reconcile_minute = reconcile_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CONTAS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "contas.db"
    database_url = os.getenv("CONTAS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CONTAS_TIMEZONE", "America/Sao_Paulo")
    scheduler_enabled = _env_flag("CONTAS_SCHEDULER_ENABLED", "1")
    reconcile_hour = int(os.getenv("CONTAS_RECONCILE_HOUR", "4"))
    reconcile_minute = int(os.getenv("CONTAS_RECONCILE_MINUTE", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        scheduler_enabled=scheduler_enabled,
        reconcile_hour=reconcile_hour,
        reconcile_minute=reconcile_minute,
    )

import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        eom_threshold_days: int,
        summary_cache_ttl_secs: float,
        lock_timeout_secs: float,
        db_timeout_secs: float,
        income_policy: str,
        conversion_policy: str,
        allow_over_assign: bool,
        occurrence_horizon_days: int,
        default_account: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.eom_threshold_days = eom_threshold_days
        self.summary_cache_ttl_secs = summary_cache_ttl_secs
        self.lock_timeout_secs = lock_timeout_secs
        self.db_timeout_secs = db_timeout_secs
        self.income_policy = income_policy
        self.conversion_policy = conversion_policy
        self.allow_over_assign = allow_over_assign
        self.occurrence_horizon_days = occurrence_horizon_days
        self.default_account = default_account


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    income_policy = os.getenv("LEDGER_INCOME_POLICY", "additive").lower()
    if income_policy not in {"additive", "realized"}:
        raise ValueError(f"Unsupported income policy: {income_policy}")
    conversion_policy = os.getenv("LEDGER_CONVERSION_POLICY", "fixed").lower()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        eom_threshold_days=int(os.getenv("LEDGER_EOM_THRESHOLD_DAYS", "3")),
        summary_cache_ttl_secs=float(
            os.getenv("LEDGER_SUMMARY_CACHE_TTL_SECS", "3600")
        ),
        lock_timeout_secs=float(os.getenv("LEDGER_LOCK_TIMEOUT_SECS", "5")),
        db_timeout_secs=float(os.getenv("LEDGER_DB_TIMEOUT_SECS", "5")),
        income_policy=income_policy,
        conversion_policy=conversion_policy,
        allow_over_assign=_env_flag("LEDGER_ALLOW_OVER_ASSIGN"),
        occurrence_horizon_days=int(
            os.getenv("LEDGER_OCCURRENCE_HORIZON_DAYS", "60")
        ),
        default_account=os.getenv("LEDGER_DEFAULT_ACCOUNT", "default_account"),
    )

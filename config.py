import os
from datetime import date
from functools import lru_cache


class Settings:
    def __init__(
        self,
        database_url: str,
        log_level: str,
        default_account_name: str,
        default_account_start_date: date,
        default_starting_balance_cents: int,
    ) -> None:
        self.database_url = database_url
        self.log_level = log_level
        self.default_account_name = default_account_name
        self.default_account_start_date = default_account_start_date
        self.default_starting_balance_cents = default_starting_balance_cents


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # State is process-local; the default URL is a private in-memory SQLite db.
    database_url = os.getenv("BUDGETCAL_DATABASE_URL", "sqlite://")
    log_level = os.getenv("BUDGETCAL_LOG_LEVEL", "INFO").upper()
    default_account_name = os.getenv("BUDGETCAL_DEFAULT_ACCOUNT_NAME", "Main Account")
    default_account_start_date = date.fromisoformat(
        os.getenv("BUDGETCAL_DEFAULT_START_DATE", "2025-09-01")
    )
    default_starting_balance_cents = int(
        os.getenv("BUDGETCAL_DEFAULT_STARTING_BALANCE_CENTS", "100000")
    )
    return Settings(
        database_url=database_url,
        log_level=log_level,
        default_account_name=default_account_name,
        default_account_start_date=default_account_start_date,
        default_starting_balance_cents=default_starting_balance_cents,
    )

from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


# Default SQLite file sits next to the package so the CWD does not matter
_DEFAULT_DB_PATH = Path(__file__).resolve().parents[2] / "budgetbook.sqlite3"


class Settings(BaseSettings):
    APP_NAME: str = "budgetbook"
    ENV: str = "dev"

    DATABASE_URL: str = f"sqlite:///{_DEFAULT_DB_PATH}"

    TIMEZONE: str = "UTC"
    DEFAULT_CURRENCY: str = "USD"

    # Budget alert threshold (percent of allocation) when a budget gives none
    DEFAULT_ALERT_THRESHOLD: int = 80
    LOW_BALANCE_THRESHOLD: Decimal = Decimal("100.00")

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="BUDGETBOOK_", case_sensitive=False)


settings = Settings()

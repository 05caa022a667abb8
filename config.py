import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "5"))  # seconds

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Lending settings
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))

    # Overdue sweep (UTC wall-clock time of the daily run)
    overdue_sweep_enabled: bool = _env_flag("OVERDUE_SWEEP_ENABLED", "True")
    overdue_sweep_hour: int = int(os.getenv("OVERDUE_SWEEP_HOUR", "0"))
    overdue_sweep_minute: int = int(os.getenv("OVERDUE_SWEEP_MINUTE", "0"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()

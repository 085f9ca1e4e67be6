import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    db_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    seed_on_startup: bool = os.getenv("SEED_ON_STARTUP", "False").lower() in ("true", "1", "yes")

    # Circulation rules
    late_fee_per_day: Decimal = Decimal(os.getenv("LATE_FEE_PER_DAY", "0.50"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()

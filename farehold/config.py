# farehold/config.py
from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App
    APP_ENV: Literal["dev", "prod", "staging"] = "dev"

    # Suppliers
    SEARCH_API_URL: str = "http://localhost:8080/flights/search"
    BOOKING_API_URL: str = "http://localhost:8080/flights/book"
    RATES_API_URL: str = "https://open.er-api.com/v6/latest"
    SUPPLIER_API_KEY: str = ""

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    RECORD_KEY_PREFIX: str = "farehold:"

    # Search records
    RECORD_RETENTION_SECONDS: int = 7200  # 2 hours
    AGGRESSIVE_CLEANUP_KEEP: int = 5

    # Freshness
    STALE_WINDOW_SECONDS: int = 1800  # 30 minutes
    SUPPLIER_TIMEOUT_MULTIPLIER: int = 3
    OFFER_EXPIRY_BUFFER_SECONDS: int = 300  # 5 minutes before expires_at
    NEAR_EXPIRY_SECONDS: int = 120

    # Exchange rates
    RATES_TTL_SECONDS: int = 300

    # "best" sort weights
    BEST_SCORE_PRICE_WEIGHT: float = 0.5
    BEST_SCORE_DURATION_WEIGHT: float = 0.3
    BEST_SCORE_STOPS_WEIGHT: float = 0.2

    # Luggage fees, per unit, in offer currency
    CHECKED_BAG_PRICE: float = 30.0
    CARRY_ON_PRICE: float = 15.0

    # read .env and ignore any extra keys so this doesn't break again
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()

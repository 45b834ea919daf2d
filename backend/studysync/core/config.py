from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "studysync"

    # unset -> leaderboard cache falls back to the in-process cache
    REDIS_URL: Optional[str] = None

    # anti-cheat
    MAX_SESSION_DURATION: int = 14400  # seconds (4h)
    ANOMALY_THRESHOLD: float = 0.7

    # stale session sweeper
    STALE_SESSION_HOURS: int = 8
    SWEEP_INTERVAL_SECONDS: int = 300

    LEADERBOARD_SIZE: int = 50

    ANALYTICS_WINDOW_DAYS: int = 30
    ANALYTICS_MAX_RETRIES: int = 3

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json | text

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()

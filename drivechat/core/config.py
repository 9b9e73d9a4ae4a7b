from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # "memory" keeps everything in-process; "mongo" uses MONGO_URL
    STORE_BACKEND: Literal["memory", "mongo"] = "memory"
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "drivechat"

    # Empty disables the Redis change feed (single-process deployments)
    REDIS_URL: str = ""

    # FCM push is enabled only when both are set
    FCM_SERVICE_ACCOUNT_FILE: str = ""
    FCM_PROJECT_ID: str = ""

    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"

    LOG_LEVEL: str = "INFO"

    MESSAGE_WINDOW: int = 100
    PRESENCE_HEARTBEAT_SECONDS: float = 30.0
    PRESENCE_AWAY_GRACE_SECONDS: float = 60.0
    TYPING_IDLE_SECONDS: float = 3.0
    TYPING_STALE_SECONDS: Optional[float] = None
    SUBSCRIPTION_RETRY_SECONDS: float = 1.0
    SUBSCRIPTION_RETRY_MAX_SECONDS: float = 30.0

    @model_validator(mode="after")
    def _default_typing_stale(self) -> "Settings":
        if self.TYPING_STALE_SECONDS is None:
            self.TYPING_STALE_SECONDS = self.TYPING_IDLE_SECONDS * 2
        return self


settings = Settings()

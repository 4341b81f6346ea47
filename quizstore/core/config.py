"""
Core configuration for quizstore
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Application Settings
    APP_NAME: str = "quizstore"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Redis engine
    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379)
    REDIS_DB: int = Field(default=0)
    REDIS_POOL_MAX_CONNECTIONS: int = Field(default=50)
    REDIS_CONNECT_ATTEMPTS: int = Field(default=3)

    # Key-value store
    KV_NAMESPACE: str = Field(default="quizstore")
    KV_RETRY_ATTEMPTS: int = Field(default=3)
    KV_RETRY_DELAY: float = Field(default=0.1)  # seconds
    COMMIT_MAX_ATTEMPTS: int = Field(default=5)

    # Questions
    QUESTION_SCOPE: str = Field(default="emt")
    QUESTION_ID_LENGTH: int = Field(default=16, ge=8, le=64)

    # Leaderboard
    LEADERBOARD_LIMIT: int = Field(default=100)

    # Streaks
    STREAK_WINDOW_HOURS: int = Field(default=24)
    STREAK_WINDOWS: int = Field(default=2, ge=2)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    LOG_FILE: Optional[str] = Field(default=None)
    LOG_MAX_BYTES: int = Field(default=10 * 1024 * 1024)
    LOG_BACKUP_COUNT: int = Field(default=5)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    def get_redis_url(self) -> str:
        """Get Redis URL"""
        if self.REDIS_URL:
            return self.REDIS_URL
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


settings = Settings()

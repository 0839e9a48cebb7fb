from pydantic_settings import BaseSettings
from typing import List
import logging
import os


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "feedrelay"
    APP_ENV: str = os.getenv("APP_ENV", "development")
    DEBUG: bool = False
    TESTING: bool = False
    LOG_LEVEL: str = "INFO"

    # JWT (verification only; tokens are issued by the auth service)
    JWT_SECRET: str = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24

    # Realtime
    AUTH_TIMEOUT_SECONDS: float = 5.0
    RING_TIMEOUT_SECONDS: float = 45.0
    # "broadcast" reaches every connection, "targeted" only the interested users
    RELAY_FANOUT: str = "broadcast"
    SOCKETIO_PATH: str = "socket.io"

    # Redis (optional) - enables cross-process fan-out through AsyncRedisManager
    REDIS_URL: str = os.getenv("REDIS_URL", "")

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "https://frozenapple.vercel.app",
    ]

    class Config:
        env_file = ".env"


settings = Settings()

logger = logging.getLogger(settings.APP_NAME)

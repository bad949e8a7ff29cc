import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

    SESSION_SECRET: Optional[str] = os.getenv("SESSION_SECRET")
    JWT_ALGORITHM: str = "HS256"

    # Daily.co video provider
    DAILY_API_KEY: Optional[str] = os.getenv("DAILY_API_KEY")
    DAILY_API_URL: str = "https://api.daily.co/v1"
    DAILY_ROOM_EXPIRY_MINUTES: int = 120
    JOIN_TOKEN_EXPIRY_MINUTES: int = 30
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Stripe Checkout
    STRIPE_API_KEY: Optional[str] = os.getenv("STRIPE_API_KEY")
    PAYMENT_CURRENCY: str = "usd"
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")

    # Advisory slot lock; the service runs without it
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL")
    SLOT_LOCK_TTL_SECONDS: int = 15 * 60

    CORS_ORIGINS: list = ["http://localhost:3000", "http://127.0.0.1:3000"]

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = "INFO"

    def validate_database_url(self):
        if not self.DATABASE_URL:
            raise ValueError(
                "DATABASE_URL environment variable is required for database operations. "
                "Please set it to your PostgreSQL connection string."
            )

    def jwt_secret(self) -> str:
        if not self.SESSION_SECRET:
            raise ValueError("SESSION_SECRET environment variable is required to verify bearer tokens")
        return self.SESSION_SECRET

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

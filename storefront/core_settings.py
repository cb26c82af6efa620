from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    SERVICE_NAME: str = "checkout-service"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "storefront"
    POSTGRES_USER: str = "storefront"
    POSTGRES_PASSWORD: str = "storefront"
    # Full URL override, e.g. sqlite:// for local runs and tests
    DATABASE_URL: Optional[str] = None
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_BACKOFF_SECONDS: float = 0.2

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    AUTHORIZE_NET_API_LOGIN_ID: Optional[str] = None
    AUTHORIZE_NET_TRANSACTION_KEY: Optional[str] = None
    AUTHORIZE_NET_ENVIRONMENT: str = "sandbox"
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = 30.0

    REDIS_URL: Optional[str] = None
    CHECKOUT_LOCK_TTL_SECONDS: int = 120

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

@lru_cache
def get_settings() -> Settings:
    return Settings()

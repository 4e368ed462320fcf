from pydantic_settings import BaseSettings
from typing import List
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./cards.db"
    CREATE_TABLES: bool = True  # Create missing tables on startup

    # Database Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600
    DB_POOL_PRE_PING: bool = True

    # JWT session
    SECRET_KEY: str = "your-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    SESSION_EXPIRE_DAYS: int = 7
    SESSION_COOKIE_NAME: str = "token"
    INVITATION_EXPIRE_HOURS: int = 24

    # Server
    BASE_URL: str = "http://localhost:8000"
    ENVIRONMENT: str = "production"  # development, staging, production

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # Rate Limiting (login, signup, invitation acceptance)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_MS: int = 60000
    RATE_LIMIT_MAX_REQUESTS: int = 5  # rejected once reached, so 4 requests per window
    # Only behind a reverse proxy that sets X-Forwarded-For itself
    TRUST_FORWARDED_FOR: bool = False

    # Scan recording
    LOCATION_LOOKUP_ENABLED: bool = True
    LOCATION_LOOKUP_TIMEOUT: float = 3.0  # seconds
    SCAN_RECORD_RETRIES: int = 3

    # Default plan entitlements for invited users
    DEFAULT_MAX_PROFILES: int = 1
    DEFAULT_MAX_QR_CODES: int = 5

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

settings = Settings()

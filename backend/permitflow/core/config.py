from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "PermitFlow"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "permitflow"

    # Security
    SECRET_KEY: str = "your-secret-key-here-change-in-production"
    ALGORITHM: str = "HS256"

    # Logging
    LOG_LEVEL: str = "INFO"
    GRAYLOG_HOST: Optional[str] = None
    GRAYLOG_PORT: int = 12201
    CONTAINER_NAME: Optional[str] = None

    # File storage (QR cards, inspection photos)
    FILE_STORAGE_PATH: str = "./storage/files"
    FILE_BASE_URL: str = "/files"
    PUBLIC_APP_URL: str = "http://localhost:4200"

    # Notifications
    NOTIFICATION_SERVICE_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Payments (Stripe Connect destination charges)
    STRIPE_API_KEY: Optional[str] = None
    STRIPE_API_BASE: str = "https://api.stripe.com"
    PLATFORM_FEE_PERCENT: float = 1.0
    PROCESSOR_PERCENT: float = 2.9
    PROCESSOR_FIXED_CENTS: int = 30
    REQUIRE_PAYMENT_BEFORE_SUBMISSION: bool = True

    # Permits
    PERMIT_EXPIRATION_DAYS: int = 180
    DEFAULT_TARGET_REVIEW_DAYS: int = 30

    # Inspections
    DEFAULT_BUFFER_DAYS: int = 1
    DEFAULT_INSPECTION_MINUTES: int = 60
    SLOT_SEARCH_DAYS: int = 14
    BOOKING_MAX_RETRIES: int = 5

    # Issue cards
    ISSUE_BATCH_MAX: int = 1000
    ISSUE_NUMBER_MAX_ATTEMPTS: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

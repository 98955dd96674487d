from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Library Circulation API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/circulation_db"

    # JWT
    JWT_SECRET_KEY: str = "change-me-to-a-random-secret-key-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Built-in Admin
    ADMIN_EMAIL: str = "admin@library.com"
    ADMIN_PASSWORD: str = "admin123456"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Overdue sweep (seconds)
    OVERDUE_CHECK_INTERVAL: int = 3600
    SWEEP_TIMEOUT: int = 300
    SWEEP_ERROR_BACKOFF: int = 60
    SWEEP_ON_STARTUP: bool = False

    # Circulation policy
    DEFAULT_LOAN_DAYS: int = 14
    MAX_ACTIVE_LOANS: int = 5
    RESERVATION_HOLD_DAYS: int = 3
    RETURN_REMINDER_DAYS: int = 2

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


settings = Settings()

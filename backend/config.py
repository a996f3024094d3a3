from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "GymBros"
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = "change-me-in-production"
    DATABASE_URL: str = "sqlite:///data/gymbros.db"
    DATA_DIR: Path = Path("data")
    UPLOAD_DIR: Path = Path("data/uploads")
    MEDIA_BASE_URL: str = "/media"
    DEFAULT_PROFILE_PICTURE_URL: str = "/media/default-profile.png"
    DEFAULT_TIMEZONE: str = "UTC"
    CORS_ORIGINS: list[str] = [
        "http://localhost:8081",
        "http://localhost:19006",
    ]
    JWT_ALGORITHM: str = "HS256"
    FRIEND_QUERY_BATCH_SIZE: int = 30
    FRIEND_CODE_MAX_ATTEMPTS: int = 100
    DISPLAY_NAME_MIN_LENGTH: int = 2
    DISPLAY_NAME_MAX_LENGTH: int = 40
    FEED_STREAM_KEEPALIVE_SECONDS: float = 15.0
    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = "default-src 'none'; frame-ancestors 'none'"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if len((self.SECRET_KEY or "").strip()) < 16:
            errors.append("SECRET_KEY must be at least 16 characters")
        if self.DATABASE_URL.startswith("sqlite"):
            errors.append("DATABASE_URL must point at a server database in production-like environments")
        if self.FRIEND_QUERY_BATCH_SIZE < 1:
            errors.append("FRIEND_QUERY_BATCH_SIZE must be positive")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

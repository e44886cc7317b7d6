"""Global configuration and settings."""
import os
from typing import Optional


def _database_url() -> str:
    url = os.getenv("DATABASE_URL", "sqlite:///./visitor_logs.db")
    # Heroku/Railway style URLs
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Settings:
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = _database_url()

    # Google Gemini API
    GOOGLE_API_KEY: Optional[str] = os.getenv("GOOGLE_API_KEY")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

    # Uploads
    MAX_UPLOAD_SIZE_MB: int = int(os.getenv("MAX_UPLOAD_SIZE_MB", "50"))
    MAX_UPLOAD_SIZE_BYTES: int = MAX_UPLOAD_SIZE_MB * 1024 * 1024
    DEFAULT_LOCATION_NAME: str = os.getenv("DEFAULT_LOCATION_NAME", "N/A")

    # Video counting can take minutes per clip
    REQUEST_TIMEOUT_SECONDS: int = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "360"))

    # API
    API_TITLE: str = "CountCam Visitor Counter API"
    API_HOST: str = os.getenv("API_HOST", "127.0.0.1")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))


settings = Settings()

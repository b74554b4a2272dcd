from dotenv import load_dotenv, find_dotenv
import os
from functools import lru_cache

# Load .env files for local development
# override=False: variables already set in the environment take precedence
load_dotenv(dotenv_path="default.env", override=False)
load_dotenv(dotenv_path=find_dotenv(".env"), override=False)


class Settings:
    # Database - Postgres in production, local SQLite file for development and tests
    # DATABASE_URL is checked first (hosting platforms set it), then POSTGRES_URI
    DATABASE_URL: str = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI", "sqlite:///./buddyup.db")

    # JWT settings for authentication (tokens are issued by the auth provider)
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Push notification settings (Firebase Cloud Messaging HTTP v1)
    FIREBASE_PROJECT_ID: str = os.getenv("FIREBASE_PROJECT_ID", "")
    FIREBASE_CLIENT_EMAIL: str = os.getenv("FIREBASE_CLIENT_EMAIL", "")
    FIREBASE_PRIVATE_KEY: str = os.getenv("FIREBASE_PRIVATE_KEY", "")

    # Notification backend settings
    PUSH_BACKEND: str = os.getenv("PUSH_BACKEND", "dummy")  # "fcm" or "dummy"

    # Scheduler settings
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")
    SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    REMINDER_SWEEP_INTERVAL_MIN: int = int(os.getenv("REMINDER_SWEEP_INTERVAL_MIN", "15"))

    # Search settings
    NEARBY_DEFAULT_RADIUS_KM: float = float(os.getenv("NEARBY_DEFAULT_RADIUS_KM", "10"))

    # CORS allowlist, comma separated
    CORS_ALLOW_ORIGINS: str = os.getenv("CORS_ALLOW_ORIGINS", "*")

    @property
    def CORS_ALLOW_ORIGINS_LIST(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()]

    def get_firebase_private_key(self) -> str:
        """Return the service account key with escaped newlines restored."""
        return self.FIREBASE_PRIVATE_KEY.replace("\\n", "\n")


@lru_cache()
def get_settings():
    return Settings()


# Create singleton instance for direct imports
settings = get_settings()

# kato_license/config.py
from typing import Optional

from dotenv import load_dotenv
from pydantic import ConfigDict
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./licenses.db"

    # Lemon Squeezy (live + test mode)
    LEMON_SQUEEZY_API_URL: str = "https://api.lemonsqueezy.com/v1"
    LEMON_SQUEEZY_API_KEY: Optional[str] = None
    LEMON_SQUEEZY_API_KEY_TEST: Optional[str] = None
    LEMON_SQUEEZY_SIGNING_SECRET: Optional[str] = None
    LEMON_SQUEEZY_SIGNING_SECRET_TEST: Optional[str] = None

    # Release artifacts (S3)
    AWS_S3_BUCKET: Optional[str] = None
    AWS_REGION: str = "eu-north-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    RELEASE_PREFIX: str = "kato-sync"
    FALLBACK_VERSION: str = "0.9.0"
    DOWNLOAD_URL_TTL: int = 900  # seconds

    # Marketing site
    CHANGELOG_URL: str = "https://katosync.com/changelog"
    PRICING_URL: str = "https://katosync.com/pricing"

    # Outbound timeouts (seconds)
    HTTP_TIMEOUT: float = 8
    CHANGELOG_TIMEOUT: float = 3

    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(env_file=".env", extra="ignore")

    def signing_secrets(self) -> dict:
        """Candidate webhook secrets keyed by mode, live first."""
        secrets = {}
        if self.LEMON_SQUEEZY_SIGNING_SECRET:
            secrets["live"] = self.LEMON_SQUEEZY_SIGNING_SECRET
        if self.LEMON_SQUEEZY_SIGNING_SECRET_TEST:
            secrets["test"] = self.LEMON_SQUEEZY_SIGNING_SECRET_TEST
        return secrets

    def api_key_for(self, mode: str) -> Optional[str]:
        if mode == "test":
            return self.LEMON_SQUEEZY_API_KEY_TEST or self.LEMON_SQUEEZY_API_KEY
        return self.LEMON_SQUEEZY_API_KEY or self.LEMON_SQUEEZY_API_KEY_TEST

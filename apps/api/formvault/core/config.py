"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./formvault.db"

    # Exports
    EXPORT_YIELD_PER: int = 100  # Rows fetched per cursor round trip
    EXPORT_MEDIA_DIR: str = "media"

    # Managed encryption
    MANAGED_KEY_SIZE: int = 2048
    KEY_DERIVATION_ITERATIONS: int = 128000  # PBKDF2-SHA256, stored per key

    # Submissions
    MAX_SUBMISSION_BYTES: int = 10 * 1024 * 1024  # 10 MB

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def is_dev(self) -> bool:
        return self.ENV == "dev"


settings = Settings()

"""
Environment-driven settings for the ledger import service.

Every field can be set through a LEDGER_IMPORT_* environment variable, e.g.
LEDGER_IMPORT_DATA_DIR or LEDGER_IMPORT_CORS_ORIGINS (comma-separated).
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    data_dir: Path = Field(default=Path("data"), description="Directory for the JSON stores")
    cors_origins: str = Field(
        default="http://localhost:13030",
        description="Comma-separated allowed origins for CORS",
    )
    log_level: str = Field(default="INFO", description="Python log level")

    model_config = SettingsConfigDict(env_prefix="LEDGER_IMPORT_", extra="ignore")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def allowed_origins(self) -> List[str]:
        """Parse comma-separated origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def corrections_file(self) -> Path:
        return self.data_dir / "corrections.json"

    @property
    def ledger_file(self) -> Path:
        return self.data_dir / "ledger.json"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings for the running process."""
    return Settings()

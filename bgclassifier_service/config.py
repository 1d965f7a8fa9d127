"""
Configuration loader for the background classifier service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .decision import KEEP_LABEL, REMOVE_LABEL
from .errors import ConfigError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Model
    model_path: Path = Field(Path("./model"))
    device: Optional[str] = Field(None)  # cuda | mps | cpu, auto when unset
    remove_label: str = Field(REMOVE_LABEL)
    keep_label: str = Field(KEEP_LABEL)

    # API
    port: int = Field(3000)
    api_token: Optional[str] = Field(None)
    protect_base64_endpoint: bool = Field(False)
    log_level: str = Field("INFO")

    # Image acquisition
    fetch_timeout_seconds: float = Field(10.0)
    max_image_bytes: int = Field(10 * 1024 * 1024)

    # Memory reclamation, 0 disables the trigger
    reclaim_interval_seconds: float = Field(60.0)
    reclaim_every_n_inferences: int = Field(100)

    @field_validator("device")
    @classmethod
    def validate_device(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, ""):
            return None
        if v not in {"cuda", "mps", "cpu"}:
            raise ValueError("DEVICE must be one of cuda|mps|cpu")
        return v

    @field_validator("reclaim_interval_seconds", "reclaim_every_n_inferences", "max_image_bytes")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    settings = Settings()
    if not settings.api_token:
        raise ConfigError("API_TOKEN environment variable is required")
    return settings

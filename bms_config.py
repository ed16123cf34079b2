"""
Business Management Service - Configuration
Environment-driven settings shared by every module
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Process-wide settings. Values come from BMS_* environment variables."""

    service_name: str = "Business Management Service"
    version: str = "1.0.0"

    # HMAC key for decision ledger entries and bearer tokens
    system_secret: str = Field(default="BMS_DEV_SECRET_ROTATE_BEFORE_DEPLOY", min_length=8)

    log_level: str = "INFO"
    invoice_prefix: str = "INV-"

    # Most recent enforcement decisions kept in memory
    decision_ledger_size: int = Field(default=10000, gt=0)

    host: str = "0.0.0.0"
    port: int = Field(default=8000, gt=0, lt=65536)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        overrides = {}
        for field_name in cls.model_fields:
            value = os.environ.get(f"BMS_{field_name.upper()}")
            if value is not None:
                overrides[field_name] = value
        return cls(**overrides)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()

"""
config.py
=========
Application settings, loaded from environment variables or a ``.env`` file.

Environment variables:
  DATABASE_URL   - SQLAlchemy URL (default: local SQLite file)
  LOG_LEVEL      - DEBUG | INFO | WARNING | ERROR (default: INFO)
  APP_TITLE      - Title shown in the OpenAPI docs
"""

import logging
import os
import sys

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file if present
load_dotenv()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseModel):
    database_url: str = Field(
        default="sqlite:///./promotions.db",
        description="SQLAlchemy database URL",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    app_title: str = Field(default="Promotions Engine API")

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v

    @classmethod
    def from_env(cls) -> "Settings":
        values = {}
        for field_name in cls.model_fields:
            env_value = os.getenv(field_name.upper())
            if env_value is not None:
                values[field_name] = env_value
        return cls(**values)


def configure_logging(level: str) -> None:
    """Set the root level and attach a console handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # If logging is already configured (e.g. by uvicorn), leave it alone
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


settings = Settings.from_env()

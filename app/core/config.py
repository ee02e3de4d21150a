"""Application configuration.

Settings are read from environment variables and an optional ``.env`` file
at the project root. Import the module-level ``settings`` instance rather than
constructing ``Settings`` directly.
"""

import os
from enum import Enum
from typing import (
    Dict,
    List,
)

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class Settings(BaseSettings):
    """Service-wide settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    PROJECT_NAME: str = "Skill Installer"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Environment = Environment.DEVELOPMENT
    DEBUG: bool = False
    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = Field(default="console", description="console or json")

    # Rate limiting
    RATE_LIMIT_DEFAULT: List[str] = Field(default_factory=lambda: ["200 per day", "50 per hour"])
    RATE_LIMIT_ENDPOINTS: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            "install": ["20 per minute"],
            "query": ["60 per minute"],
            "health": ["20 per minute"],
        }
    )

    # Skill packages
    SKILL_PACKAGES_DIR: str = Field(
        default_factory=lambda: os.path.join(os.path.dirname(__file__), "skills", "packages")
    )
    SKILL_MATERIALIZE_TIMEOUT_SECONDS: float = 300.0
    SKILL_MATERIALIZE_MODE: str = Field(default="clone", description="clone or generate")
    INSTALLATION_PAGE_SIZE_DEFAULT: int = 20
    INSTALLATION_PAGE_SIZE_MAX: int = 100

    # LLM (used by the generate materialization mode)
    DEFAULT_LLM_MODEL: str = "gpt-4o-mini"
    OPENAI_API_KEY: str = ""

    @property
    def is_production(self) -> bool:
        """Return True when running in production."""
        return self.ENVIRONMENT == Environment.PRODUCTION


settings = Settings()

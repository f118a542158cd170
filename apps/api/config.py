"""Configuration for the Debate Lab Guard API."""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Find project root by looking for .env file
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent.parent  # apps/api -> apps -> project root

# Look for .env in multiple locations
ENV_LOCATIONS = [
    PROJECT_ROOT / ".env",  # Project root
    CURRENT_DIR / ".env",  # apps/api/
    Path.cwd() / ".env",  # Current working directory
]

# Find the first .env that exists
ENV_FILE = None
for env_path in ENV_LOCATIONS:
    if env_path.exists():
        ENV_FILE = env_path
        break

DEFAULT_IP_HASH_SALT = "debate-lab-default-salt-change-in-production"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = "development"

    # Identity hashing
    ip_hash_salt: str = ""

    # OpenAI Configuration (moderation + embeddings)
    openai_api_key: str = ""
    openai_moderation_model: str = "omni-moderation-latest"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_timeout: float = 10.0
    embedding_similarity_threshold: float = 0.82

    # Anthropic Configuration (semantic classifier)
    anthropic_api_key: str = ""
    anthropic_classifier_model: str = "claude-3-5-haiku-latest"

    # Abuse tracking store
    database_url: str = ""

    # Admin endpoints
    admin_api_key: str = ""

    # Allowed browser origin
    app_url: str = "http://localhost:3000"

    # Logging
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()  # type: ignore[call-arg]

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if ENV_FILE:
        logger.info(f"Loaded config from: {ENV_FILE}")
    else:
        logger.warning("No .env file found, using environment variables only")

    logger.info(
        f"Settings loaded: environment={settings.environment}, "
        f"classifier={'on' if settings.anthropic_api_key else 'off'}, "
        f"moderation={'on' if settings.openai_api_key else 'off'}, "
        f"abuse_store={'postgres' if settings.database_url else 'memory'}"
    )

    return settings

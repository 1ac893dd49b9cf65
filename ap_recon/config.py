"""
Configuration for the AP reconciliation engine.
"""

# Load environment variables FIRST
from dotenv import load_dotenv
load_dotenv()

import os
from typing import Optional


class Config:
    """Base configuration."""

    # LLM Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-2024-08-06")  # Needs structured output support
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", ""))
    GOOGLE_API_KEY: str = os.getenv("GOOGLE_API_KEY", "")
    LLM_API_BASE: Optional[str] = os.getenv("LLM_API_BASE", None)
    LLM_TIMEOUT: int = int(os.getenv("LLM_TIMEOUT", "120"))
    LLM_MAX_RETRIES: int = int(os.getenv("LLM_MAX_RETRIES", "0"))  # Retry policy belongs to callers
    LLM_SYSTEM_PROMPT: str = (
        "You are an expert at matching invoices to purchase orders and generating structured ERP import data."
    )

    # Record store (Airtable)
    AIRTABLE_API_KEY: str = os.getenv("AIRTABLE_API_KEY", os.getenv("AIRTABLE_PAT", ""))
    AIRTABLE_BASE_ID: str = os.getenv("AIRTABLE_BASE_ID", "")
    AIRTABLE_API_URL: str = os.getenv("AIRTABLE_API_URL", "https://api.airtable.com/v0")
    AIRTABLE_TIMEOUT: float = float(os.getenv("AIRTABLE_TIMEOUT", "30"))
    AIRTABLE_BATCH_SIZE: int = 10  # Airtable rejects larger create/update batches

    # Matching
    MATCH_OPERATOR_ID: str = os.getenv("MATCH_OPERATOR_ID", "test-user")
    MATCH_BATCH_CONCURRENCY: int = int(os.getenv("MATCH_BATCH_CONCURRENCY", "4"))
    BALANCE_TOLERANCE: float = 0.005  # Half a cent

    # Polling
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5.0"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: str = os.getenv("LOG_FILE", "ap_recon.log")

    # API Configuration (if using FastAPI)
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_DEBUG: bool = os.getenv("API_DEBUG", "false").lower() == "true"

    @classmethod
    def validate(cls) -> None:
        """Validate configuration."""
        if cls.LLM_PROVIDER not in ["openai", "gemini"]:
            raise ValueError(f"Invalid LLM_PROVIDER: {cls.LLM_PROVIDER}")

        if cls.POLL_INTERVAL_SECONDS <= 0:
            raise ValueError("POLL_INTERVAL_SECONDS must be positive")

    @classmethod
    def require_llm_credentials(cls) -> None:
        """Raise if the configured provider has no API key."""
        if cls.LLM_PROVIDER == "openai" and not cls.LLM_API_KEY:
            raise ValueError("LLM_API_KEY must be set for OpenAI provider")

        if cls.LLM_PROVIDER == "gemini" and not cls.GOOGLE_API_KEY:
            raise ValueError("GOOGLE_API_KEY must be set for Gemini provider")

    @classmethod
    def require_store_credentials(cls) -> None:
        """Raise if the record store cannot be reached with the current settings."""
        if not cls.AIRTABLE_API_KEY:
            raise ValueError("AIRTABLE_API_KEY must be set")
        if not cls.AIRTABLE_BASE_ID:
            raise ValueError("AIRTABLE_BASE_ID must be set")


class DevelopmentConfig(Config):
    """Development configuration."""
    LOG_LEVEL = "DEBUG"
    API_DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    LOG_LEVEL = "INFO"
    API_DEBUG = False


class TestConfig(Config):
    """Test configuration."""
    LOG_LEVEL = "DEBUG"
    POLL_INTERVAL_SECONDS = 0.01


def get_config(env: str = None) -> Config:
    """Get configuration based on environment."""
    if env is None:
        env = os.getenv("ENV", "development").lower()

    if env == "production":
        config = ProductionConfig()
    elif env == "test":
        config = TestConfig()
    else:
        config = DevelopmentConfig()

    # Validate configuration on creation
    config.validate()
    return config

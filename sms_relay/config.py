from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env vars take precedence over .env; empty values fall back to defaults
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Core
    DATABASE_URL: str = "sqlite:///./sms_relay.db"
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    PUBLIC_BASE_URL: str = "http://localhost:5000"

    # Telephony provider (Twilio)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TWILIO_API_BASE_URL: str = "https://api.twilio.com"

    # Approval channel (Telegram)
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_ID: str = ""
    TELEGRAM_WEBHOOK_SECRET: str = ""
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"

    # Generative model
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-20241022"
    DRAFT_MAX_TOKENS: int = 300

    # Semantic memory (Ollama embeddings)
    OLLAMA_URL: str = "http://localhost:11434"
    OLLAMA_EMBED_MODEL: str = "nomic-embed-text:latest"
    MEMORY_SIMILARITY_THRESHOLD: float = 0.6
    BUSINESS_FALLBACK_CONTEXT: str = (
        "MTL Craft Cocktails - mobile bartending services in Montreal. "
        "Bar service for private and corporate events, weddings, cocktail "
        "workshops, mocktail bars and handmade syrups. Fully bilingual "
        "English and French. Turnkey setup, everything made from scratch."
    )

    # Calendar provider
    CALENDAR_API_URL: str = ""
    CALENDAR_API_KEY: str = ""
    CALENDAR_IDS: str = "primary"
    CALENDAR_TIMEZONE: str = "America/Toronto"

    # Downstream business system (menu/order state)
    MENU_API_BASE_URL: str = ""
    MENU_API_SECRET: str = ""

    # Read-only API (search + simulation)
    READ_API_KEY: str = ""
    READ_ALLOWLIST: str = ""
    SEARCH_RATE_LIMIT: int = 60
    SIMULATE_RATE_LIMIT: int = 30
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Reminders (Vapi outbound calls)
    VAPI_API_KEY: str = ""
    VAPI_API_BASE_URL: str = "https://api.vapi.ai"
    VAPI_ASSISTANT_ID: str = ""
    VAPI_PHONE_NUMBER_ID: str = ""
    OWNER_PHONE_NUMBER: str = ""
    REMINDER_CHECKER_ENABLED: bool = True
    REMINDER_CHECK_INTERVAL_SECONDS: int = 60

    # Voice routing
    VAPI_PHONE_NUMBER: str = ""

    # Background jobs and limits
    RECONCILE_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 900
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 15.0
    PENDING_ACTION_TTL_SECONDS: int = 6 * 60 * 60

    @property
    def calendar_ids(self) -> List[str]:
        return _split_csv(self.CALENDAR_IDS)

    @property
    def read_allowlist(self) -> List[str]:
        return _split_csv(self.READ_ALLOWLIST)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


Urgency = Literal["low", "medium", "high"]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    A single instance is built by get_settings() and handed to each component
    at construction time.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database / logging
    DATABASE_URL: str = "sqlite:///./data/polaris.db"
    LOG_LEVEL: str = "INFO"

    # Application
    APP_NAME: str = "Polaris CRM"
    APP_VERSION: str = "1.0.0"

    # WhatsApp Business (Meta Cloud API)
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v22.0"
    WHATSAPP_BASE_URL: str = "https://graph.facebook.com"
    WEBHOOK_VERIFY_TOKEN: str = ""
    WHATSAPP_APP_SECRET: str = ""
    WEBHOOK_SIGNATURE_VERIFICATION: bool = False

    # Mistral AI
    MISTRAL_API_KEY: str = ""
    MISTRAL_MODEL: str = "mistral-small-latest"
    MISTRAL_BASE_URL: str = "https://api.mistral.ai/v1"
    MISTRAL_MAX_TOKENS: int = 500
    MISTRAL_TEMPERATURE: float = 0.7

    # Shared timeout for outbound HTTP calls (seconds)
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Feature flags
    WEBHOOK_ENABLED: bool = True
    AUTO_REPLY_ENABLED: bool = True
    AI_ENABLED: bool = True
    NOTIFICATIONS_ENABLED: bool = True
    MEMBER_AUTO_CREATION: bool = True

    # Team notifications
    URGENT_MESSAGE_THRESHOLD: Urgency = "high"
    TEAM_NOTIFICATION_CHANNELS: list[str] = Field(default_factory=lambda: ["database"])
    ADMIN_PHONE: str = ""

    # Conversation context sent to the completion provider
    CONVERSATION_HISTORY_LIMIT: int = Field(default=5, ge=0, le=50)

    # Fixed member-facing texts
    FALLBACK_REPLY: str = (
        "Hello! Thank you for your message to {app_name}. "
        "Our team will get back to you soon. 😊"
    )
    APOLOGY_REPLY: str = "Thank you for your message! We will reply shortly. 🙏"
    HUMAN_FOLLOWUP_NOTICE: str = "A member of our team will contact you soon. 👥"

    # Placeholders for auto-provisioned members
    NEW_MEMBER_FIRST_NAME: str = "New"
    NEW_MEMBER_LAST_NAME: str = "Member"

    @property
    def ai_available(self) -> bool:
        """AI assistance requires both the feature flag and an API key."""
        return self.AI_ENABLED and bool(self.MISTRAL_API_KEY)

    @property
    def fallback_reply(self) -> str:
        """FALLBACK_REPLY with {app_name} filled in; any other braces are kept as written."""
        return self.FALLBACK_REPLY.replace("{app_name}", self.APP_NAME)

    def validate_settings(self) -> list[str]:
        """
        Validate settings and return a list of warnings.
        Returns an empty list if everything needed at runtime is configured.
        """
        issues = []

        if not self.WEBHOOK_VERIFY_TOKEN:
            issues.append("WEBHOOK_VERIFY_TOKEN not set: webhook verification will always fail")

        if not self.WHATSAPP_ACCESS_TOKEN or not self.WHATSAPP_PHONE_NUMBER_ID:
            issues.append("WhatsApp credentials not set: outbound replies will be recorded as failed")

        if self.AI_ENABLED and not self.MISTRAL_API_KEY:
            issues.append("MISTRAL_API_KEY not set: auto replies will use the fallback text")

        if self.WEBHOOK_SIGNATURE_VERIFICATION and not self.WHATSAPP_APP_SECRET:
            issues.append("WEBHOOK_SIGNATURE_VERIFICATION enabled without WHATSAPP_APP_SECRET")

        if "whatsapp" in self.TEAM_NOTIFICATION_CHANNELS and not self.ADMIN_PHONE:
            issues.append("whatsapp notification channel configured without ADMIN_PHONE")

        return issues


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()

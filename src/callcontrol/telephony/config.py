"""
Telephony provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported telephony provider types."""

    EXOTEL = "exotel"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: ProviderType = Field(default=ProviderType.EXOTEL)

    # Exotel credentials
    exotel_account_sid: str = Field(default="")
    exotel_api_key: str = Field(default="")
    exotel_api_token: str = Field(default="")
    exotel_subdomain: str = Field(default="api.exotel.com")

    # Number admitted inbound calls are bridged to (voice agent)
    connect_number: str = Field(default="")

    # Public base URL the provider calls back on
    webhook_base_url: str = Field(default="http://localhost:8000")

    http_timeout_seconds: float = Field(default=30.0, gt=0, le=120)

    def get_webhook_url(self, path: str = "/webhooks/telephony/status") -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"

    def flow_url(self, flow_ref: str) -> str:
        """Build the call-flow URL from an app id; full URLs pass through."""
        if flow_ref.startswith(("http://", "https://")):
            return flow_ref
        return f"http://my.exotel.com/{self.exotel_account_sid}/exoml/start_voice/{flow_ref}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()

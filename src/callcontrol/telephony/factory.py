"""
Telephony provider factory.

Configuration comes from TelephonyConfig (Pydantic Settings), never raw env reads.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from callcontrol.telephony.config import ProviderType, TelephonyConfig, get_telephony_config
from callcontrol.telephony.exotel_adapter import ExotelAdapter
from callcontrol.telephony.interface import TelephonyProvider
from callcontrol.telephony.mock_adapter import MockTelephonyAdapter

logger = logging.getLogger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def create_telephony_provider(cfg: TelephonyConfig | None = None) -> TelephonyProvider:
    cfg = cfg or get_telephony_config()

    logger.info(
        "Telephony config resolved",
        extra={
            "provider_type": cfg.provider_type.value,
            "exotel_account_sid": _mask(cfg.exotel_account_sid),
            "exotel_subdomain": cfg.exotel_subdomain,
            "webhook_base_url": cfg.webhook_base_url,
        },
    )

    if cfg.provider_type == ProviderType.EXOTEL:
        return ExotelAdapter(cfg)

    if cfg.provider_type == ProviderType.MOCK:
        return MockTelephonyAdapter()

    raise ValueError(f"Unsupported telephony provider_type: {cfg.provider_type}")


@lru_cache(maxsize=1)
def get_telephony_provider() -> TelephonyProvider:
    """Create and cache the process-wide telephony provider."""
    return create_telephony_provider()

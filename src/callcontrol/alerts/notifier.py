"""
External alert delivery.

The core only needs "send this message to the account owner"; delivery
goes to an HTTP webhook when one is configured, otherwise to the log.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

import httpx

from callcontrol.accounts.models import Account, NotificationType
from callcontrol.config import Settings, get_settings
from callcontrol.shared.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """Protocol for delivering an alert outside the application."""

    async def send(self, account: Account, type: NotificationType, message: str) -> None:
        ...


class LogNotifier:
    """Writes alerts to the log only."""

    async def send(self, account: Account, type: NotificationType, message: str) -> None:
        logger.info(
            "Alert delivered",
            extra={"account_id": str(account.id), "email": account.email, "type": type.value},
        )


class WebhookNotifier:
    """POSTs alerts as JSON to a configured endpoint.

    Delivery failures are logged and dropped; the in-app notification
    has already been stored by the caller.
    """

    def __init__(self, url: str, http_client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    def _payload(self, account: Account, type: NotificationType, message: str) -> dict[str, Any]:
        account_id: UUID = account.id
        return {
            "account_id": str(account_id),
            "email": account.email,
            "type": type.value,
            "message": message,
        }

    async def send(self, account: Account, type: NotificationType, message: str) -> None:
        try:
            response = await self._client.post(self._url, json=self._payload(account, type, message))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Alert webhook delivery failed",
                extra={"account_id": str(account.id), "type": type.value, "error": str(e)},
            )
            return
        logger.info(
            "Alert webhook delivered",
            extra={"account_id": str(account.id), "type": type.value},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_notifier(settings: Settings | None = None) -> Notifier:
    settings = settings or get_settings()
    if settings.alert_webhook_url:
        return WebhookNotifier(settings.alert_webhook_url)
    return LogNotifier()

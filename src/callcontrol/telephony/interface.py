"""
Telephony provider interface definition.

The control plane needs three carrier operations: place an outbound call,
read a call's status, terminate a call.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import anyio


class CallStatus(str, Enum):
    """Provider call status values."""

    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


TERMINAL_STATUSES: frozenset[CallStatus] = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.BUSY,
        CallStatus.NO_ANSWER,
        CallStatus.CANCELED,
    }
)

_STATUS_ALIASES: dict[str, CallStatus] = {
    "not-answered": CallStatus.NO_ANSWER,
    "no_answer": CallStatus.NO_ANSWER,
    "in_progress": CallStatus.IN_PROGRESS,
    "initiated": CallStatus.QUEUED,
    "cancelled": CallStatus.CANCELED,
}


def normalize_status(raw: str | None) -> CallStatus:
    """Map a raw provider status string onto CallStatus."""
    value = (raw or "").strip().lower()
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return CallStatus(value)
    except ValueError:
        return CallStatus.UNKNOWN


@dataclass(frozen=True)
class CallStatusInfo:
    """Provider view of one call."""

    call_id: str
    status: CallStatus
    duration_seconds: int = 0
    direction: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    recording_url: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TelephonyProviderError(Exception):
    """Base exception for telephony provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}


class ProviderTransientError(TelephonyProviderError):
    """Network failure, throttling or 5xx; worth retrying later."""


class ProviderPermanentError(TelephonyProviderError):
    """The provider rejected the request for good."""


class CallNotFoundError(ProviderPermanentError):
    """The provider does not know the call id."""


class CallPlacementError(TelephonyProviderError):
    """The provider refused to place an outbound call."""


class TelephonyProvider(ABC):
    """Abstract interface for telephony providers.

    Adapters backed by a blocking HTTP client implement the ``*_sync``
    methods; the async entrypoints run them in a worker thread.
    """

    async def place_call(
        self,
        from_number: str,
        to_number: str,
        flow_ref: str,
        custom_field: str | None = None,
    ) -> str:
        """Place an outbound call and return the provider call id."""
        return await anyio.to_thread.run_sync(
            self.place_call_sync, from_number, to_number, flow_ref, custom_field
        )

    async def get_call_status(self, call_id: str) -> CallStatusInfo:
        """Fetch the current status of a call."""
        return await anyio.to_thread.run_sync(self.get_call_status_sync, call_id)

    async def terminate_call(self, call_id: str) -> None:
        """Hang up a call in progress."""
        await anyio.to_thread.run_sync(self.terminate_call_sync, call_id)

    @abstractmethod
    def place_call_sync(
        self,
        from_number: str,
        to_number: str,
        flow_ref: str,
        custom_field: str | None = None,
    ) -> str:
        ...

    @abstractmethod
    def get_call_status_sync(self, call_id: str) -> CallStatusInfo:
        ...

    @abstractmethod
    def terminate_call_sync(self, call_id: str) -> None:
        ...

    def close(self) -> None:
        """Release provider resources."""

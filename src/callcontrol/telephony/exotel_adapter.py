"""
Exotel telephony provider adapter.

Talks to the Exotel V1 REST API (connect, call details, hangup) with httpx.
"""

from __future__ import annotations

from typing import Any

import httpx

from callcontrol.shared.logging import get_logger
from callcontrol.telephony.config import TelephonyConfig, get_telephony_config
from callcontrol.telephony.interface import (
    CallNotFoundError,
    CallPlacementError,
    CallStatusInfo,
    ProviderPermanentError,
    ProviderTransientError,
    TelephonyProvider,
    normalize_status,
)

logger = get_logger(__name__)


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(data: dict[str, Any], default: str) -> str:
    rest = data.get("RestException") or {}
    return str(rest.get("Message") or data.get("message") or default)


class ExotelAdapter(TelephonyProvider):
    """Exotel telephony provider adapter.

    Uses a blocking httpx client; the async entrypoints inherited from
    TelephonyProvider run it in a worker thread.
    """

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                timeout=httpx.Timeout(self._config.http_timeout_seconds)
            )
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.exotel_api_key, self._config.exotel_api_token)

    def _get_api_url(self, endpoint: str) -> str:
        subdomain = self._config.exotel_subdomain
        account_sid = self._config.exotel_account_sid
        return f"https://{subdomain}/v1/Accounts/{account_sid}{endpoint}"

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._get_client().request(
                method,
                self._get_api_url(endpoint),
                auth=self._get_auth(),
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise ProviderTransientError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

    def _raise_for_status(self, response: httpx.Response, call_id: str | None = None) -> None:
        if response.status_code < 400:
            return

        data = _error_payload(response)
        message = _error_message(data, f"Exotel API error: {response.status_code}")
        code = str(response.status_code)

        if response.status_code == 404:
            if call_id:
                message = f"Call {call_id} not found: {message}"
            raise CallNotFoundError(message=message, error_code=code, provider_response=data)
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(message=message, error_code=code, provider_response=data)
        raise ProviderPermanentError(message=message, error_code=code, provider_response=data)

    def place_call_sync(
        self,
        from_number: str,
        to_number: str,
        flow_ref: str,
        custom_field: str | None = None,
    ) -> str:
        """Connect `to_number` to the call flow, presenting `from_number` as caller id."""
        payload = {
            "From": to_number,
            "CallerId": from_number,
            "Url": self._config.flow_url(flow_ref),
            "StatusCallback": self._config.get_webhook_url(),
        }
        if custom_field:
            payload["CustomField"] = custom_field

        logger.info(
            "Placing Exotel call",
            extra={"to": to_number, "caller_id": from_number},
        )

        try:
            response = self._request("POST", "/Calls/connect.json", data=payload)
            self._raise_for_status(response)
        except ProviderPermanentError as e:
            logger.error(
                "Exotel call placement rejected",
                extra={"to": to_number, "error_code": e.error_code, "error": str(e)},
            )
            raise CallPlacementError(
                message=str(e),
                error_code=e.error_code,
                provider_response=e.provider_response,
            ) from e

        data = response.json()
        call_sid = (data.get("Call") or {}).get("Sid")
        if not call_sid:
            raise CallPlacementError(
                message="Exotel response carried no call Sid",
                error_code="MISSING_SID",
                provider_response=data,
            )
        return str(call_sid)

    def get_call_status_sync(self, call_id: str) -> CallStatusInfo:
        response = self._request("GET", f"/Calls/{call_id}.json")
        self._raise_for_status(response, call_id)

        call = (response.json() or {}).get("Call") or {}
        if not call:
            raise ProviderTransientError(
                message="Exotel response carried no call details",
                error_code="EMPTY_CALL",
            )

        # ConversationDuration is talk time only; Duration includes ringing.
        conversation = _as_int(call.get("ConversationDuration"))
        total = _as_int(call.get("Duration"))

        return CallStatusInfo(
            call_id=str(call.get("Sid") or call_id),
            status=normalize_status(call.get("Status")),
            duration_seconds=conversation if conversation > 0 else total,
            direction=call.get("Direction"),
            from_number=call.get("From"),
            to_number=call.get("To"),
            recording_url=call.get("RecordingUrl") or None,
            raw_response=call,
        )

    def terminate_call_sync(self, call_id: str) -> None:
        response = self._request("POST", f"/Calls/{call_id}.json", data={"Status": "completed"})
        self._raise_for_status(response, call_id)
        logger.info("Exotel call terminated", extra={"call_id": call_id})

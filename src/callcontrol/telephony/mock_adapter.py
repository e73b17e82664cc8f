"""
Mock telephony provider adapter for testing.

Calls are scripted per destination number: each status poll consumes the
next scripted CallStatusInfo and the last one repeats.
"""

from typing import Any

from callcontrol.shared.logging import get_logger
from callcontrol.telephony.interface import (
    CallNotFoundError,
    CallPlacementError,
    CallStatus,
    CallStatusInfo,
    ProviderTransientError,
    TelephonyProvider,
)

logger = get_logger(__name__)


class MockTelephonyAdapter(TelephonyProvider):
    """Mock telephony provider for testing."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._placed: list[dict[str, Any]] = []
        self._terminated: list[str] = []
        self._status_polls: list[str] = []
        self._scripts: dict[str, list[tuple[CallStatus, int]]] = {}
        self._call_scripts: dict[str, list[tuple[CallStatus, int]]] = {}
        self._call_numbers: dict[str, str] = {}
        self._not_found: set[str] = set()
        self._transient: set[str] = set()
        self._failing_numbers: set[str] = set()
        self._next_call_id: int = 1
        self._should_fail: bool = False
        self._fail_error: str = "Mock failure"
        self._fail_code: str = "MOCK_ERROR"
        self._default_outcome: tuple[CallStatus, int] = (CallStatus.COMPLETED, 30)

    def configure_failure(
        self,
        should_fail: bool = True,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
    ) -> None:
        self._should_fail = should_fail
        self._fail_error = error_message
        self._fail_code = error_code

    def fail_number(self, to_number: str) -> None:
        """Refuse placement to one destination."""
        self._failing_numbers.add(to_number)

    def configure_default_outcome(self, status: CallStatus, duration_seconds: int = 0) -> None:
        self._default_outcome = (status, duration_seconds)

    def script_number(self, to_number: str, *steps: tuple[CallStatus, int]) -> None:
        """Script the status sequence every call to `to_number` reports."""
        self._scripts[to_number] = list(steps)

    def script_call(self, call_id: str, *steps: tuple[CallStatus, int]) -> None:
        """Script the status sequence of one known call id."""
        self._call_scripts[call_id] = list(steps)

    def mark_not_found(self, call_id: str) -> None:
        self._not_found.add(call_id)

    def mark_transient(self, call_id: str, failing: bool = True) -> None:
        if failing:
            self._transient.add(call_id)
        else:
            self._transient.discard(call_id)

    @property
    def placed(self) -> list[dict[str, Any]]:
        return self._placed.copy()

    @property
    def terminated(self) -> list[str]:
        return self._terminated.copy()

    @property
    def status_polls(self) -> list[str]:
        return self._status_polls.copy()

    # The async entrypoints run inline so tests stay on one thread.
    async def place_call(
        self,
        from_number: str,
        to_number: str,
        flow_ref: str,
        custom_field: str | None = None,
    ) -> str:
        return self.place_call_sync(from_number, to_number, flow_ref, custom_field)

    async def get_call_status(self, call_id: str) -> CallStatusInfo:
        return self.get_call_status_sync(call_id)

    async def terminate_call(self, call_id: str) -> None:
        self.terminate_call_sync(call_id)

    def place_call_sync(
        self,
        from_number: str,
        to_number: str,
        flow_ref: str,
        custom_field: str | None = None,
    ) -> str:
        logger.info("Mock: Placing call", extra={"to": to_number})

        if self._should_fail or to_number in self._failing_numbers:
            raise CallPlacementError(message=self._fail_error, error_code=self._fail_code)

        call_id = f"MOCK_CALL_{self._next_call_id:06d}"
        self._next_call_id += 1
        self._call_numbers[call_id] = to_number
        if to_number in self._scripts and call_id not in self._call_scripts:
            self._call_scripts[call_id] = list(self._scripts[to_number])
        self._placed.append(
            {
                "call_id": call_id,
                "from_number": from_number,
                "to_number": to_number,
                "flow_ref": flow_ref,
                "custom_field": custom_field,
            }
        )
        return call_id

    def get_call_status_sync(self, call_id: str) -> CallStatusInfo:
        self._status_polls.append(call_id)

        if call_id in self._not_found:
            raise CallNotFoundError(message=f"Call {call_id} not found", error_code="404")
        if call_id in self._transient:
            raise ProviderTransientError(message="Mock transient failure", error_code="503")

        steps = self._call_scripts.get(call_id)
        if steps:
            status, duration = steps.pop(0) if len(steps) > 1 else steps[0]
        else:
            status, duration = self._default_outcome

        return CallStatusInfo(
            call_id=call_id,
            status=status,
            duration_seconds=duration,
            to_number=self._call_numbers.get(call_id),
            raw_response={"mock": True},
        )

    def terminate_call_sync(self, call_id: str) -> None:
        if call_id in self._not_found:
            raise CallNotFoundError(message=f"Call {call_id} not found", error_code="404")
        self._terminated.append(call_id)
        self._call_scripts[call_id] = [(CallStatus.COMPLETED, 0)]
        logger.info("Mock: Call terminated", extra={"call_id": call_id})

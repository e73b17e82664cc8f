"""
FastAPI router for telephony webhook endpoints.

The provider must always get an answer quickly: admission is a handful of
indexed queries, and any internal fault connects the call.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response, status

from callcontrol.calls.admission import AdmissionController
from callcontrol.calls.monitor import CallLifecycleMonitor
from callcontrol.shared.logging import get_logger
from callcontrol.telephony.config import TelephonyConfig
from callcontrol.telephony.webhooks.responses import connect_document, reject_document

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/telephony", tags=["webhooks"])

XML_MEDIA_TYPE = "application/xml"


async def _params(request: Request) -> dict[str, Any]:
    """Merge query string and form body; providers use either."""
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if "form" in content_type:
            form = await request.form()
            params.update({k: v for k, v in form.items() if isinstance(v, str)})
        elif "json" in content_type:
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                params.update(body)
    return params


@router.api_route("/incoming", methods=["GET", "POST"])
async def incoming_call(request: Request) -> Response:
    """Admit or reject an inbound call and answer with call-flow XML."""
    params = await _params(request)
    call_id = str(params.get("CallSid") or "")
    calling = params.get("From") or params.get("CallFrom")
    called = params.get("To") or params.get("CallTo")

    admission: AdmissionController = request.app.state.admission
    telephony_config: TelephonyConfig = request.app.state.telephony_config

    if not call_id:
        logger.warning("Inbound webhook without CallSid", extra={"from": calling, "to": called})
        decision = None
    else:
        decision = await admission.admit(call_id, calling, called)

    if decision is None or decision.admitted:
        body = connect_document(telephony_config.connect_number)
    else:
        body = reject_document(decision.reason)  # type: ignore[arg-type]

    return Response(content=body, media_type=XML_MEDIA_TYPE)


@router.post("/status", status_code=status.HTTP_200_OK)
async def call_status_callback(request: Request) -> dict[str, Any]:
    """Reconcile the reported call right away instead of waiting for the next sweep."""
    params = await _params(request)
    call_id = str(params.get("CallSid") or "")
    if not call_id:
        logger.warning("Status callback without CallSid")
        return {"status": "ignored"}

    monitor: CallLifecycleMonitor = request.app.state.monitor
    try:
        outcome = await monitor.reconcile_call(call_id)
    except Exception:
        # The next sweep retries; the provider only needs an acknowledgement.
        logger.exception("Status callback reconciliation failed", extra={"call_id": call_id})
        return {"status": "error", "call_id": call_id}

    logger.info(
        "Status callback processed",
        extra={"call_id": call_id, "reported_status": params.get("Status"), "outcome": outcome.value},
    )
    return {"status": "ok", "call_id": call_id, "outcome": outcome.value}

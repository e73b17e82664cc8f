"""
Call-flow XML documents returned to the provider.
"""

from xml.sax.saxutils import escape

from callcontrol.calls.admission import RejectReason

REJECT_MESSAGES: dict[RejectReason, str] = {
    RejectReason.NOT_CONFIGURED: "Number not assigned.",
    RejectReason.SUBSCRIPTION_EXPIRED: "Your subscription has expired. Please renew.",
    RejectReason.CREDITS_EXHAUSTED: "Your call credits are exhausted. Please recharge.",
    RejectReason.LINES_BUSY: "All lines are busy.",
}


def reject_document(reason: RejectReason) -> str:
    """Speak the rejection message, then hang up."""
    message = escape(REJECT_MESSAGES[reason])
    return f"<Response><Say>{message}</Say><Hangup/></Response>"


def connect_document(connect_number: str) -> str:
    """Bridge the caller to the voice agent number."""
    return f"<Response><Dial><Number>{escape(connect_number)}</Number></Dial></Response>"

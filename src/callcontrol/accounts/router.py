"""
Notifications API router.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from callcontrol.accounts.ledger import LedgerStore
from callcontrol.accounts.schemas import (
    MarkReadResponse,
    NotificationListResponse,
    NotificationResponse,
)
from callcontrol.shared.exceptions import AccountNotFoundError, NotFoundError

router = APIRouter(prefix="/api/accounts", tags=["notifications"])


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


Ledger = Annotated[LedgerStore, Depends(get_ledger)]


async def _require_account(ledger: LedgerStore, account_id: UUID) -> None:
    if await ledger.get_account(account_id) is None:
        raise AccountNotFoundError(account_id)


@router.get("/{account_id}/notifications", response_model=NotificationListResponse)
async def list_notifications(
    account_id: UUID,
    ledger: Ledger,
    unread_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> NotificationListResponse:
    await _require_account(ledger, account_id)
    items = await ledger.list_notifications(account_id, unread_only=unread_only, limit=limit)
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        unread=sum(1 for n in items if not n.is_read),
    )


@router.patch("/{account_id}/notifications/read-all", response_model=MarkReadResponse)
async def mark_all_read(account_id: UUID, ledger: Ledger) -> MarkReadResponse:
    await _require_account(ledger, account_id)
    return MarkReadResponse(updated=await ledger.mark_notifications_read(account_id))


@router.patch("/{account_id}/notifications/{notification_id}/read", response_model=MarkReadResponse)
async def mark_read(account_id: UUID, notification_id: UUID, ledger: Ledger) -> MarkReadResponse:
    await _require_account(ledger, account_id)
    updated = await ledger.mark_notifications_read(account_id, notification_id)
    if not updated:
        # Unknown id, another account's notification, or already read.
        notifications = await ledger.list_notifications(account_id, limit=1000)
        if not any(n.id == notification_id for n in notifications):
            raise NotFoundError(
                f"Notification not found: {notification_id}",
                "NOTIFICATION_NOT_FOUND",
                {"notification_id": str(notification_id)},
            )
    return MarkReadResponse(updated=updated)

"""
Pydantic schemas for the notifications API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from callcontrol.accounts.models import NotificationType


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    type: NotificationType
    message: str
    is_read: bool
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread: int


class MarkReadResponse(BaseModel):
    updated: int

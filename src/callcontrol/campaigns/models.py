"""
SQLAlchemy model for bulk outbound campaigns.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from callcontrol.shared.database import Base


class CampaignStatus(str, Enum):
    """Campaign lifecycle status."""

    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    PAUSED_DAILY = "paused-daily"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses from which an operator may resume a campaign
RESUMABLE_STATUSES: frozenset[CampaignStatus] = frozenset(
    {CampaignStatus.PAUSED, CampaignStatus.FAILED}
)


class Campaign(Base):
    """Persisted campaign record and its aggregate call results."""

    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    agent_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[CampaignStatus] = mapped_column(
        SQLEnum(
            CampaignStatus,
            name="campaign_status",
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=CampaignStatus.IN_PROGRESS,
        index=True,
    )

    total_contacts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    call_interval_sec: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    concurrent_lines: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    caller_id: Mapped[str] = mapped_column(String(32), nullable=False)
    flow_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    contacts: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    call_results: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Retry policy
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    # Daily window, "HH:MM" in the campaign timezone
    daily_start_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    daily_end_time: Mapped[str | None] = mapped_column(String(5), nullable=True)

    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    date_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, name='{self.name}', status={self.status.value})>"

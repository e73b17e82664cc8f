"""
SQLAlchemy models for active calls and metered usage.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    Integer,
    Numeric,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from callcontrol.shared.database import Base


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ActiveCall(Base):
    """A call currently holding one concurrency slot of its billable account."""

    __tablename__ = "active_calls"

    call_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    billable_account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    direction: Mapped[CallDirection] = mapped_column(
        SQLEnum(
            CallDirection,
            name="call_direction",
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=CallDirection.INBOUND,
    )
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ActiveCall(call_id={self.call_id}, account_id={self.account_id})>"


class UsageRecord(Base):
    """Immutable metering entry, one per provider call id."""

    __tablename__ = "usage_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    call_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    billed_account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    minutes_billed: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    credit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    from_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    call_status: Mapped[str] = mapped_column(String(32), nullable=False)
    recording_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(call_id={self.call_id}, minutes={self.minutes_billed})>"

"""
SQLAlchemy model for per-agent telephony configuration.
"""

from uuid import UUID

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from callcontrol.shared.database import Base


class AgentTelephonyConfig(Base):
    """Caller id and call flow an agent dials out with."""

    __tablename__ = "agent_telephony_config"

    agent_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    account_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=True,
    )
    exophone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    app_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<AgentTelephonyConfig(agent_id={self.agent_id}, app_id={self.app_id})>"

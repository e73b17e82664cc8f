"""
Repository for campaign persistence.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import delete, func, select, update

from callcontrol.campaigns.models import Campaign, CampaignStatus
from callcontrol.shared.database import DatabaseManager, utcnow


class CampaignStore(Protocol):
    """Persistence the dialer writes its progress through."""

    async def save_progress(
        self,
        campaign_id: str,
        call_results: list[dict[str, Any]],
        completed_calls: int,
        failed_calls: int,
        status: CampaignStatus | None = None,
    ) -> None:
        ...

    async def set_status(self, campaign_id: str, status: CampaignStatus) -> None:
        ...


class CampaignRepository:
    """Repository for campaign database operations."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create(self, campaign: Campaign) -> Campaign:
        """Persist a new campaign.

        Args:
            campaign: Transient Campaign instance.

        Returns:
            The stored campaign with server defaults loaded.
        """
        async with self._db.session() as session:
            session.add(campaign)
            await session.flush()
            await session.refresh(campaign)
        return campaign

    async def get(self, campaign_id: str) -> Campaign | None:
        async with self._db.session() as session:
            return await session.get(Campaign, campaign_id)

    async def list(
        self,
        account_id: UUID | None = None,
        status: CampaignStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Campaign], int]:
        """List campaigns, newest first, with the unpaginated total."""
        stmt = select(Campaign)
        count_stmt = select(func.count()).select_from(Campaign)
        if account_id is not None:
            stmt = stmt.where(Campaign.account_id == account_id)
            count_stmt = count_stmt.where(Campaign.account_id == account_id)
        if status is not None:
            stmt = stmt.where(Campaign.status == status)
            count_stmt = count_stmt.where(Campaign.status == status)
        stmt = stmt.order_by(Campaign.date_created.desc()).limit(limit).offset(offset)

        async with self._db.session() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            result = await session.execute(stmt)
            return result.scalars().all(), int(total)

    async def save_progress(
        self,
        campaign_id: str,
        call_results: list[dict[str, Any]],
        completed_calls: int,
        failed_calls: int,
        status: CampaignStatus | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "call_results": call_results,
            "completed_calls": completed_calls,
            "failed_calls": failed_calls,
            "date_updated": utcnow(),
        }
        if status is not None:
            values["status"] = status
        async with self._db.session() as session:
            await session.execute(update(Campaign).where(Campaign.id == campaign_id).values(values))

    async def set_status(self, campaign_id: str, status: CampaignStatus) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id)
                .values(status=status, date_updated=utcnow())
            )

    async def delete(self, campaign_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(Campaign).where(Campaign.id == campaign_id))
            return result.rowcount > 0

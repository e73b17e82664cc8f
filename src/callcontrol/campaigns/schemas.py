"""
Pydantic schemas for the campaign API.
"""

import re
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from callcontrol.campaigns.models import CampaignStatus

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ContactSchema(BaseModel):
    """One number to dial."""

    number: str = Field(..., min_length=1, max_length=32)
    first_name: str = Field(default="", max_length=100)

    @field_validator("number")
    @classmethod
    def strip_number(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("number must not be blank")
        return v


class CampaignLaunchRequest(BaseModel):
    """Request body for launching a campaign."""

    name: str = Field(..., min_length=1, max_length=255)
    account_id: UUID
    agent_id: str = Field(..., min_length=1, max_length=100)
    contacts: list[ContactSchema] = Field(..., min_length=1)
    call_interval_sec: int | None = Field(None, ge=0, le=3600)
    throttle_cpm: int | None = Field(None, ge=1, le=600, description="Calls per minute")
    concurrent_lines: int | None = Field(None, ge=1)
    max_retries: int = Field(default=0, ge=0, le=10)
    retry_interval_minutes: int = Field(default=10, ge=1, le=1440)
    daily_start_time: str | None = Field(None, description="HH:MM in the campaign timezone")
    daily_end_time: str | None = Field(None, description="HH:MM in the campaign timezone")

    @field_validator("daily_start_time", "daily_end_time")
    @classmethod
    def validate_hhmm(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not _HHMM.match(v):
            raise ValueError("time must be HH:MM")
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "CampaignLaunchRequest":
        if self.daily_start_time and self.daily_end_time:
            if self.daily_start_time >= self.daily_end_time:
                raise ValueError("daily_start_time must be before daily_end_time")
        return self


class CallResultSchema(BaseModel):
    """Last known outcome of one contact."""

    number: str
    first_name: str = ""
    status: str
    attempt: int = 0
    call_id: str | None = None
    provider_status: str | None = None
    duration_seconds: int = 0
    error: str | None = None
    retry_at: datetime | None = None
    updated_at: datetime | None = None


class CampaignResponse(BaseModel):
    """Campaign summary returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    account_id: UUID
    agent_id: str | None
    status: CampaignStatus
    total_contacts: int
    completed_calls: int
    failed_calls: int
    call_interval_sec: int
    concurrent_lines: int
    max_retries: int
    retry_interval_minutes: int
    daily_start_time: str | None
    daily_end_time: str | None
    date_created: datetime
    date_updated: datetime


class CampaignListResponse(BaseModel):
    items: list[CampaignResponse]
    total: int


class CampaignCallsResponse(BaseModel):
    """Per-contact view: contacts without a result yet read as ``pending``."""

    campaign_id: str
    calls: list[CallResultSchema]

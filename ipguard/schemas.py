from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ManualBlockRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    client_key: str = Field(min_length=1, max_length=256)
    duration_seconds: Optional[float] = Field(default=None, gt=0, le=60 * 60 * 24 * 30)
    reason: str = Field(default="manual", min_length=1, max_length=120)


class ManualBlockResponse(BaseModel):
    client_key: str
    blocked_until: datetime


class UnblockResponse(BaseModel):
    client_key: str
    removed: bool


class ClientStatsItem(BaseModel):
    key: str
    failure_count: int
    blocked: bool


class AbuseStatsResponse(BaseModel):
    total_tracked: int
    blocked_count: int
    per_client: list[ClientStatsItem]


class WhoAmIResponse(BaseModel):
    user_id: str
    is_admin: bool
    client_key: str

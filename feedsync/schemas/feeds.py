from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

UpdatePeriod = Literal["hourly", "daily", "weekly", "monthly", "yearly"]


class SyndicationHints(BaseModel):
    update_period: UpdatePeriod | None = None
    update_frequency: int | None = None


class ParsedItem(BaseModel):
    guid: str | None = None
    link: str | None = None
    title: str | None = None
    author: str | None = None
    content: str | None = None
    summary: str | None = None
    published_at: datetime | None = None


class ParsedFeed(BaseModel):
    title: str | None = None
    description: str | None = None
    site_url: str | None = None
    ttl_minutes: int | None = None
    syndication: SyndicationHints | None = None
    items: list[ParsedItem] = Field(default_factory=list)

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

FETCH_SOURCE_JOB = "fetch_source"


class FetchSourcePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    source_id: str = Field(min_length=1)


@dataclass(slots=True)
class JobResult:
    success: bool
    next_run_at: datetime
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

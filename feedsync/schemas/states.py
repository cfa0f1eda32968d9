from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

StateField = Literal["read", "starred"]
STATE_FIELDS = {"read", "starred"}


class StateMutation(BaseModel):
    user_id: str = Field(min_length=1)
    item_id: str = Field(min_length=1)
    field: StateField
    value: bool
    changed_at: datetime | None = None


class BatchStateEntry(BaseModel):
    item_id: str = Field(min_length=1)
    changed_at: datetime | None = None


class BatchStateMutation(BaseModel):
    user_id: str = Field(min_length=1)
    field: StateField
    value: bool
    items: list[BatchStateEntry] = Field(default_factory=list, max_length=1000)


class ItemState(BaseModel):
    item_id: str
    read: bool
    starred: bool
    read_changed_at: datetime
    starred_changed_at: datetime
    applied: bool = False

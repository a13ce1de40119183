from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ClipJobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MediaItem(BaseModel):
    source_path: str
    kind: MediaKind
    display_duration: float = Field(..., gt=0)
    caption_text: str = ""

    @field_validator("display_duration")
    @classmethod
    def validate_duration(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("display_duration must be finite")
        return value

    @property
    def has_caption(self) -> bool:
        return bool(self.caption_text)


class ClipResult(BaseModel):
    success: bool
    clip_path: Optional[str] = None
    clip_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    error: Optional[str] = None


class ClipJob(BaseModel):
    id: UUID
    session_id: str
    media_items: List[MediaItem] = Field(..., min_length=1)
    output_path: str
    state: ClipJobState = ClipJobState.QUEUED
    progress: Optional[float] = None
    result: Optional[ClipResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def total_duration(self) -> float:
        return sum(item.display_duration for item in self.media_items)

from __future__ import annotations

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CreateClipResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Clip creation job queued"
    job_id: UUID = Field(..., serialization_alias="jobId")
    session_id: str = Field(..., serialization_alias="sessionId")


class JobStatusResponse(BaseModel):
    status: Literal["processing", "failed"]
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str = "ok"
    queue: str
    captions: bool
    webhook: bool


class WebhookPayload(BaseModel):
    """Body of the completion notification; exactly one of clipUrl or clipPath is set."""

    model_config = ConfigDict(populate_by_name=True)

    clip_url: Optional[str] = Field(default=None, serialization_alias="clipUrl")
    clip_path: Optional[str] = Field(default=None, serialization_alias="clipPath")
    session_id: str = Field(..., serialization_alias="sessionId")
    file_size: int = Field(..., serialization_alias="fileSize")
    duration: float
    date_created: str = Field(..., serialization_alias="dateCreated")
    media_item_count: int = Field(..., serialization_alias="mediaItemCount")

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

"""Data models for shares and queued jobs."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from icsengine.core.clock import utc_now


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


class SharedPayload(BaseModel):
    """What a share surface captured. Immutable once created.

    Share surfaces write camelCase keys (``selectedText``, ``createdAt``);
    snake_case names are accepted too.
    """

    model_config = {"frozen": True, "alias_generator": to_camel, "populate_by_name": True}

    url: str = Field(min_length=1)
    title: Optional[str] = None
    selected_text: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("url must not be blank")
        return v


class JobOverrides(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    model: Optional[str] = None
    from_email: Optional[str] = None
    to_tentative_email: Optional[str] = None
    to_confirmed_email: Optional[str] = None


class ShareRequest(BaseModel):
    """Inbox file: the payload plus optional per-share toggles.

    Unset toggles are filled from ``ShareDefaults`` at enqueue time.
    """

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    payload: SharedPayload
    tentative: Optional[bool] = None
    multiday: Optional[bool] = None
    review_first: Optional[bool] = None
    instructions: Optional[str] = None
    overrides: JobOverrides = Field(default_factory=JobOverrides)


class QueueJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: SharedPayload
    tentative: bool = False
    multiday: bool = False
    review_first: bool = False
    instructions: str = ""
    overrides: JobOverrides = Field(default_factory=JobOverrides)
    status: JobStatus = JobStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

"""Shared data models for event extraction."""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_EVENTS = 50

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
_TIME_PATTERN = r"^\d{2}:\d{2}$"


class ExtractedEvent(BaseModel):
    """One calendar event as emitted by the model."""

    summary: str = Field(min_length=1)
    location: str = ""
    description: str = ""
    timezone: str = ""
    url: str = ""
    start_date: str = Field(pattern=_DATE_PATTERN, description="YYYY-MM-DD")
    start_time: Optional[str] = Field(
        default=None, pattern=_TIME_PATTERN, description="HH:MM, null for all-day"
    )
    end_date: Optional[str] = Field(default=None, pattern=_DATE_PATTERN)
    end_time: Optional[str] = Field(default=None, pattern=_TIME_PATTERN)

    @field_validator("start_time", "end_date", "end_time", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def real_date(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            date.fromisoformat(v)
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def real_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            hours, minutes = (int(p) for p in v.split(":"))
            if hours > 23 or minutes > 59:
                raise ValueError(f"time out of range: {v}")
        return v

    @property
    def is_all_day(self) -> bool:
        return self.start_time is None


class ExtractionOutput(BaseModel):
    """Schema used for the model's structured output."""

    events: list[ExtractedEvent] = Field(min_length=1, max_length=MAX_EVENTS)
    confidence: float = Field(
        ge=0.0, le=1.0, description="How sure you are the events are correct (0.0 to 1.0)"
    )


class ExtractionRequest(BaseModel):
    """Normalised content plus the per-job extraction toggles."""

    html: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    screenshot: Optional[str] = None  # base64
    source: Literal["email", "webpage", "manual"] = "webpage"
    instructions: str = ""
    multiday: bool = False
    tentative: bool = False
    review_first: bool = False

    @model_validator(mode="after")
    def has_content(self) -> "ExtractionRequest":
        if not (self.html or self.text or self.screenshot):
            raise ValueError("extraction needs html, text or a screenshot")
        return self


class ExtractionResult(BaseModel):
    """Validated extraction, as cached and as handed to the dispatch router."""

    events: list[ExtractedEvent]
    confidence: float = Field(ge=0.0, le=1.0)
    source: str
    model: str
    timestamp: datetime
    needs_review: bool = False
    confirmation_token: Optional[str] = None

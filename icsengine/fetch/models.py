"""Shared data models for the content fetcher."""

from typing import Literal, Optional

from pydantic import BaseModel

FetchErrorKind = Literal["blocked", "invalid", "timeout", "failure"]


class FetchResult(BaseModel):
    """Outcome of a fetch. ``error`` set means "no content", never an exception."""

    html: str = ""
    title: str = ""
    url: str
    screenshot: Optional[str] = None  # base64
    error: Optional[str] = None
    error_kind: Optional[FetchErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class HealthStatus(BaseModel):
    healthy: bool
    error: Optional[str] = None

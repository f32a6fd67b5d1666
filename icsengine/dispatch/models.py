"""Data models for outbound email and dispatch outcomes."""

from typing import Optional

from pydantic import BaseModel, Field


class Attachment(BaseModel):
    name: str
    content: bytes
    content_type: str = "text/calendar"


class EmailMessage(BaseModel):
    """Provider-neutral email; the sender maps it onto its wire format."""

    from_email: str
    to: str
    subject: str
    text_body: str
    html_body: Optional[str] = None
    attachments: list[Attachment] = Field(default_factory=list)
    tag: Optional[str] = None


class DispatchOutcome(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipient: Optional[str] = None
    confirmation_token: Optional[str] = None

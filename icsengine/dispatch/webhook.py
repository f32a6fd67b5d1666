"""Inbound confirmation triggers, validated as a tagged union."""

import logging
import re
from typing import Annotated, Literal, Optional, Union

import pydantic
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, TypeAdapter

from icsengine.core.errors import InvalidToken, ValidationError
from icsengine.dispatch.models import DispatchOutcome
from icsengine.dispatch.router import DispatchRouter

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"Confirmation token:\s*([A-Za-z0-9_\-]+)")


class ConfirmAction(BaseModel):
    """Deep link or direct API call carrying the token."""

    model_config = {"extra": "forbid"}

    kind: Literal["confirm"]
    token: str = Field(min_length=1)


class InboundEmail(BaseModel):
    """Reply to a tentative email, forwarded by the provider's inbound hook."""

    model_config = {"extra": "ignore"}

    kind: Literal["inbound_email"]
    html: Optional[str] = None
    text: Optional[str] = None
    subject: Optional[str] = None

    def find_token(self) -> str:
        sources = [self.text or "", self.subject or ""]
        if self.html:
            sources.append(BeautifulSoup(self.html, "html.parser").get_text("\n"))
        for source in sources:
            match = _TOKEN_RE.search(source)
            if match:
                return match.group(1)
        raise InvalidToken("no confirmation token found in inbound email")


WebhookPayload = Annotated[Union[ConfirmAction, InboundEmail], Field(discriminator="kind")]

_adapter = TypeAdapter(WebhookPayload)


def parse_webhook(raw: str | bytes | dict) -> ConfirmAction | InboundEmail:
    """Validate an inbound payload; unknown shapes raise ``ValidationError``."""
    try:
        if isinstance(raw, dict):
            return _adapter.validate_python(raw)
        return _adapter.validate_json(raw)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"]) or "payload"
        raise ValidationError(f"unrecognised webhook payload at {where}: {first['msg']}") from exc


def handle_webhook(raw: str | bytes | dict, router: DispatchRouter) -> DispatchOutcome:
    payload = parse_webhook(raw)
    if isinstance(payload, ConfirmAction):
        token = payload.token
    else:
        token = payload.find_token()
    logger.info("Webhook %s received", payload.kind)
    return router.confirm(token)

"""Postmark email sender (the email-provider collaborator)."""

import base64
import logging
import os

import requests

from icsengine.core.config import EmailSettings
from icsengine.core.errors import DispatchFailure
from icsengine.core.retry import RetryPolicy
from icsengine.dispatch.models import EmailMessage

logger = logging.getLogger(__name__)

_TRANSIENT = (requests.ConnectionError, requests.Timeout)


class ProviderUnavailable(Exception):
    """5xx from the provider; retried like a connection error."""


def redact(token: str) -> str:
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


def to_postmark_payload(message: EmailMessage) -> dict:
    """Map an ``EmailMessage`` onto Postmark's JSON body."""
    payload = {
        "From": message.from_email,
        "To": message.to,
        "Subject": message.subject,
        "TextBody": message.text_body,
        "MessageStream": "outbound",
    }
    if message.html_body:
        payload["HtmlBody"] = message.html_body
    if message.tag:
        payload["Tag"] = message.tag
    if message.attachments:
        payload["Attachments"] = [
            {
                "Name": a.name,
                "Content": base64.b64encode(a.content).decode("ascii"),
                "ContentType": a.content_type,
            }
            for a in message.attachments
        ]
    return payload


class PostmarkSender:
    """Send one email through the Postmark HTTP API.

    The server token comes from the environment variable named in settings
    and is read at construction time.
    """

    def __init__(
        self,
        settings: EmailSettings,
        retry: RetryPolicy | None = None,
        session: requests.Session | None = None,
        token: str | None = None,
    ):
        self.settings = settings
        self.retry = retry or RetryPolicy()
        self._session = session or requests.Session()
        self._token = token if token is not None else os.getenv(settings.token_env, "")

    def send(self, message: EmailMessage) -> str:
        """Send ``message`` and return the provider's message id.

        Raises ``DispatchFailure`` on a missing token, a rejected request or
        once transient errors have exhausted the retry policy.
        """
        if not self._token:
            raise DispatchFailure(
                f"email provider token missing (set {self.settings.token_env})"
            )
        if not message.from_email or not message.to:
            raise DispatchFailure("sender and recipient addresses are required")

        payload = to_postmark_payload(message)
        logger.info(
            "Sending email to %s (tag=%s, token=%s)",
            message.to,
            message.tag,
            redact(self._token),
        )
        try:
            body = self.retry.call(
                self._post, _TRANSIENT + (ProviderUnavailable,), payload
            )
        except requests.Timeout as exc:
            raise DispatchFailure(
                f"email send timed out after {self.settings.timeout_seconds:g}s"
            ) from exc
        except (requests.RequestException, ProviderUnavailable) as exc:
            raise DispatchFailure(f"email send failed: {exc}") from exc

        message_id = body.get("MessageID", "")
        logger.info("Email accepted by provider (id=%s)", message_id)
        return message_id

    def _post(self, payload: dict) -> dict:
        resp = self._session.post(
            self.settings.api_url,
            json=payload,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "X-Postmark-Server-Token": self._token,
            },
            timeout=self.settings.timeout_seconds,
        )
        if resp.status_code >= 500:
            raise ProviderUnavailable(f"HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code != 200 or body.get("ErrorCode", 0) != 0:
            detail = body.get("Message") or resp.text[:200]
            raise DispatchFailure(f"email provider rejected message ({resp.status_code}): {detail}")
        return body

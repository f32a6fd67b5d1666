"""Dispatch router: tentative vs confirmed routing and token promotion."""

import html
import logging
from typing import Callable

from icsengine.agents.models import ExtractedEvent, ExtractionResult
from icsengine.core.clock import Clock, epoch, utc_now
from icsengine.core.config import RoutingSettings
from icsengine.core.errors import DispatchFailure, IcsEngineError
from icsengine.dispatch.models import Attachment, DispatchOutcome, EmailMessage
from icsengine.exporters.ics import CalendarArtifact
from icsengine.queue.models import QueueJob
from icsengine.storage.confirmations import (
    ConfirmationStore,
    PendingConfirmation,
    new_confirmation_token,
)

logger = logging.getLogger(__name__)

TENTATIVE_PREFIX = "[Tentative] "
_STATUS_TENTATIVE = b"\r\nSTATUS:TENTATIVE\r\n"
_STATUS_CONFIRMED = b"\r\nSTATUS:CONFIRMED\r\n"


# ── Message content ──────────────────────────────────────────────────


def build_subject(events: list[ExtractedEvent], tentative: bool) -> str:
    if len(events) == 1:
        subject = events[0].summary
    else:
        subject = f"Calendar Events: {len(events)}"
    return f"{TENTATIVE_PREFIX}{subject}" if tentative else subject


def _when(event: ExtractedEvent) -> str:
    if event.is_all_day:
        when = f"{event.start_date} (all day)"
        if event.end_date and event.end_date != event.start_date:
            when = f"{event.start_date} to {event.end_date} (all day)"
        return when
    when = f"{event.start_date} {event.start_time}"
    if event.end_time:
        end_day = event.end_date if event.end_date and event.end_date != event.start_date else ""
        when += f" to {end_day + ' ' if end_day else ''}{event.end_time}"
    if event.timezone:
        when += f" ({event.timezone})"
    return when


def build_text_body(
    events: list[ExtractedEvent],
    token: str | None = None,
    confirm_link: str | None = None,
) -> str:
    blocks = []
    for event in events:
        lines = [f"Event: {event.summary}", f"When: {_when(event)}"]
        if event.location:
            lines.append(f"Where: {event.location}")
        if event.url:
            lines.append(f"Source: {event.url}")
        if event.description:
            lines += ["", event.description.strip()]
        blocks.append("\n".join(lines))
    body = "\n\n---\n\n".join(blocks)
    if token:
        body += f"\n\nThis event needs review.\nConfirmation token: {token}"
        if confirm_link:
            body += f"\nConfirm: {confirm_link}"
    return body + "\n"


def build_html_body(text_body: str) -> str:
    escaped = html.escape(text_body).replace("\n", "<br>\n")
    return f"<html><body>{escaped}</body></html>"


# ── Router ───────────────────────────────────────────────────────────


class DispatchRouter:
    """Pick the recipient, send, and promote tentative events on confirmation.

    ``dispatch`` never touches the queue; the processor owns job state.
    """

    def __init__(
        self,
        routing: RoutingSettings,
        sender,
        confirmations: ConfirmationStore,
        token_ttl_seconds: int,
        clock: Clock = utc_now,
        token_factory: Callable[[], str] = new_confirmation_token,
    ):
        self.routing = routing
        self.sender = sender
        self.confirmations = confirmations
        self.token_ttl_seconds = token_ttl_seconds
        self._clock = clock
        self._token_factory = token_factory

    def _addresses(self, job: QueueJob) -> tuple[str, str, str]:
        o = job.overrides
        return (
            o.from_email or self.routing.from_email,
            o.to_tentative_email or self.routing.to_tentative_email,
            o.to_confirmed_email or self.routing.to_confirmed_email,
        )

    def confirm_link(self, token: str) -> str | None:
        template = self.routing.confirm_link_template
        return template.format(token=token) if template else None

    def dispatch(
        self, job: QueueJob, artifact: CalendarArtifact, result: ExtractionResult
    ) -> DispatchOutcome:
        """Route one artifact. Failures come back as ``success=False``."""
        from_email, to_tentative, to_confirmed = self._addresses(job)
        tentative = result.needs_review or job.tentative
        recipient = to_tentative if tentative else to_confirmed
        token = result.confirmation_token if result.needs_review else None

        if not recipient:
            kind = "tentative" if tentative else "confirmed"
            err = DispatchFailure(f"no {kind} recipient configured")
            return DispatchOutcome(success=False, error=err.display())
        if result.needs_review and not token:
            err = DispatchFailure("review requested but no confirmation token was minted")
            return DispatchOutcome(success=False, error=err.display())

        if token:
            token = self._register(job, token, from_email, to_confirmed, artifact, result)

        text_body = build_text_body(result.events, token, self.confirm_link(token) if token else None)
        message = EmailMessage(
            from_email=from_email,
            to=recipient,
            subject=build_subject(result.events, tentative),
            text_body=text_body,
            html_body=build_html_body(text_body),
            attachments=[
                Attachment(
                    name=artifact.filename,
                    content=artifact.content,
                    content_type=artifact.content_type,
                )
            ],
            tag="tentative" if tentative else "confirmed",
        )

        try:
            message_id = self.sender.send(message)
        except IcsEngineError as exc:
            logger.error("Dispatch of job %s to %s failed: %s", job.id, recipient, exc.message)
            if token:
                self.confirmations.discard(token)
            return DispatchOutcome(success=False, error=exc.display(), recipient=recipient)

        logger.info(
            "Job %s dispatched to %s address %s%s",
            job.id,
            "tentative" if tentative else "confirmed",
            recipient,
            " with confirmation token" if token else "",
        )
        return DispatchOutcome(
            success=True,
            message_id=message_id,
            recipient=recipient,
            confirmation_token=token,
        )

    def _register(
        self,
        job: QueueJob,
        token: str,
        from_email: str,
        to_confirmed: str,
        artifact: CalendarArtifact,
        result: ExtractionResult,
    ) -> str:
        """Store the pending promotion and return the token it is filed under.

        A cached result carries the token of its first dispatch; once that
        token is on file, each later dispatch gets a freshly minted one.
        """
        pending = PendingConfirmation(
            token=token,
            job_id=job.id,
            from_email=from_email,
            to_email=to_confirmed,
            subject=build_subject(result.events, tentative=False),
            text_body=build_text_body(result.events),
            filename=artifact.filename,
            content=artifact.content.replace(_STATUS_TENTATIVE, _STATUS_CONFIRMED),
        )
        expires_at = epoch(self._clock) + self.token_ttl_seconds
        while not self.confirmations.register(pending, expires_at):
            logger.debug("Token for job %s already issued; minting a new one", job.id)
            pending = pending.model_copy(update={"token": self._token_factory()})
        return pending.token

    def confirm(self, token: str) -> DispatchOutcome:
        """Re-send a tentative artifact to the confirmed address.

        Raises ``InvalidToken`` for unknown, expired or reused tokens. If the
        re-send fails the token is released so the user can try again.
        """
        pending = self.confirmations.claim(token.strip())
        if not pending.to_email:
            self.confirmations.release(pending.token)
            raise DispatchFailure("no confirmed recipient configured")

        message = EmailMessage(
            from_email=pending.from_email,
            to=pending.to_email,
            subject=pending.subject,
            text_body=pending.text_body,
            html_body=build_html_body(pending.text_body),
            attachments=[Attachment(name=pending.filename, content=pending.content)],
            tag="confirmed",
        )
        try:
            message_id = self.sender.send(message)
        except IcsEngineError:
            self.confirmations.release(pending.token)
            raise

        logger.info("Confirmed token for job %s; re-sent to %s", pending.job_id, pending.to_email)
        return DispatchOutcome(success=True, message_id=message_id, recipient=pending.to_email)

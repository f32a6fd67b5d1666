"""Queue drain: run each pending job through fetch, extract, export, dispatch."""

import logging
import time

from icsengine.agents.extractor import EventExtractor
from icsengine.agents.models import ExtractionRequest, ExtractionResult
from icsengine.core.config import Settings
from icsengine.core.errors import (
    FetchBlocked,
    FetchFailure,
    FetchTimeout,
    IcsEngineError,
    StorageCorrupted,
    ValidationError,
)
from icsengine.dispatch.models import DispatchOutcome
from icsengine.dispatch.router import DispatchRouter
from icsengine.exporters import export_calendar
from icsengine.fetch.fetcher import ContentFetcher
from icsengine.queue.models import QueueJob
from icsengine.queue.store import JobQueue

logger = logging.getLogger(__name__)


class QueueProcessor:
    """Single writer of job state. One job's pipeline runs at a time."""

    def __init__(
        self,
        settings: Settings,
        queue: JobQueue,
        fetcher: ContentFetcher,
        extractor: EventExtractor,
        router: DispatchRouter,
    ):
        self.settings = settings
        self.queue = queue
        self.fetcher = fetcher
        self.extractor = extractor
        self.router = router

    # ── Pipeline stages ──────────────────────────────────────

    def build_request(self, job: QueueJob) -> ExtractionRequest:
        """Fetch the shared URL and combine it with the shared text.

        Blocked or malformed URLs fail the job. Other fetch failures only
        fail it when there is no selected text to fall back on.
        """
        payload = job.payload
        fetched = self.fetcher.fetch(
            payload.url, include_screenshot=self.settings.fetcher.include_screenshot
        )

        if not fetched.ok:
            if fetched.error_kind == "blocked":
                raise FetchBlocked(fetched.error)
            if fetched.error_kind == "invalid":
                raise ValidationError(fetched.error)
            if not payload.selected_text:
                if fetched.error_kind == "timeout":
                    raise FetchTimeout(fetched.error)
                raise FetchFailure(fetched.error)
            logger.warning(
                "Fetch for job %s failed (%s); continuing with selected text only",
                job.id,
                fetched.error,
            )

        if not (fetched.html or payload.selected_text or fetched.screenshot):
            raise FetchFailure(f"no content retrieved from {payload.url}")

        return ExtractionRequest(
            html=fetched.html or None,
            text=payload.selected_text,
            url=payload.url,
            title=fetched.title or payload.title,
            screenshot=fetched.screenshot,
            source="webpage",
            instructions=job.instructions,
            multiday=job.multiday,
            tentative=job.tentative,
            review_first=job.review_first,
        )

    def extract(self, job: QueueJob, request: ExtractionRequest) -> ExtractionResult:
        model = job.overrides.model or self.settings.model.default_model
        if not self.settings.is_model_allowed(model):
            raise ValidationError(f"model '{model}' is not in the allowed list")
        return self.extractor.extract(request, model=model)

    def process_job(self, job: QueueJob) -> DispatchOutcome:
        """Run one job end to end. Pipeline errors propagate as ``IcsEngineError``."""
        request = self.build_request(job)
        result = self.extract(job, request)
        tentative = result.needs_review or job.tentative
        artifact = export_calendar(
            result,
            self.settings.calendar,
            tentative=tentative,
            organizer=job.overrides.from_email or self.settings.routing.from_email,
        )
        return self.router.dispatch(job, artifact, result)

    # ── Drain ────────────────────────────────────────────────

    def _settle(self, job: QueueJob, error: str | None) -> None:
        """Remove or fail the job, unless another worker has taken it over.

        A job that ran past ``stale_after_seconds`` may have been recovered
        and claimed elsewhere; that worker's copy is left untouched.
        """
        try:
            if error is None:
                self.queue.remove(job.id, claimed_at=job.updated_at)
            else:
                self.queue.mark_failed(job.id, error, claimed_at=job.updated_at)
        except ValidationError as exc:
            logger.warning("Job %s not updated: %s", job.id, exc.message)

    def drain(self) -> dict:
        """Process every pending job in FIFO order.

        A failing job is marked ``Failed`` and the drain moves on. Only
        ``StorageCorrupted`` escapes.
        """
        stats = {"recovered": 0, "processed": 0, "succeeded": 0, "failed": 0}
        stats["recovered"] = self.queue.recover_stale(self.settings.queue.stale_after_seconds)

        while True:
            job = self.queue.claim_next()
            if job is None:
                break
            stats["processed"] += 1
            t0 = time.monotonic()
            logger.info("Processing job %s (%s)", job.id, job.payload.url)

            error = None
            try:
                outcome = self.process_job(job)
                if not outcome.success:
                    error = outcome.error or "DispatchFailure: unknown error"
            except StorageCorrupted:
                raise
            except IcsEngineError as exc:
                error = exc.display()
            except Exception as exc:
                logger.exception("Unexpected error in job %s", job.id)
                error = f"{type(exc).__name__}: {exc}"

            if error is None:
                stats["succeeded"] += 1
                logger.info("Job %s succeeded in %.1fs", job.id, time.monotonic() - t0)
            else:
                stats["failed"] += 1
                logger.error("Job %s failed: %s", job.id, error)
            self._settle(job, error)

        logger.info(
            "Drain complete: %d processed, %d succeeded, %d failed",
            stats["processed"],
            stats["succeeded"],
            stats["failed"],
        )
        return stats

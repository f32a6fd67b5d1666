"""Share ingest: JSON files dropped into the inbox become queued jobs."""

import logging
import shutil
from pathlib import Path

import pydantic

from icsengine.core.config import ShareDefaults
from icsengine.core.errors import ValidationError
from icsengine.queue.models import QueueJob, ShareRequest
from icsengine.queue.store import JobQueue

logger = logging.getLogger(__name__)

REJECTED_DIR = "rejected"


def job_from_share(share: ShareRequest, defaults: ShareDefaults) -> QueueJob:
    """Snapshot the share's toggles, filling gaps from the current defaults."""

    def pick(value, default):
        return default if value is None else value

    return QueueJob(
        payload=share.payload,
        tentative=pick(share.tentative, defaults.tentative),
        multiday=pick(share.multiday, defaults.multiday),
        review_first=pick(share.review_first, defaults.review_first),
        instructions=pick(share.instructions, defaults.instructions),
        overrides=share.overrides.model_copy(),
    )


def parse_share(raw: str | bytes) -> ShareRequest:
    """Accept either a full ``ShareRequest`` or a bare ``SharedPayload``."""
    try:
        return ShareRequest.model_validate_json(raw)
    except pydantic.ValidationError as exc:
        try:
            return ShareRequest.model_validate_json(b'{"payload": ' + _as_bytes(raw) + b"}")
        except pydantic.ValidationError:
            pass
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"]) or "share"
        raise ValidationError(f"invalid share at {where}: {first['msg']}") from exc


def _as_bytes(raw: str | bytes) -> bytes:
    return raw.encode("utf-8") if isinstance(raw, str) else raw


def ingest_inbox(inbox_dir: Path, queue: JobQueue, defaults: ShareDefaults) -> list[QueueJob]:
    """Enqueue every ``*.json`` in the inbox, oldest file name first.

    Accepted files are deleted; invalid ones move to ``rejected/``.
    """
    inbox_dir = Path(inbox_dir)
    inbox_dir.mkdir(parents=True, exist_ok=True)
    jobs: list[QueueJob] = []

    for path in sorted(inbox_dir.glob("*.json")):
        try:
            share = parse_share(path.read_bytes())
        except ValidationError as exc:
            rejected = inbox_dir / REJECTED_DIR
            rejected.mkdir(exist_ok=True)
            shutil.move(str(path), str(rejected / path.name))
            logger.warning("Rejected share %s: %s", path.name, exc.display())
            continue

        job = queue.enqueue(job_from_share(share, defaults))
        path.unlink()
        jobs.append(job)

    if jobs:
        logger.info("Ingested %d share(s) from %s", len(jobs), inbox_dir)
    return jobs

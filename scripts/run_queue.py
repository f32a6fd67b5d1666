#!/usr/bin/env python3
"""Share-to-calendar queue runner."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from icsengine.agents.extractor import EventExtractor
from icsengine.core.config import Settings, load_settings
from icsengine.core.errors import IcsEngineError, StorageCorrupted
from icsengine.dispatch.postmark import PostmarkSender
from icsengine.dispatch.router import DispatchRouter
from icsengine.dispatch.webhook import handle_webhook
from icsengine.fetch.fetcher import ContentFetcher
from icsengine.queue.ingest import ingest_inbox
from icsengine.queue.models import JobStatus
from icsengine.queue.processor import QueueProcessor
from icsengine.queue.store import JobQueue
from icsengine.storage.cache import ExtractionCache
from icsengine.storage.confirmations import ConfirmationStore
from icsengine.storage.sweeper import CacheSweeper, sweep_once

logger = logging.getLogger("queue")

COMMANDS = (
    "ingest", "drain", "list", "retry", "discard", "sweep",
    "confirm", "webhook", "health", "serve",
)


# ── Wiring ───────────────────────────────────────────────────────────


class Components:
    """Everything one CLI invocation needs, built from settings."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.queue = JobQueue(settings.queue.db_path)
        self.cache = ExtractionCache(settings.cache.db_path)
        self.confirmations = ConfirmationStore(settings.cache.db_path)
        self.fetcher = ContentFetcher(settings.fetcher, retry=settings.retry)
        self.extractor = EventExtractor(
            self.cache, settings.model, settings.cache.ttl_seconds, retry=settings.retry
        )
        self.router = DispatchRouter(
            settings.routing,
            PostmarkSender(settings.email, retry=settings.retry),
            self.confirmations,
            token_ttl_seconds=settings.cache.ttl_seconds,
        )
        self.processor = QueueProcessor(
            settings, self.queue, self.fetcher, self.extractor, self.router
        )

    def close(self) -> None:
        self.queue.close()
        self.cache.close()
        self.confirmations.close()


# ── Commands ─────────────────────────────────────────────────────────


def cmd_ingest(c: Components, args) -> int:
    jobs = ingest_inbox(c.settings.queue.inbox_dir, c.queue, c.settings.defaults)
    print(f"Ingested {len(jobs)} share(s)")
    return 0


def cmd_drain(c: Components, args) -> int:
    if not args.no_ingest:
        ingest_inbox(c.settings.queue.inbox_dir, c.queue, c.settings.defaults)
    stats = c.processor.drain()
    print(json.dumps(stats, indent=2))
    return 0 if stats["failed"] == 0 else 1


def cmd_list(c: Components, args) -> int:
    status = JobStatus(args.status) if args.status else None
    for job in c.queue.list_jobs(status):
        line = f"{job.id}  {job.status.value:<10}  {job.updated_at:%Y-%m-%d %H:%M}  {job.payload.url}"
        if job.error_message:
            line += f"\n    {job.error_message}"
        print(line)
    print(f"Queue: {json.dumps(c.queue.counts())}  Cache: {json.dumps(c.cache.stats())}")
    return 0


def cmd_retry(c: Components, args) -> int:
    if args.all:
        print(f"Re-queued {c.queue.retry_failed()} failed job(s)")
    else:
        for job_id in args.job_ids:
            c.queue.retry(job_id)
            print(f"Re-queued {job_id}")
    return 0


def cmd_discard(c: Components, args) -> int:
    for job_id in args.job_ids:
        c.queue.discard(job_id)
        print(f"Discarded {job_id}")
    return 0


def cmd_sweep(c: Components, args) -> int:
    print(json.dumps(sweep_once(c.cache, c.confirmations)))
    return 0


def cmd_confirm(c: Components, args) -> int:
    outcome = c.router.confirm(args.token)
    print(f"Confirmed; sent to {outcome.recipient} (id={outcome.message_id})")
    return 0


def cmd_webhook(c: Components, args) -> int:
    raw = Path(args.file).read_bytes() if args.file != "-" else sys.stdin.buffer.read()
    outcome = handle_webhook(raw, c.router)
    print(outcome.model_dump_json())
    return 0


def cmd_health(c: Components, args) -> int:
    status = c.fetcher.health_check()
    print(status.model_dump_json())
    return 0 if status.healthy else 1


def cmd_serve(c: Components, args) -> int:
    """Ingest and drain every poll interval; sweep on a separate thread."""
    interval = args.interval or c.settings.queue.poll_interval_seconds
    sweeper = CacheSweeper(c.settings.cache.db_path, c.settings.cache.sweep_interval_seconds)
    sweeper.start()
    logger.info("Serving: poll every %ss, sweep every %ss", interval, sweeper.interval_seconds)
    try:
        while True:
            ingest_inbox(c.settings.queue.inbox_dir, c.queue, c.settings.defaults)
            c.processor.drain()
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        sweeper.stop()
        sweeper.join(timeout=5)
    return 0


HANDLERS = {
    "ingest": cmd_ingest,
    "drain": cmd_drain,
    "list": cmd_list,
    "retry": cmd_retry,
    "discard": cmd_discard,
    "sweep": cmd_sweep,
    "confirm": cmd_confirm,
    "webhook": cmd_webhook,
    "health": cmd_health,
    "serve": cmd_serve,
}


# ── CLI ──────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the share-to-calendar job queue")
    parser.add_argument("--config", help="Settings YAML (default: $ICSENGINE_CONFIG or config/settings.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("ingest", help="Enqueue share files from the inbox")
    p = sub.add_parser("drain", help="Process all pending jobs once")
    p.add_argument("--no-ingest", action="store_true", help="Skip the inbox scan")
    p = sub.add_parser("list", help="Show queued jobs and cache stats")
    p.add_argument("--status", choices=[s.value for s in JobStatus])
    p = sub.add_parser("retry", help="Move failed jobs back to pending")
    p.add_argument("job_ids", nargs="*")
    p.add_argument("--all", action="store_true", help="Retry every failed job")
    p = sub.add_parser("discard", help="Drop pending or failed jobs")
    p.add_argument("job_ids", nargs="+")
    sub.add_parser("sweep", help="Delete expired cache entries and tokens")
    p = sub.add_parser("confirm", help="Promote a tentative event with its token")
    p.add_argument("token")
    p = sub.add_parser("webhook", help="Handle an inbound webhook JSON payload")
    p.add_argument("file", help="Payload file, or - for stdin")
    sub.add_parser("health", help="Check the fetch sidecar")
    p = sub.add_parser("serve", help="Poll, drain and sweep until interrupted")
    p.add_argument("--interval", type=int, help="Seconds between drains")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.logging.level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        components = Components(settings)
    except StorageCorrupted as exc:
        logger.critical("%s", exc.display())
        return 2

    try:
        return HANDLERS[args.command](components, args)
    except StorageCorrupted as exc:
        logger.critical("%s", exc.display())
        return 2
    except IcsEngineError as exc:
        logger.error("%s", exc.display())
        print(exc.display(), file=sys.stderr)
        return 1
    finally:
        components.close()


if __name__ == "__main__":
    sys.exit(main())

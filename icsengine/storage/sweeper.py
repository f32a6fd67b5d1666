"""Background sweep of expired cache entries and confirmation tokens."""

import logging
import sqlite3
import threading
from pathlib import Path

from icsengine.core.clock import Clock, utc_now
from icsengine.core.errors import StorageCorrupted
from icsengine.storage.cache import ExtractionCache
from icsengine.storage.confirmations import ConfirmationStore

logger = logging.getLogger(__name__)


def sweep_once(cache: ExtractionCache, confirmations: ConfirmationStore) -> dict:
    return {
        "cache": cache.sweep_expired(),
        "confirmations": confirmations.sweep_expired(),
    }


class CacheSweeper(threading.Thread):
    """Runs ``sweep_once`` every ``interval_seconds`` on its own connections.

    A failed sweep (a locked database, say) is logged and tried again on the
    next tick; only an unreadable store stops the thread.
    """

    def __init__(self, db_path: Path, interval_seconds: float, clock: Clock = utc_now):
        super().__init__(name="cache-sweeper", daemon=True)
        self.db_path = Path(db_path)
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        cache = ExtractionCache(self.db_path, clock=self._clock)
        confirmations = ConfirmationStore(self.db_path, clock=self._clock)
        try:
            while not self._stop_event.wait(self.interval_seconds):
                try:
                    removed = sweep_once(cache, confirmations)
                except StorageCorrupted:
                    logger.exception("Cache store unreadable; sweeper stopping")
                    break
                except sqlite3.DatabaseError as exc:
                    logger.warning("Sweep failed, retrying next interval: %s", exc)
                    continue
                if removed["cache"] or removed["confirmations"]:
                    logger.info(
                        "Swept %d cache entries, %d confirmation tokens",
                        removed["cache"],
                        removed["confirmations"],
                    )
        finally:
            cache.close()
            confirmations.close()

"""Single-use confirmation tokens for promoting tentative events."""

import base64
import logging
import secrets
import threading
from pathlib import Path

from pydantic import BaseModel

from icsengine.core.clock import Clock, epoch, utc_now
from icsengine.core.errors import InvalidToken
from icsengine.storage.cache import connect

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS confirmations (
    token           TEXT PRIMARY KEY,
    job_id          TEXT,
    from_email      TEXT NOT NULL,
    to_email        TEXT NOT NULL,   -- confirmed recipient
    subject         TEXT NOT NULL,
    text_body       TEXT NOT NULL,
    filename        TEXT NOT NULL,
    content         TEXT NOT NULL,   -- base64 calendar artifact
    expires_at      REAL NOT NULL,
    created_at      REAL NOT NULL,
    consumed_at     REAL
);

CREATE INDEX IF NOT EXISTS idx_confirmations_expires_at ON confirmations(expires_at);
"""


def new_confirmation_token() -> str:
    return secrets.token_urlsafe(16)


class PendingConfirmation(BaseModel):
    """Everything needed to re-send an artifact to the confirmed address."""

    token: str
    job_id: str | None = None
    from_email: str
    to_email: str
    subject: str
    text_body: str
    filename: str
    content: bytes


class ConfirmationStore:
    """Tokens live beside the extraction cache and expire with it."""

    def __init__(self, db_path: Path, clock: Clock = utc_now):
        self.db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = connect(self.db_path)
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def register(self, pending: PendingConfirmation, expires_at: float) -> bool:
        """Store a new token. Returns ``False`` if the token was issued before.

        An existing token, used or not, is left as it is.
        """
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO confirmations
                   (token, job_id, from_email, to_email, subject, text_body,
                    filename, content, expires_at, created_at, consumed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                   ON CONFLICT(token) DO NOTHING""",
                (
                    pending.token,
                    pending.job_id,
                    pending.from_email,
                    pending.to_email,
                    pending.subject,
                    pending.text_body,
                    pending.filename,
                    base64.b64encode(pending.content).decode("ascii"),
                    expires_at,
                    epoch(self._clock),
                ),
            )
            self._conn.commit()
        return cur.rowcount == 1

    def claim(self, token: str) -> PendingConfirmation:
        """Mark a live token used and return its record, or raise ``InvalidToken``."""
        now = epoch(self._clock)
        with self._lock:
            cur = self._conn.execute(
                """UPDATE confirmations SET consumed_at = ?
                   WHERE token = ? AND consumed_at IS NULL AND expires_at > ?""",
                (now, token, now),
            )
            self._conn.commit()
            if cur.rowcount != 1:
                raise InvalidToken("confirmation token is unknown, expired or already used")
            row = self._conn.execute(
                "SELECT * FROM confirmations WHERE token = ?", (token,)
            ).fetchone()

        return PendingConfirmation(
            token=row["token"],
            job_id=row["job_id"],
            from_email=row["from_email"],
            to_email=row["to_email"],
            subject=row["subject"],
            text_body=row["text_body"],
            filename=row["filename"],
            content=base64.b64decode(row["content"]),
        )

    def release(self, token: str) -> None:
        """Undo a claim whose re-dispatch failed, so the token can be retried."""
        with self._lock:
            self._conn.execute(
                "UPDATE confirmations SET consumed_at = NULL WHERE token = ?", (token,)
            )
            self._conn.commit()

    def discard(self, token: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM confirmations WHERE token = ?", (token,))
            self._conn.commit()

    def sweep_expired(self) -> int:
        now = epoch(self._clock)
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM confirmations WHERE expires_at <= ?", (now,)
            )
            self._conn.commit()
        return cur.rowcount

    def close(self) -> None:
        self._conn.close()

"""Shared fixtures: a controllable clock, settings and on-disk stores."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from icsengine.core.config import (
    CacheSettings,
    ModelSettings,
    QueueSettings,
    RoutingSettings,
    Settings,
)
from icsengine.core.retry import NO_RETRY
from icsengine.storage.cache import ExtractionCache
from icsengine.storage.confirmations import ConfirmationStore

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def ollama_response(events: list[dict], confidence: float) -> MagicMock:
    """Mimic ``ollama.ChatResponse`` for a structured-output call."""
    resp = MagicMock()
    resp.message.content = json.dumps({"events": events, "confidence": confidence})
    return resp


def event_dict(**kw) -> dict:
    data = dict(
        summary="Riverside Jazz: Spring Concert",
        location="Riverside Hall, 1 Main St",
        description="An evening of jazz.",
        timezone="America/New_York",
        url="https://example.com/event",
        start_date="2025-04-12",
        start_time="19:30",
        end_date="2025-04-12",
        end_time="21:30",
    )
    data.update(kw)
    return data


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        routing=RoutingSettings(
            from_email="events@example.com",
            to_tentative_email="tentative@example.com",
            to_confirmed_email="confirmed@example.com",
            confirm_link_template="emailtoics://confirm?token={token}",
        ),
        model=ModelSettings(
            default_model="llama3.1:8b",
            allowed_models=["llama3.1:8b", "qwen3:8b"],
            confidence_threshold=0.7,
        ),
        cache=CacheSettings(db_path=tmp_path / "cache.db", ttl_seconds=3600),
        queue=QueueSettings(
            db_path=tmp_path / "queue.db",
            inbox_dir=tmp_path / "inbox",
            stale_after_seconds=600,
        ),
        retry=NO_RETRY,
    )


@pytest.fixture()
def cache(settings, clock):
    store = ExtractionCache(settings.cache.db_path, clock=clock)
    yield store
    store.close()


@pytest.fixture()
def confirmations(settings, clock):
    store = ConfirmationStore(settings.cache.db_path, clock=clock)
    yield store
    store.close()

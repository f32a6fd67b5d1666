"""Tests for single-use confirmation tokens."""

import pytest

from icsengine.core.errors import InvalidToken
from icsengine.storage.confirmations import PendingConfirmation


def _pending(token="tok-1", **kw):
    data = dict(
        token=token,
        job_id="job-1",
        from_email="events@example.com",
        to_email="confirmed@example.com",
        subject="Concert",
        text_body="Event: Concert\n",
        filename="concert.ics",
        content=b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
    )
    data.update(kw)
    return PendingConfirmation(**data)


def test_claim_returns_record(confirmations, clock):
    confirmations.register(_pending(), expires_at=clock().timestamp() + 60)
    record = confirmations.claim("tok-1")
    assert record.to_email == "confirmed@example.com"
    assert record.content == b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"


def test_second_claim_rejected(confirmations, clock):
    confirmations.register(_pending(), expires_at=clock().timestamp() + 60)
    confirmations.claim("tok-1")
    with pytest.raises(InvalidToken):
        confirmations.claim("tok-1")


def test_unknown_token_rejected(confirmations):
    with pytest.raises(InvalidToken):
        confirmations.claim("never-issued")


def test_expired_token_rejected(confirmations, clock):
    confirmations.register(_pending(), expires_at=clock().timestamp() + 60)
    clock.advance(60)
    with pytest.raises(InvalidToken):
        confirmations.claim("tok-1")


def test_release_allows_another_claim(confirmations, clock):
    confirmations.register(_pending(), expires_at=clock().timestamp() + 60)
    confirmations.claim("tok-1")
    confirmations.release("tok-1")
    assert confirmations.claim("tok-1").token == "tok-1"


def test_reregistering_used_token_keeps_it_used(confirmations, clock):
    assert confirmations.register(_pending(), expires_at=clock().timestamp() + 60)
    confirmations.claim("tok-1")
    assert not confirmations.register(
        _pending(subject="Again"), expires_at=clock().timestamp() + 600
    )
    with pytest.raises(InvalidToken):
        confirmations.claim("tok-1")


def test_sweep_expired(confirmations, clock):
    confirmations.register(_pending("a"), expires_at=clock().timestamp() + 10)
    confirmations.register(_pending("b"), expires_at=clock().timestamp() + 100)
    clock.advance(10)
    assert confirmations.sweep_expired() == 1
    assert confirmations.claim("b").token == "b"


def test_discard(confirmations, clock):
    confirmations.register(_pending(), expires_at=clock().timestamp() + 60)
    confirmations.discard("tok-1")
    with pytest.raises(InvalidToken):
        confirmations.claim("tok-1")

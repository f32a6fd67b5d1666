"""Tests for the cache-first event extraction agent."""

import json
from unittest.mock import MagicMock

import httpx
import pytest

from icsengine.agents.extractor import (
    EventExtractor,
    build_system_prompt,
    build_user_prompt,
    parse_model_output,
)
from icsengine.agents.models import ExtractionOutput, ExtractionRequest
from icsengine.agents.normalize import fingerprint, normalize_html, normalize_url
from icsengine.core.errors import ExtractionError, ValidationError
from icsengine.core.retry import RetryPolicy

from conftest import event_dict, ollama_response

PAGE = """<html><head><title>Spring Concert</title>
<meta property="og:site_name" content="Riverside Jazz">
<script>var tracking = 1;</script>
<script type="application/ld+json">{"@type": "Event", "name": "Spring Concert"}</script>
<style>body { color: red }</style></head>
<body><!-- nav --><h1 class="big">Spring Concert</h1><p>April 12, 7:30pm</p>
<svg><path d="M0"/></svg></body></html>"""


@pytest.fixture()
def client():
    c = MagicMock()
    c.chat.return_value = ollama_response([event_dict()], 0.95)
    return c


@pytest.fixture()
def make_extractor(settings, cache, clock, client):
    def _make(**kw):
        tokens = iter(f"token-{i}" for i in range(100))
        defaults = dict(
            cache=cache,
            settings=settings.model,
            ttl_seconds=settings.cache.ttl_seconds,
            retry=RetryPolicy(max_attempts=2, backoff_initial=0.0, backoff_max=0.0),
            client=client,
            clock=clock,
            token_factory=lambda: next(tokens),
        )
        defaults.update(kw)
        return EventExtractor(**defaults)

    return _make


def _request(**kw):
    data = dict(html=PAGE, url="https://example.com/event")
    data.update(kw)
    return ExtractionRequest(**data)


# ── Normalisation & Fingerprint ──────────────────────────────────────


def test_normalize_html_strips_noise_and_keeps_header():
    text = normalize_html(PAGE, max_chars=10000)
    assert "Site name: Riverside Jazz" in text
    assert "Page title: Spring Concert" in text
    assert '"@type": "Event"' in text
    assert "tracking" not in text
    assert "color: red" not in text
    assert "<svg" not in text
    assert "nav" not in text
    assert 'class="big"' not in text
    assert "April 12, 7:30pm" in text


def test_normalize_html_truncates():
    text = normalize_html("<p>" + "x" * 5000 + "</p>", max_chars=1000)
    assert len(text) <= 1000 + len("\n[truncated]")
    assert text.endswith("[truncated]")


def test_normalize_url():
    assert normalize_url("HTTPS://Example.COM:443/a?b=1#frag") == "https://example.com/a?b=1"
    assert normalize_url("http://example.com") == "http://example.com/"
    assert normalize_url("http://example.com:8080/x") == "http://example.com:8080/x"


def test_fingerprint_is_deterministic():
    a = fingerprint("https://example.com/e", "text", "instr", "m")
    b = fingerprint("https://EXAMPLE.com/e#top", " text ", "instr", "m")
    assert a == b
    assert len(a) == 64


@pytest.mark.parametrize(
    "changed",
    [
        dict(url="https://example.com/other"),
        dict(text="different"),
        dict(instructions="only the first day"),
        dict(model="qwen3:8b"),
        dict(multiday=True),
    ],
)
def test_fingerprint_changes_with_each_input(changed):
    base = dict(url="https://example.com/e", text="t", instructions="", model="m", multiday=False)
    assert fingerprint(**base) != fingerprint(**{**base, **changed})


# ── Prompt Builder ───────────────────────────────────────────────────


def test_system_prompt_toggles():
    single = build_system_prompt(tentative=False, multiday=False, default_timezone="Europe/Paris")
    multi = build_system_prompt(tentative=True, multiday=True, default_timezone="Europe/Paris")
    assert "exactly one event" in single
    assert "Confirmed" in single
    assert "Europe/Paris" in single
    assert "multiple events" in multi
    assert "Tentative" in multi
    assert "ticketing platform" in single


def test_user_prompt_includes_instructions_and_url():
    req = _request(instructions="  Only the matinee  ", text="Selected bit")
    prompt = build_user_prompt(req, "PAGE CONTENT")
    assert prompt.startswith("Special instructions: Only the matinee")
    assert "https://example.com/event" in prompt
    assert "Selected bit" in prompt
    assert "PAGE CONTENT" in prompt


# ── Output Parsing ───────────────────────────────────────────────────


def test_parse_accepts_code_fence():
    raw = "```json\n" + json.dumps({"events": [event_dict()], "confidence": 0.8}) + "\n```"
    out = parse_model_output(raw, multiday=False)
    assert out.events[0].summary == "Riverside Jazz: Spring Concert"


def test_parse_rejects_schema_mismatch():
    raw = json.dumps({"events": [{"summary": "x", "start_date": "April 12"}], "confidence": 0.8})
    with pytest.raises(ExtractionError, match="start_date"):
        parse_model_output(raw, multiday=False)


def test_parse_rejects_invalid_date():
    raw = json.dumps({"events": [event_dict(start_date="2025-02-30")], "confidence": 0.8})
    with pytest.raises(ExtractionError):
        parse_model_output(raw, multiday=False)


def test_parse_rejects_many_events_without_multiday():
    raw = json.dumps({"events": [event_dict(), event_dict()], "confidence": 0.8})
    with pytest.raises(ExtractionError, match="exactly one"):
        parse_model_output(raw, multiday=False)
    assert len(parse_model_output(raw, multiday=True).events) == 2


def test_parse_rejects_empty():
    with pytest.raises(ExtractionError, match="empty"):
        parse_model_output("   ", multiday=False)


def test_blank_times_become_all_day():
    raw = json.dumps(
        {"events": [event_dict(start_time="", end_time=None)], "confidence": 0.8}
    )
    event = parse_model_output(raw, multiday=False).events[0]
    assert event.is_all_day


# ── Extraction ───────────────────────────────────────────────────────


def test_high_confidence_no_review(make_extractor, client):
    result = make_extractor().extract(_request())
    assert result.confidence == 0.95
    assert not result.needs_review
    assert result.confirmation_token is None
    assert result.model == "llama3.1:8b"

    kwargs = client.chat.call_args.kwargs
    assert kwargs["model"] == "llama3.1:8b"
    assert kwargs["format"] == ExtractionOutput.model_json_schema()
    assert kwargs["think"] is False
    assert kwargs["messages"][0]["role"] == "system"
    assert "tracking" not in kwargs["messages"][1]["content"]


def test_low_confidence_needs_review_with_token(make_extractor, client):
    client.chat.return_value = ollama_response([event_dict()], 0.4)
    result = make_extractor().extract(_request())
    assert result.needs_review
    assert result.confirmation_token == "token-0"


def test_review_first_forces_review(make_extractor):
    result = make_extractor().extract(_request(review_first=True))
    assert result.confidence == 0.95
    assert result.needs_review
    assert result.confirmation_token


def test_second_call_hits_cache(make_extractor, client):
    extractor = make_extractor()
    first = extractor.extract(_request())
    second = extractor.extract(_request())
    assert client.chat.call_count == 1
    assert first == second
    assert first.model_dump_json() == second.model_dump_json()


def test_cached_review_result_returned_unchanged(make_extractor, client):
    client.chat.return_value = ollama_response([event_dict()], 0.4)
    extractor = make_extractor()
    first = extractor.extract(_request())
    second = extractor.extract(_request())
    assert second.confirmation_token == first.confirmation_token
    assert client.chat.call_count == 1


def test_review_first_on_cached_confident_result(make_extractor, client):
    extractor = make_extractor()
    extractor.extract(_request())
    forced = extractor.extract(_request(review_first=True))
    assert client.chat.call_count == 1
    assert forced.needs_review
    assert forced.confirmation_token


def test_cache_expiry_triggers_new_call(make_extractor, client, clock, settings):
    extractor = make_extractor()
    extractor.extract(_request())
    clock.advance(settings.cache.ttl_seconds)
    extractor.extract(_request())
    assert client.chat.call_count == 2


def test_multiday_preserves_order(make_extractor, client):
    events = [
        event_dict(summary="Day 1", start_date="2025-04-12"),
        event_dict(summary="Day 3", start_date="2025-04-14"),
        event_dict(summary="Day 2", start_date="2025-04-13"),
    ]
    client.chat.return_value = ollama_response(events, 0.9)
    result = make_extractor().extract(_request(multiday=True))
    assert [e.summary for e in result.events] == ["Day 1", "Day 3", "Day 2"]


def test_schema_failure_not_retried_and_not_cached(make_extractor, client, cache):
    client.chat.return_value = MagicMock(message=MagicMock(content='{"events": []}'))
    extractor = make_extractor()
    with pytest.raises(ExtractionError):
        extractor.extract(_request())
    assert client.chat.call_count == 1
    assert cache.stats()["total"] == 0


def test_transport_error_retried(make_extractor, client):
    good = client.chat.return_value
    client.chat.side_effect = [httpx.ConnectError("refused"), good]
    result = make_extractor().extract(_request())
    assert client.chat.call_count == 2
    assert result.events


def test_timeout_becomes_extraction_error(make_extractor, client):
    client.chat.side_effect = httpx.ReadTimeout("slow")
    with pytest.raises(ExtractionError, match="timed out"):
        make_extractor().extract(_request())


def test_reasoning_effort_passed_as_think(make_extractor, client):
    make_extractor().extract(_request(), reasoning_effort="high")
    assert client.chat.call_args.kwargs["think"] == "high"


def test_screenshot_attached_as_image(make_extractor, client):
    make_extractor().extract(_request(html=None, text="Concert Friday", screenshot="aGVsbG8="))
    user = client.chat.call_args.kwargs["messages"][1]
    assert user["images"] == ["aGVsbG8="]


def test_disallowed_model_rejected(make_extractor, client):
    with pytest.raises(ValidationError):
        make_extractor().extract(_request(), model="gpt-4o")
    client.chat.assert_not_called()


def test_corrupt_cached_result_is_dropped(make_extractor, client, cache):
    extractor = make_extractor()
    req = _request()
    key = extractor.fingerprint_for(req, "llama3.1:8b")
    cache.set(key, {"unexpected": True}, ttl_seconds=60)

    result = extractor.extract(req)

    assert client.chat.call_count == 1
    assert result.events

"""Event extraction agent: cache-first structured output via Ollama."""

import logging
import re
import time
from typing import Callable

import httpx
import ollama
import pydantic

from icsengine.agents.models import (
    ExtractionOutput,
    ExtractionRequest,
    ExtractionResult,
)
from icsengine.agents.normalize import fingerprint, normalize_html
from icsengine.core.clock import Clock, utc_now
from icsengine.core.config import ModelSettings, ReasoningEffort
from icsengine.core.errors import ExtractionError, ValidationError
from icsengine.core.retry import RetryPolicy
from icsengine.storage.cache import ExtractionCache
from icsengine.storage.confirmations import new_confirmation_token

logger = logging.getLogger(__name__)

_LOG_LIMIT = 2000
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")

_TRANSIENT = (httpx.TransportError, ConnectionError)


def _truncate(text: str, limit: int = _LOG_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... (truncated, total: {len(text)})"


# ── Prompt Builder ───────────────────────────────────────────────────


def build_system_prompt(tentative: bool, multiday: bool, default_timezone: str) -> str:
    """System prompt carrying the extraction rules and the job's toggles."""
    if multiday:
        cardinality = (
            "Focus on the PRIMARY event on the page. Only if there is no clear "
            "primary event, extract multiple events, in the order they occur."
        )
    else:
        cardinality = "Extract exactly one event."
    status = "Tentative" if tentative else "Confirmed"

    return f"""You are an assistant that extracts event information from web content and converts it to structured JSON for calendar creation.

Extract event details from the provided content. Pay attention to:
- Use ISO 8601 dates (YYYY-MM-DD) and 24-hour times (HH:MM).
- For all-day events, set start_time and end_time to null.
- If no end time is given, make a reasonable estimate.
- Default timezone is {default_timezone} unless the content says otherwise. Use IANA names (e.g. Europe/Paris) or UTC.
- Events: {cardinality}
- Event status: {status}. Do not add a "Status:" line to the description.
- Title prefix: find the presenting organisation (og:site_name, the site header or phrases like "X presents ...") and set the summary to "[Group]: [Event Title]" unless the prefix is already present. Never use a ticketing platform (Eventbrite, Ticketmaster, ...) as the group; use the organizer named on the page or omit the prefix.
- Concerts: include the complete program in the description under a "Program:" heading, in page order, with composers and full work titles.
- Location: if both streaming and in-person options exist, use the in-person venue name and address. Use a URL as location only when no physical venue appears anywhere.
- Always put the source URL in the "url" field and end the description with "\\n\\nSource: [URL]".
- Do not browse or fetch anything. Use only the provided content and the optional screenshot.
- Report "confidence" between 0.0 and 1.0 for how certain you are that date, time and location are right.

Respond ONLY with the requested JSON."""


def build_user_prompt(request: ExtractionRequest, content: str) -> str:
    """User message: special instructions, source URL, then the content."""
    parts: list[str] = []
    if request.instructions.strip():
        parts.append(f"Special instructions: {request.instructions.strip()}")
    if request.url:
        parts.append(
            f"Source URL (MUST be included in url field and description): {request.url}"
        )
    if request.title:
        parts.append(f"Shared title: {request.title}")
    if request.text:
        parts.append(f"Selected text:\n{request.text}")
    if content:
        parts.append(f"Content to analyze:\n{content}")
    elif request.screenshot:
        parts.append("Content to analyze: see the attached screenshot.")
    return "\n\n".join(parts)


def _think_option(effort: ReasoningEffort) -> bool | str:
    return False if effort == "none" else effort


# ── Output Parsing ───────────────────────────────────────────────────


def parse_model_output(raw: str, multiday: bool) -> ExtractionOutput:
    """Validate raw model output against the event schema.

    Code fences are tolerated. Anything else that does not match raises
    ``ExtractionError``; it is not retried.
    """
    cleaned = _FENCE_RE.sub("", raw.strip()).strip()
    if not cleaned:
        raise ExtractionError("model returned empty content")

    try:
        output = ExtractionOutput.model_validate_json(cleaned)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"]) or "response"
        raise ExtractionError(
            f"model output failed schema validation at {where}: {first['msg']}"
        ) from exc

    if not multiday and len(output.events) != 1:
        raise ExtractionError(
            f"expected exactly one event, model returned {len(output.events)}"
        )
    return output


# ── Extractor ────────────────────────────────────────────────────────


class EventExtractor:
    """Turn fetched content into an ``ExtractionResult``.

    Results are cached by fingerprint, so identical inputs cost at most one
    model call while the entry lives.
    """

    def __init__(
        self,
        cache: ExtractionCache,
        settings: ModelSettings,
        ttl_seconds: int,
        retry: RetryPolicy | None = None,
        client: ollama.Client | None = None,
        clock: Clock = utc_now,
        token_factory: Callable[[], str] = new_confirmation_token,
    ):
        self.cache = cache
        self.settings = settings
        self.ttl_seconds = ttl_seconds
        self.retry = retry or RetryPolicy()
        self._client = client or ollama.Client(
            host=settings.host, timeout=settings.timeout_seconds
        )
        self._clock = clock
        self._token_factory = token_factory

    def fingerprint_for(self, request: ExtractionRequest, model: str) -> str:
        text = request.text
        if not request.url and not text:
            text = request.html
        return fingerprint(request.url, text, request.instructions, model, request.multiday)

    def extract(
        self,
        request: ExtractionRequest,
        model: str | None = None,
        reasoning_effort: ReasoningEffort | None = None,
    ) -> ExtractionResult:
        model = model or self.settings.default_model
        if self.settings.allowed_models and model not in self.settings.allowed_models:
            raise ValidationError(f"model '{model}' is not in the allowed list")
        effort = reasoning_effort or self.settings.reasoning_effort

        key = self.fingerprint_for(request, model)
        cached = self._lookup(key)
        if cached is not None:
            logger.info("Extraction cache hit %s (model=%s)", key[:12], model)
            if request.review_first and not cached.needs_review:
                return cached.model_copy(
                    update={"needs_review": True, "confirmation_token": self._token_factory()}
                )
            return cached

        logger.info("Extraction cache miss %s (model=%s)", key[:12], model)
        output = self._call_model(request, model, effort)

        needs_review = (
            output.confidence < self.settings.confidence_threshold or request.review_first
        )
        result = ExtractionResult(
            events=output.events,
            confidence=output.confidence,
            source=request.source,
            model=model,
            timestamp=self._clock(),
            needs_review=needs_review,
            confirmation_token=self._token_factory() if needs_review else None,
        )
        self.cache.set(key, result.model_dump(mode="json"), self.ttl_seconds)
        logger.info(
            "Extracted %d event(s), confidence=%.2f, needs_review=%s",
            len(result.events),
            result.confidence,
            result.needs_review,
        )
        return result

    def _lookup(self, key: str) -> ExtractionResult | None:
        value = self.cache.get(key)
        if value is None:
            return None
        try:
            return ExtractionResult.model_validate(value)
        except pydantic.ValidationError:
            logger.warning("Cached extraction %s no longer matches schema; dropping", key[:12])
            self.cache.delete(key)
            return None

    # ── Model Call ───────────────────────────────────────────

    def _call_model(
        self, request: ExtractionRequest, model: str, effort: ReasoningEffort
    ) -> ExtractionOutput:
        content = ""
        if request.html:
            content = normalize_html(request.html, self.settings.max_content_chars)

        user_message: dict = {"role": "user", "content": build_user_prompt(request, content)}
        if request.screenshot:
            user_message["images"] = [request.screenshot]

        messages = [
            {
                "role": "system",
                "content": build_system_prompt(
                    request.tentative, request.multiday, self.settings.default_timezone
                ),
            },
            user_message,
        ]

        logger.info(
            "Model call model=%s reasoning=%s content_len=%d image=%s instructions_len=%d",
            model,
            effort,
            len(content),
            "yes" if request.screenshot else "no",
            len(request.instructions),
        )
        t0 = time.monotonic()
        try:
            response = self.retry.call(
                self._client.chat,
                _TRANSIENT,
                model=model,
                messages=messages,
                format=ExtractionOutput.model_json_schema(),
                options={"temperature": 0.1},
                think=_think_option(effort),
            )
        except httpx.TimeoutException as exc:
            raise ExtractionError(
                f"model call timed out after {self.settings.timeout_seconds:g}s"
            ) from exc
        except ollama.ResponseError as exc:
            raise ExtractionError(f"model error ({exc.status_code}): {exc.error}") from exc
        except (httpx.TransportError, ConnectionError) as exc:
            raise ExtractionError(f"model host unreachable: {exc}") from exc

        raw = response.message.content or ""
        logger.info("Model answered in %.2fs (%d chars)", time.monotonic() - t0, len(raw))
        logger.debug("Model raw output: %s", _truncate(raw))
        return parse_model_output(raw, request.multiday)

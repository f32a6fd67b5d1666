"""Calendar artifact generator: extracted events to an RFC 5545 VCALENDAR.

Output is a pure function of (events, config, stamp). The generation stamp
is supplied by the caller so identical inputs give identical bytes.
"""

import hashlib
import html
import json
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from icsengine.agents.models import ExtractedEvent
from icsengine.core.errors import ValidationError

logger = logging.getLogger(__name__)

CRLF = "\r\n"
MAX_LINE_OCTETS = 75
DEFAULT_DURATION = timedelta(hours=1)
UID_DOMAIN = "icsengine"

_UTC_NAMES = {"UTC", "Z", "GMT", "ETC/UTC"}
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class IcsConfig(BaseModel):
    method: Literal["PUBLISH", "REQUEST"] = "PUBLISH"
    timezone: str = "America/New_York"
    prod_id: str = "-//ICS Engine//Share to Calendar//EN"
    include_html_description: bool = True
    tentative: bool = False
    organizer: Optional[str] = None


class CalendarArtifact(BaseModel):
    content: bytes
    filename: str
    content_type: str = "text/calendar"
    batch_id: str = ""


# ── Text helpers ─────────────────────────────────────────────────────


def escape_text(value: str) -> str:
    """Escape a TEXT value (backslash first, then ; , and newlines)."""
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
        .replace("\r", "\\n")
    )


def fold_line(line: str) -> str:
    """Fold a content line at 75 octets without splitting a UTF-8 character."""
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return line

    parts: list[str] = []
    current = ""
    current_len = 0
    limit = MAX_LINE_OCTETS
    for ch in line:
        size = len(ch.encode("utf-8"))
        if current_len + size > limit:
            parts.append(current)
            current, current_len = ch, size
            # continuation lines start with a space, which counts
            limit = MAX_LINE_OCTETS - 1
        else:
            current += ch
            current_len += size
    parts.append(current)
    return (CRLF + " ").join(parts)


def _slug(text: str) -> str:
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:50].rstrip("-") or "event"


# ── Date handling ────────────────────────────────────────────────────


def _is_utc(tz_name: str) -> bool:
    return tz_name.strip().upper() in _UTC_NAMES


def _resolve_timezone(event: ExtractedEvent, default: str) -> str:
    name = event.timezone.strip() or default
    if _is_utc(name):
        return "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r on '%s'; using %s", name, event.summary, default)
        return "UTC" if _is_utc(default) else default
    return name


def _combine(day: str, hhmm: str) -> datetime:
    hours, minutes = (int(p) for p in hhmm.split(":"))
    return datetime.combine(date.fromisoformat(day), datetime.min.time()).replace(
        hour=hours, minute=minutes
    )


def _timed_range(event: ExtractedEvent) -> tuple[datetime, datetime]:
    start = _combine(event.start_date, event.start_time)
    if event.end_time is None:
        if event.end_date and event.end_date != event.start_date:
            end = _combine(event.end_date, event.start_time)
        else:
            end = start + DEFAULT_DURATION
    else:
        end = _combine(event.end_date or event.start_date, event.end_time)
        if end <= start and event.end_date is None:
            # e.g. 22:00-01:00 without an explicit end date
            end += timedelta(days=1)
    if end <= start:
        end = start + DEFAULT_DURATION
    return start, end


def _date_lines(event: ExtractedEvent, tz_name: str) -> list[str]:
    if event.is_all_day:
        start = date.fromisoformat(event.start_date)
        last = date.fromisoformat(event.end_date) if event.end_date else start
        if last < start:
            last = start
        # DTEND is exclusive for all-day events
        return [
            f"DTSTART;VALUE=DATE:{start:%Y%m%d}",
            f"DTEND;VALUE=DATE:{last + timedelta(days=1):%Y%m%d}",
        ]

    start, end = _timed_range(event)
    if tz_name == "UTC":
        return [f"DTSTART:{start:%Y%m%dT%H%M%S}Z", f"DTEND:{end:%Y%m%dT%H%M%S}Z"]
    return [
        f"DTSTART;TZID={tz_name}:{start:%Y%m%dT%H%M%S}",
        f"DTEND;TZID={tz_name}:{end:%Y%m%dT%H%M%S}",
    ]


# ── Generator ────────────────────────────────────────────────────────


def batch_identity(events: list[ExtractedEvent], config: IcsConfig) -> str:
    """Hash of the event set; shared by every VEVENT in one artifact."""
    data = {
        "events": [e.model_dump(mode="json") for e in events],
        "method": config.method,
        "timezone": config.timezone,
        "tentative": config.tentative,
    }
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()[:32]


def _description(event: ExtractedEvent) -> str:
    text = event.description.strip()
    if event.url and event.url not in text:
        text = f"{text}\n\nSource: {event.url}" if text else f"Source: {event.url}"
    return text


def _vevent(
    event: ExtractedEvent,
    index: int,
    batch_id: str,
    linked: bool,
    config: IcsConfig,
    stamp: str,
) -> list[str]:
    tz_name = _resolve_timezone(event, config.timezone)
    lines = [
        "BEGIN:VEVENT",
        f"UID:{batch_id}-{index}@{UID_DOMAIN}",
        f"DTSTAMP:{stamp}",
        *_date_lines(event, tz_name),
        f"SUMMARY:{escape_text(event.summary)}",
    ]
    if event.location:
        lines.append(f"LOCATION:{escape_text(event.location)}")

    description = _description(event)
    if description:
        lines.append(f"DESCRIPTION:{escape_text(description)}")
        if config.include_html_description:
            body = html.escape(description).replace("\n", "<br>")
            lines.append(
                "X-ALT-DESC;FMTTYPE=text/html:"
                + escape_text(f"<html><body>{body}</body></html>")
            )
    if event.url:
        lines.append(f"URL;VALUE=URI:{event.url}")
    if config.organizer:
        lines.append(f"ORGANIZER:mailto:{config.organizer}")
    if linked:
        lines.append(f"RELATED-TO;RELTYPE=SIBLING:{batch_id}@{UID_DOMAIN}")
    lines += [
        f"STATUS:{'TENTATIVE' if config.tentative else 'CONFIRMED'}",
        "SEQUENCE:0",
        "TRANSP:OPAQUE",
        "END:VEVENT",
    ]
    return lines


def generate_ics(
    events: list[ExtractedEvent], config: IcsConfig, stamp: datetime
) -> CalendarArtifact:
    """Serialize ``events`` into one VCALENDAR, preserving their order.

    Raises ``ValidationError`` for an empty event list or a naive stamp.
    """
    if not events:
        raise ValidationError("cannot build a calendar without events")
    if stamp.tzinfo is None:
        raise ValidationError("generation stamp must be timezone-aware")

    dtstamp = stamp.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    batch_id = batch_identity(events, config)
    linked = len(events) > 1

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{config.prod_id}",
        "CALSCALE:GREGORIAN",
        f"METHOD:{config.method}",
    ]
    for index, event in enumerate(events):
        lines += _vevent(event, index, batch_id, linked, config, dtstamp)
    lines.append("END:VCALENDAR")

    body = CRLF.join(fold_line(line) for line in lines) + CRLF
    filename = f"{_slug(events[0].summary)}.ics"
    logger.debug("Built calendar %s with %d event(s)", filename, len(events))
    return CalendarArtifact(
        content=body.encode("utf-8"), filename=filename, batch_id=batch_id
    )

"""Export convenience function."""

import logging

from icsengine.agents.models import ExtractionResult
from icsengine.core.config import CalendarSettings
from icsengine.exporters.ics import CalendarArtifact, IcsConfig, generate_ics

logger = logging.getLogger(__name__)

__all__ = ["CalendarArtifact", "IcsConfig", "export_calendar", "generate_ics"]


def export_calendar(
    result: ExtractionResult,
    calendar: CalendarSettings,
    tentative: bool,
    organizer: str | None = None,
) -> CalendarArtifact:
    """Build the artifact for one extraction, stamped with its timestamp."""
    config = IcsConfig(
        method=calendar.method,
        timezone=calendar.timezone,
        prod_id=calendar.prod_id,
        include_html_description=calendar.include_html_description,
        tentative=tentative,
        organizer=organizer or None,
    )
    artifact = generate_ics(result.events, config, result.timestamp)
    logger.info(
        "Calendar artifact %s (%d bytes, %d event(s))",
        artifact.filename,
        len(artifact.content),
        len(result.events),
    )
    return artifact

"""Content fetcher: SSRF-guarded client for the headless-browser sidecar."""

import logging
import time

import requests

from icsengine.core.config import FetcherSettings
from icsengine.core.errors import FetchBlocked, ValidationError
from icsengine.core.retry import RetryPolicy
from icsengine.fetch.guard import validate_url
from icsengine.fetch.models import FetchResult, HealthStatus

logger = logging.getLogger(__name__)

USER_AGENT = "ics-engine/1.0"

_TRANSIENT = (requests.ConnectionError, requests.Timeout)


class SidecarError(Exception):
    """Non-200 answer from the sidecar."""


class ContentFetcher:
    """Retrieve HTML, title and optional screenshot for a URL via the sidecar.

    ``fetch`` never raises: validation and network failures come back as a
    ``FetchResult`` with ``error`` and ``error_kind`` set and empty content.
    """

    def __init__(
        self,
        settings: FetcherSettings,
        retry: RetryPolicy | None = None,
        session: requests.Session | None = None,
    ):
        self.settings = settings
        self.retry = retry or RetryPolicy()
        self._session = session or requests.Session()
        self._base_url = settings.sidecar_url.rstrip("/")

    # ── Fetch ────────────────────────────────────────────────

    def fetch(
        self,
        url: str,
        include_screenshot: bool | None = None,
        timeout_ms: int | None = None,
    ) -> FetchResult:
        try:
            validate_url(url)
        except FetchBlocked as exc:
            logger.warning("Fetch rejected by SSRF policy (%s): %s", exc.message, url)
            return FetchResult(url=url, error=exc.message, error_kind="blocked")
        except ValidationError as exc:
            logger.warning("Fetch rejected, malformed URL: %s", url)
            return FetchResult(url=url, error=exc.message, error_kind="invalid")

        if include_screenshot is None:
            include_screenshot = self.settings.include_screenshot
        timeout = (timeout_ms or self.settings.timeout_ms) / 1000

        payload = {
            "url": url,
            "screenshot": include_screenshot,
            "wait": self.settings.render_wait_ms,
            "viewport": self.settings.viewport.model_dump(),
        }

        t0 = time.monotonic()
        try:
            data = self.retry.call(self._post_fetch, _TRANSIENT, payload, timeout)
        except requests.Timeout:
            logger.error("Fetch timed out after %.1fs: %s", timeout, url)
            return FetchResult(
                url=url,
                error=f"fetch timed out after {timeout:g}s",
                error_kind="timeout",
            )
        except (requests.RequestException, SidecarError, ValueError) as exc:
            logger.error("Fetch failed for %s: %s", url, exc)
            return FetchResult(url=url, error=str(exc), error_kind="failure")

        logger.info(
            "Fetched %s in %.2fs (html_len=%d, screenshot=%s)",
            url,
            time.monotonic() - t0,
            len(data.get("html") or ""),
            "yes" if data.get("screenshot") else "no",
        )
        return FetchResult(
            html=data.get("html") or "",
            title=data.get("title") or "",
            url=data.get("url") or url,
            screenshot=data.get("screenshot") or None,
        )

    def _post_fetch(self, payload: dict, timeout: float) -> dict:
        response = self._session.post(
            f"{self._base_url}/fetch",
            json=payload,
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            timeout=timeout,
        )
        if response.status_code != 200:
            raise SidecarError(
                f"sidecar request failed: {response.status_code} {response.reason}"
            )
        data = response.json()
        if not isinstance(data, dict):
            raise SidecarError("sidecar returned a non-object body")
        return data

    # ── Health ───────────────────────────────────────────────

    def health_check(self) -> HealthStatus:
        """Liveness of the sidecar. Used by monitoring, not by the pipeline."""
        try:
            response = self._session.get(
                f"{self._base_url}/health",
                timeout=self.settings.health_timeout_ms / 1000,
            )
        except requests.RequestException as exc:
            return HealthStatus(healthy=False, error=str(exc))
        if response.status_code != 200:
            return HealthStatus(healthy=False, error=f"HTTP {response.status_code}")
        return HealthStatus(healthy=True)

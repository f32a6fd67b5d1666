"""Retry policy for network collaborators (sidecar, model host, email provider)."""

import logging

from pydantic import BaseModel, Field
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Max attempts plus exponential backoff, applied to transient errors only."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_initial: float = Field(default=1.0, ge=0.0)
    backoff_max: float = Field(default=10.0, ge=0.0)

    def retrying(self, *transient: type[BaseException]) -> Retrying:
        """Build a tenacity ``Retrying`` that re-raises the last error."""
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_initial, max=self.backoff_max
            ),
            retry=retry_if_exception_type(transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def call(self, func, transient: tuple[type[BaseException], ...], *args, **kwargs):
        """Call ``func`` under this policy."""
        return self.retrying(*transient)(func, *args, **kwargs)


NO_RETRY = RetryPolicy(max_attempts=1, backoff_initial=0.0, backoff_max=0.0)

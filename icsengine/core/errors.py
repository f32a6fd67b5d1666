"""Error kinds raised by the extraction-and-dispatch pipeline."""


class IcsEngineError(Exception):
    """Base class for every pipeline failure.

    ``str(exc)`` is the human-readable message stored on a failed job.
    """

    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def display(self) -> str:
        return f"{self.kind}: {self.message}"


class ValidationError(IcsEngineError):
    """Bad URL or bad payload shape. Fails fast, never retried."""

    kind = "ValidationError"


class FetchBlocked(IcsEngineError):
    """URL rejected by the SSRF policy before any network call."""

    kind = "FetchBlocked"


class FetchTimeout(IcsEngineError):
    kind = "FetchTimeout"


class FetchFailure(IcsEngineError):
    kind = "FetchFailure"


class ExtractionError(IcsEngineError):
    """Model call failed or its output did not match the event schema."""

    kind = "ExtractionError"


class DispatchFailure(IcsEngineError):
    kind = "DispatchFailure"


class InvalidToken(IcsEngineError):
    """Confirmation token unknown, expired or already used."""

    kind = "InvalidToken"


class StorageCorrupted(IcsEngineError):
    """Queue or cache store unreadable. Fatal to the process."""

    kind = "StorageCorrupted"

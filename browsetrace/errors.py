"""Error kinds raised along the ingestion path."""


class BrowseTraceError(Exception):
    """Base class for agent errors."""


class DecodeError(BrowseTraceError):
    """Request body is not a well-formed batch document."""


class ValidationError(BrowseTraceError):
    """A decoded event violates a domain rule."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class StoreOpenError(BrowseTraceError):
    """Database could not be opened or its schema created."""


class WriteError(BrowseTraceError):
    """A batch write failed at some stage of the transaction."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"failed to {stage}: {message}")
        self.stage = stage

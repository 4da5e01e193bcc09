class RunsheetError(Exception):
    """Base error for all user-facing runsheet exceptions."""


class ConfigurationError(RunsheetError):
    """Raised when configuration is invalid or incomplete."""


class ProjectNotInitializedError(RunsheetError):
    """Raised when .runsheet metadata is missing."""


class ValidationError(RunsheetError):
    """Raised when model invariants fail."""


class RunsheetNotFoundError(RunsheetError):
    """Raised when a runsheet record cannot be found."""


class AlreadyRunningError(RunsheetError):
    """Raised when an analysis job is started while another is active."""


class ExtractionFailedError(RunsheetError):
    """Raised when a document cannot be analyzed."""


class AmbiguousDocumentError(RunsheetError):
    """Raised when a document holds more than one instrument and needs a manual split."""

    def __init__(self, instrument_count: int, message: str | None = None) -> None:
        self.instrument_count = instrument_count
        super().__init__(
            message or f"Multiple instruments detected ({instrument_count}); manual split required."
        )


class PersistenceFailedError(RunsheetError):
    """Raised when a runsheet cannot be saved to the datastore."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class NoAuthenticatedUserError(RunsheetError):
    """Raised when a save is attempted without a signed-in user."""


class StorageQuotaError(RunsheetError):
    """Raised when a local key-value write exceeds its quota."""

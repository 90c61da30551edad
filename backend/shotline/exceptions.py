"""Custom exceptions for the shotline job engine.

Every exception carries a machine-readable code so that failures persisted
onto records and logged by the worker runtime can be grouped.
"""


class ShotlineError(Exception):
    """Base exception for all shotline errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        super().__init__(self.message)


# =============================================================================
# Lifecycle Errors
# =============================================================================


class RegistryClosedError(ShotlineError):
    """A queue was requested while the registry is shutting down."""

    code = "REGISTRY_CLOSED"
    message = "Queue registry is shutting down"

    def __init__(self, queue_name: str | None = None):
        message = f'Cannot create queue "{queue_name}" during shutdown' if queue_name else self.message
        super().__init__(message)


class WorkerClosedError(ShotlineError):
    """A worker was created, or a job delivered, after shutdown began."""

    code = "WORKER_CLOSED"
    message = "Worker is shutting down"

    def __init__(self, worker_name: str | None = None, *, creating: bool = False):
        if worker_name and creating:
            message = f'Cannot create worker "{worker_name}" during shutdown'
        elif worker_name:
            message = f'Worker "{worker_name}" is closed'
        else:
            message = self.message
        super().__init__(message)


# =============================================================================
# Pipeline Errors
# =============================================================================


class StageFailedError(ShotlineError):
    """A caption pipeline stage ended unsuccessfully.

    The message is persisted verbatim onto the project.
    """

    code = "STAGE_FAILED"
    message = "Pipeline stage failed"

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(message)


class PipelineCancelledError(StageFailedError):
    """The project was marked failed from outside while a stage was waiting."""

    code = "PIPELINE_CANCELLED"

    def __init__(self, stage: str):
        super().__init__(stage, f"Cancelled during {stage}")


# =============================================================================
# External Provider Errors
# =============================================================================


class ProviderError(ShotlineError):
    """Base class for failures reported by an external provider."""

    code = "PROVIDER_ERROR"


class RenderProviderError(ProviderError):
    code = "RENDER_PROVIDER_ERROR"
    message = "Render provider request failed"


class TranscriptionProviderError(ProviderError):
    code = "TRANSCRIPTION_PROVIDER_ERROR"
    message = "Transcription provider request failed"


class WebhookDeliveryError(ProviderError):
    """Receiver answered with a retryable status."""

    code = "WEBHOOK_DELIVERY_FAILED"
    message = "Webhook delivery failed"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ImportSourceError(ProviderError):
    """Remote file could not be fetched for import."""

    code = "IMPORT_SOURCE_ERROR"
    message = "Import failed"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

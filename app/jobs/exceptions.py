class DownloadServiceError(Exception):
    """Base exception for all download service errors."""


class InvalidInputError(DownloadServiceError):
    """Raised when a submission is malformed or out of range. No job is created."""


class JobNotFoundError(DownloadServiceError):
    """Raised when a job id does not refer to a known job."""


class InvalidTransitionError(DownloadServiceError):
    """Raised when an update would violate the job state machine."""


class ProcessingError(DownloadServiceError):
    """Base exception for failures while executing a queue entry."""


class TransientProcessingError(ProcessingError):
    """Raised when a batch fails; the scheduler retries the entry."""


class TerminalProcessingError(ProcessingError):
    """Raised when retrying cannot help; the job goes straight to failed."""


class StreamDeliveryError(DownloadServiceError):
    """Raised when an event cannot be delivered to one push subscriber."""

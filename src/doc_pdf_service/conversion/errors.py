from enum import Enum


class FailureKind(str, Enum):
    DOWNLOAD = "DownloadError"
    SPAWN = "SpawnError"
    PROCESS_EXIT = "ProcessExitError"
    TIMEOUT = "TimeoutError"
    OUTPUT_MISSING = "OutputMissingError"
    INTERNAL = "InternalError"


class ConversionError(Exception):
    """Base class for failures that end a conversion job.

    Every subclass maps onto one FailureKind so the service can turn it into a
    Failed outcome instead of letting it escape the queue.
    """

    kind: FailureKind = FailureKind.INTERNAL


class DownloadError(ConversionError):
    """Input could not be fetched. Callers may retry; we never do."""

    kind = FailureKind.DOWNLOAD


class SpawnError(ConversionError):
    kind = FailureKind.SPAWN

"""
Domain layer for document conversion.
Provides the serialisation queue, the converter process supervisor, artifact
staging and callback delivery, wired together by ConversionService so
front-ends (HTTP or others) can share the same core logic.
"""

from .errors import ConversionError, DownloadError, FailureKind, SpawnError
from .interfaces import InputFetcher, Notifier, StagedPaths
from .models import Completed, ConversionJob, Failed, JobState, KillState, Outcome, sync_response
from .queue import ConversionQueue
from .service import ConversionService
from .staging import ArtifactStaging
from .supervisor import ProcessSupervisor

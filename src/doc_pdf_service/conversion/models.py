import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union

from .errors import ConversionError, FailureKind


class JobState:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class KillState(str, Enum):
    """Lifecycle of a supervised child.

    RUNNING -> SOFT_KILL_SENT -> HARD_KILL_SENT -> EXITED, and any state may
    jump straight to EXITED when the child goes away on its own.
    """

    RUNNING = "running"
    SOFT_KILL_SENT = "soft_kill_sent"
    HARD_KILL_SENT = "hard_kill_sent"
    EXITED = "exited"


@dataclass(frozen=True)
class Completed:
    artifact: bytes
    size_bytes: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "Completed":
        return cls(artifact=data, size_bytes=len(data))

    @property
    def artifact_base64(self) -> str:
        return base64.b64encode(self.artifact).decode("ascii")


@dataclass(frozen=True)
class Failed:
    kind: FailureKind
    message: str
    duration_ms: int
    exit_code: int | None = None
    signal: int | None = None
    stdout: str = ""
    stderr: str = ""

    @classmethod
    def from_error(cls, exc: ConversionError, duration_ms: int) -> "Failed":
        return cls(kind=exc.kind, message=str(exc), duration_ms=duration_ms)

    @property
    def error(self) -> str:
        return f"{self.kind.value}: {self.message}"


Outcome = Union[Completed, Failed]


def sync_response(outcome: Outcome) -> dict[str, object]:
    """Body returned to a caller that waited for its conversion."""
    if isinstance(outcome, Completed):
        return {
            "success": True,
            "artifactBase64": outcome.artifact_base64,
            "sizeBytes": outcome.size_bytes,
        }
    return {"success": False, "error": outcome.error}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id(order_id: str | None = None) -> str:
    suffix = uuid.uuid4().hex[:12]
    return f"job_{order_id}_{suffix}" if order_id else f"job_{suffix}"


@dataclass
class ConversionJob:
    input_ref: str | None = None
    input_bytes: bytes | None = None
    deadline: float = 60.0
    order_id: str | None = None
    callback_url: str | None = None
    id: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    state: str = JobState.QUEUED
    outcome: Outcome | None = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_job_id(self.order_id)

    def resolve(self, outcome: Outcome) -> None:
        if self.outcome is not None:
            raise RuntimeError(f"job {self.id} already resolved")
        self.outcome = outcome
        self.state = JobState.COMPLETED if isinstance(outcome, Completed) else JobState.FAILED


class BoundedBuffer:
    """Keeps the most recent `limit` bytes of a stream."""

    def __init__(self, limit: int = 64 * 1024) -> None:
        self._limit = limit
        self._data = bytearray()
        self.dropped = 0

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        overflow = len(self._data) - self._limit
        if overflow > 0:
            del self._data[:overflow]
            self.dropped += overflow

    def __len__(self) -> int:
        return len(self._data)

    def text(self) -> str:
        body = self._data.decode("utf-8", errors="replace")
        if self.dropped:
            return f"[... {self.dropped} bytes truncated ...]\n{body}"
        return body


@dataclass
class ProcessHandle:
    pid: int
    started_at: float
    deadline: float
    stdout: BoundedBuffer
    stderr: BoundedBuffer
    kill_state: KillState = KillState.RUNNING

    @property
    def escalated(self) -> bool:
        return self.kill_state in (KillState.SOFT_KILL_SENT, KillState.HARD_KILL_SENT)

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .models import ConversionJob, Outcome


class InputFetcher(Protocol):
    def fetch(self, input_ref: str) -> bytes:
        """Return the raw bytes behind input_ref or raise DownloadError.
        This is a blocking call; callers should offload to threads if needed.
        """


class Notifier(Protocol):
    async def deliver(self, job: ConversionJob, outcome: Outcome, callback_url: str) -> bool:
        ...


@dataclass(frozen=True)
class StagedPaths:
    input_path: Path
    output_dir: Path

import asyncio
import secrets
import shutil
import tempfile
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import structlog

from .interfaces import StagedPaths

log = structlog.get_logger(__name__)


class ArtifactStaging:
    """Allocates per-job scratch paths under a shared temp root.

    The root may be shared with other service instances, so names combine a
    nanosecond timestamp with a random suffix and never rely on coordination.
    """

    def __init__(self, root: str | Path | None = None, *, input_suffix: str = ".docx") -> None:
        self._root = Path(root or tempfile.gettempdir()).resolve()
        self._suffix = input_suffix

    @property
    def root(self) -> Path:
        return self._root

    def allocate(self) -> StagedPaths:
        token = f"{time.time_ns()}_{secrets.token_hex(6)}"
        return StagedPaths(
            input_path=self._root / f"input_{token}{self._suffix}",
            output_dir=self._root / f"output_{token}",
        )

    async def stage(self, data: bytes) -> StagedPaths:
        paths = self.allocate()

        def write_input() -> None:
            self._root.mkdir(parents=True, exist_ok=True)
            # "xb" so a colliding name fails loudly instead of clobbering
            with paths.input_path.open("xb") as f:
                try:
                    f.write(data)
                except OSError:
                    paths.input_path.unlink(missing_ok=True)
                    raise

        await asyncio.to_thread(write_input)
        log.info("staging.written", input_path=str(paths.input_path), size_bytes=len(data))
        return paths

    async def release(self, paths: StagedPaths) -> None:
        await asyncio.to_thread(self._release_sync, paths)

    def _release_sync(self, paths: StagedPaths) -> None:
        try:
            paths.input_path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("staging.cleanup_failed", path=str(paths.input_path), error=str(e))
        try:
            if paths.output_dir.exists():
                shutil.rmtree(paths.output_dir)
        except OSError as e:
            log.warning("staging.cleanup_failed", path=str(paths.output_dir), error=str(e))
        log.debug("staging.released", input_path=str(paths.input_path))

    @asynccontextmanager
    async def staged(self, data: bytes) -> AsyncIterator[StagedPaths]:
        paths = await self.stage(data)
        try:
            yield paths
        finally:
            await self.release(paths)

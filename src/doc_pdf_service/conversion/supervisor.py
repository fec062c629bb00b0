import asyncio
import os
import signal
from pathlib import Path
from typing import Sequence

import structlog

from .errors import FailureKind, SpawnError
from .models import BoundedBuffer, Completed, Failed, KillState, Outcome, ProcessHandle

log = structlog.get_logger(__name__)

DEFAULT_COMMAND: tuple[str, ...] = (
    "libreoffice",
    "--headless",
    "--convert-to",
    "{convert_to}",
    "--outdir",
    "{output_dir}",
    "{input_path}",
)


class ProcessSupervisor:
    """Runs the external converter for one staged input and reports an Outcome.

    The command is a template of argv elements. `{input_path}`, `{output_dir}`
    and `{convert_to}` are substituted per element and the vector goes straight
    to exec, so paths taken from requests never reach a shell.

    Deadline handling escalates: SIGTERM when the deadline passes, SIGKILL
    once the grace period runs out. The child gets its own session so the
    signals also reach anything it forked (soffice.bin under the launcher).
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_COMMAND,
        *,
        convert_to: str = "pdf",
        output_extension: str = ".pdf",
        grace_period: float = 5.0,
        buffer_limit: int = 64 * 1024,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("converter command must not be empty")
        self._command = tuple(command)
        self._convert_to = convert_to
        self._extension = output_extension.lower()
        self._grace = grace_period
        self._buffer_limit = buffer_limit
        self._env = env

    @property
    def executable(self) -> str:
        return self._command[0]

    def build_argv(self, input_path: Path, output_dir: Path) -> list[str]:
        values = {
            "{input_path}": str(input_path),
            "{output_dir}": str(output_dir),
            "{convert_to}": self._convert_to,
        }
        argv = []
        for arg in self._command:
            for placeholder, value in values.items():
                arg = arg.replace(placeholder, value)
            argv.append(arg)
        return argv

    async def supervise(self, input_path: Path, output_dir: Path, deadline: float) -> Outcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        argv = self.build_argv(input_path, output_dir)
        await asyncio.to_thread(Path(output_dir).mkdir, parents=True, exist_ok=True)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                start_new_session=True,
            )
        except OSError as e:
            log.error("converter.spawn_failed", executable=argv[0], error=str(e))
            err = SpawnError(f"could not start {argv[0]}: {e}")
            return Failed.from_error(err, self._elapsed_ms(started))

        handle = ProcessHandle(
            pid=proc.pid,
            started_at=started,
            deadline=deadline,
            stdout=BoundedBuffer(self._buffer_limit),
            stderr=BoundedBuffer(self._buffer_limit),
        )
        log.info("converter.started", pid=proc.pid, argv=argv, deadline_s=deadline)

        escalated = await self._wait(proc, handle)
        duration_ms = self._elapsed_ms(started)
        returncode = proc.returncode
        exit_code, sig = (None, -returncode) if returncode is not None and returncode < 0 else (returncode, None)
        stdout, stderr = handle.stdout.text(), handle.stderr.text()
        log.info("converter.exited", pid=proc.pid, exit_code=exit_code, signal=sig, duration_ms=duration_ms)
        if stderr:
            log.debug("converter.stderr", pid=proc.pid, stderr=stderr)

        if escalated:
            return Failed(
                kind=FailureKind.TIMEOUT,
                message=f"conversion timed out after {deadline:g}s (ran {duration_ms}ms)",
                duration_ms=duration_ms,
                exit_code=exit_code,
                signal=sig,
                stdout=stdout,
                stderr=stderr,
            )
        if returncode != 0:
            detail = f"signal {sig}" if sig is not None else f"code {exit_code}"
            return Failed(
                kind=FailureKind.PROCESS_EXIT,
                message=f"{self.executable} failed with {detail}: {stderr.strip() or 'no stderr'}",
                duration_ms=duration_ms,
                exit_code=exit_code,
                signal=sig,
                stdout=stdout,
                stderr=stderr,
            )
        return await self._collect(Path(output_dir), duration_ms)

    async def _wait(self, proc: asyncio.subprocess.Process, handle: ProcessHandle) -> bool:
        """Wait for exit while the deadline timers race it. Returns True if a kill was sent."""
        loop = asyncio.get_running_loop()
        timers: list[asyncio.TimerHandle] = []

        def hard_kill() -> None:
            if handle.kill_state is not KillState.SOFT_KILL_SENT or proc.returncode is not None:
                return
            log.error("converter.hard_kill", pid=handle.pid)
            handle.kill_state = KillState.HARD_KILL_SENT
            self._signal(proc, signal.SIGKILL)

        def soft_kill() -> None:
            if handle.kill_state is not KillState.RUNNING or proc.returncode is not None:
                return
            log.warning("converter.deadline_exceeded", pid=handle.pid, deadline_s=handle.deadline)
            handle.kill_state = KillState.SOFT_KILL_SENT
            self._signal(proc, signal.SIGTERM)
            timers.append(loop.call_later(self._grace, hard_kill))

        timers.append(loop.call_later(handle.deadline, soft_kill))
        readers = [
            asyncio.create_task(self._pump(proc.stdout, handle.stdout)),
            asyncio.create_task(self._pump(proc.stderr, handle.stderr)),
        ]
        waiter = asyncio.create_task(proc.wait())
        try:
            # returncode is set once the child is reaped; wait() may also hold out
            # until every inherited pipe closes
            while proc.returncode is None:
                await asyncio.wait({waiter}, timeout=0.05)
        except asyncio.CancelledError:
            self._signal(proc, signal.SIGKILL)
            waiter.cancel()
            for reader in readers:
                reader.cancel()
            raise
        finally:
            escalated = handle.escalated
            handle.kill_state = KillState.EXITED
            for timer in timers:
                timer.cancel()

        # the job is over; anything it left running in its session goes with it
        self._signal(proc, signal.SIGKILL)
        try:
            _, still_open = await asyncio.wait(readers, timeout=1.0)
            if still_open:
                log.warning("converter.pipes_left_open", pid=handle.pid)
        finally:
            waiter.cancel()
            for reader in readers:
                reader.cancel()
        return escalated

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, buffer: BoundedBuffer) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            buffer.append(chunk)

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    async def _collect(self, output_dir: Path, duration_ms: int) -> Outcome:
        def find_outputs() -> tuple[list[Path], list[str]]:
            try:
                entries = list(output_dir.iterdir())
            except FileNotFoundError:
                return [], []
            matches = [p for p in entries if p.is_file() and p.suffix.lower() == self._extension]
            return sorted(matches, key=lambda p: p.name), sorted(p.name for p in entries)

        matches, names = await asyncio.to_thread(find_outputs)
        if not matches:
            return Failed(
                kind=FailureKind.OUTPUT_MISSING,
                message=f"no {self._extension} file generated in {output_dir}; files: {', '.join(names) or 'none'}",
                duration_ms=duration_ms,
                exit_code=0,
            )
        chosen = matches[0]
        if len(matches) > 1:
            log.warning("converter.multiple_outputs", chosen=chosen.name, files=[p.name for p in matches])

        data = await asyncio.to_thread(chosen.read_bytes)
        if not data:
            return Failed(
                kind=FailureKind.OUTPUT_MISSING,
                message=f"{chosen.name} was generated but is empty",
                duration_ms=duration_ms,
                exit_code=0,
            )
        log.info("converter.output_ready", file=chosen.name, size_bytes=len(data), duration_ms=duration_ms)
        return Completed.from_bytes(data)

    async def probe(self, timeout: float = 30.0) -> str | None:
        """Run `<converter> --version` once so the first real job is not a cold start."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.warning("converter.unavailable", executable=self.executable, error=str(e))
            return None
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            log.warning("converter.probe_timeout", executable=self.executable, timeout_s=timeout)
            return None
        version = out.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            log.warning("converter.probe_failed", executable=self.executable, exit_code=proc.returncode)
            return None
        log.info("converter.ready", executable=self.executable, version=version)
        return version

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((asyncio.get_running_loop().time() - started) * 1000)

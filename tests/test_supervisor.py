"""Tests for running and supervising the converter process."""

import os
import signal
import sys
from pathlib import Path

import pytest

from doc_pdf_service.conversion import Completed, Failed, FailureKind, ProcessSupervisor
from doc_pdf_service.conversion.models import BoundedBuffer


def _paths(staging_root, sample_docx):
    input_path = staging_root / "input_test.docx"
    input_path.write_bytes(sample_docx)
    return input_path, staging_root / "output_test"


@pytest.mark.asyncio
async def test_successful_conversion_returns_artifact(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("ok").supervise(input_path, output_dir, deadline=10)

    assert isinstance(outcome, Completed)
    assert outcome.artifact.startswith(b"%PDF-1.4")
    assert outcome.artifact.endswith(sample_docx)
    assert outcome.size_bytes == len(outcome.artifact)


@pytest.mark.asyncio
async def test_output_dir_is_created_before_spawn(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)
    assert not output_dir.exists()

    await make_supervisor("nothing").supervise(input_path, output_dir, deadline=10)

    assert output_dir.is_dir()


@pytest.mark.asyncio
async def test_non_zero_exit_is_a_process_exit_error(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("fail").supervise(input_path, output_dir, deadline=10)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.PROCESS_EXIT
    assert outcome.exit_code == 3
    assert outcome.signal is None
    assert "could not be loaded" in outcome.stderr
    assert "converting input_test.docx" in outcome.stdout
    assert "code 3" in outcome.message


@pytest.mark.asyncio
async def test_clean_exit_without_output_is_output_missing(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("nothing").supervise(input_path, output_dir, deadline=10)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.OUTPUT_MISSING
    assert outcome.exit_code == 0


@pytest.mark.asyncio
async def test_empty_output_file_is_output_missing(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("empty-file").supervise(input_path, output_dir, deadline=10)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.OUTPUT_MISSING
    assert "empty" in outcome.message


@pytest.mark.asyncio
async def test_several_outputs_pick_the_lexicographically_first(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("multi").supervise(input_path, output_dir, deadline=10)

    assert isinstance(outcome, Completed)
    assert outcome.artifact == b"%PDF-a"


@pytest.mark.asyncio
async def test_deadline_sends_sigterm_and_reports_timeout(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("sleep", grace_period=5).supervise(input_path, output_dir, deadline=0.1)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.TIMEOUT
    assert outcome.signal == signal.SIGTERM
    assert 100 <= outcome.duration_ms <= 5100
    assert not any(p.suffix == ".pdf" for p in output_dir.iterdir())


@pytest.mark.asyncio
async def test_process_ignoring_sigterm_is_killed_after_grace(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("stubborn", grace_period=0.3).supervise(input_path, output_dir, deadline=1.0)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.TIMEOUT
    assert outcome.signal == signal.SIGKILL
    assert outcome.duration_ms >= 1300


@pytest.mark.asyncio
async def test_timed_out_child_does_not_linger(make_supervisor, staging_root, sample_docx, monkeypatch):
    input_path, output_dir = _paths(staging_root, sample_docx)
    supervisor = make_supervisor("sleep", grace_period=0.5)
    pids = []
    real_signal = ProcessSupervisor._signal

    def record(proc, sig):
        pids.append(proc.pid)
        real_signal(proc, sig)

    monkeypatch.setattr(ProcessSupervisor, "_signal", staticmethod(record))

    await supervisor.supervise(input_path, output_dir, deadline=0.1)

    assert pids
    with pytest.raises(ProcessLookupError):
        os.kill(pids[0], 0)


def _running(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    # a killed helper may sit as a zombie until its new parent reaps it
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.asyncio
async def test_exit_before_deadline_is_not_a_timeout_while_pipes_stay_open(
    make_supervisor, staging_root, sample_docx
):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("detach", grace_period=0.5).supervise(input_path, output_dir, deadline=1.0)

    assert isinstance(outcome, Completed)
    assert outcome.artifact.startswith(b"%PDF")


@pytest.mark.asyncio
@pytest.mark.skipif(not Path("/proc").is_dir(), reason="needs /proc")
async def test_descendants_do_not_outlive_a_clean_exit(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("detach").supervise(input_path, output_dir, deadline=10.0)

    assert isinstance(outcome, Completed)
    helper_pid = int((output_dir / "helper.pid").read_text())
    assert not _running(helper_pid)


@pytest.mark.asyncio
async def test_missing_executable_is_a_spawn_error(staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)
    supervisor = ProcessSupervisor(("/nonexistent/bin/soffice", "{input_path}", "{output_dir}"))

    outcome = await supervisor.supervise(input_path, output_dir, deadline=5)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.SPAWN
    assert "/nonexistent/bin/soffice" in outcome.message


@pytest.mark.asyncio
async def test_diagnostic_buffers_are_bounded(make_supervisor, staging_root, sample_docx):
    input_path, output_dir = _paths(staging_root, sample_docx)

    outcome = await make_supervisor("noisy", buffer_limit=1024).supervise(input_path, output_dir, deadline=10)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.PROCESS_EXIT
    assert "truncated" in outcome.stderr
    assert outcome.stderr.count("x") == 1024


def test_argv_keeps_hostile_paths_as_single_arguments(tmp_path):
    supervisor = ProcessSupervisor()
    input_path = tmp_path / "a b; rm -rf ~ $(reboot).docx"

    argv = supervisor.build_argv(input_path, tmp_path / "out dir")

    assert argv == [
        "libreoffice",
        "--headless",
        "--convert-to",
        "pdf",
        "--outdir",
        str(tmp_path / "out dir"),
        str(input_path),
    ]


def test_empty_command_is_rejected():
    with pytest.raises(ValueError):
        ProcessSupervisor(())


@pytest.mark.asyncio
async def test_probe_reports_version():
    version = await ProcessSupervisor((sys.executable,)).probe(timeout=10)

    assert version is not None
    assert version.startswith("Python")


@pytest.mark.asyncio
async def test_probe_survives_missing_converter():
    assert await ProcessSupervisor(("/nonexistent/bin/soffice",)).probe(timeout=1) is None


def test_bounded_buffer_keeps_the_tail():
    buffer = BoundedBuffer(limit=4)
    buffer.append(b"abc")
    buffer.append(b"def")

    assert len(buffer) == 4
    assert buffer.dropped == 2
    assert buffer.text().endswith("cdef")

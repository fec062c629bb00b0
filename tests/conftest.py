"""
Pytest configuration and fixtures for the conversion service tests.

The real converter is replaced by a small Python script run with the current
interpreter, so no LibreOffice install is needed. Its behaviour is picked by
the first argument.
"""

import sys
import textwrap
from pathlib import Path

import pytest

from doc_pdf_service.conversion import ArtifactStaging, ProcessSupervisor

FAKE_CONVERTER = textwrap.dedent(
    """
    import signal
    import subprocess
    import sys
    import time
    from pathlib import Path

    mode, input_path, output_dir = sys.argv[1], Path(sys.argv[2]), Path(sys.argv[3])
    print("converting", input_path.name)
    sys.stdout.flush()

    if mode == "ok":
        data = input_path.read_bytes()
        (output_dir / (input_path.stem + ".pdf")).write_bytes(b"%PDF-1.4\\n" + data)
    elif mode == "multi":
        (output_dir / "b.pdf").write_bytes(b"%PDF-b")
        (output_dir / "a.pdf").write_bytes(b"%PDF-a")
        (output_dir / "notes.txt").write_text("not a pdf")
    elif mode == "empty-file":
        (output_dir / "out.pdf").write_bytes(b"")
    elif mode == "nothing":
        pass
    elif mode == "fail":
        sys.stderr.write("Error: source file could not be loaded\\n")
        sys.exit(3)
    elif mode == "sleep":
        time.sleep(5)
    elif mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        time.sleep(30)
    elif mode == "noisy":
        sys.stderr.write("x" * 200000)
        sys.exit(1)
    elif mode == "detach":
        # a helper that inherits stdout and outlives us, like soffice.bin under the launcher
        helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        (output_dir / "helper.pid").write_text(str(helper.pid))
        (output_dir / (input_path.stem + ".pdf")).write_bytes(b"%PDF-1.4\\n")
        time.sleep(0.4)
    """
)


@pytest.fixture
def converter_script(tmp_path: Path) -> Path:
    script = tmp_path / "fake_converter.py"
    script.write_text(FAKE_CONVERTER, encoding="utf-8")
    return script


@pytest.fixture
def make_supervisor(converter_script: Path):
    def factory(mode: str = "ok", **kwargs) -> ProcessSupervisor:
        command = (sys.executable, str(converter_script), mode, "{input_path}", "{output_dir}")
        return ProcessSupervisor(command, **kwargs)

    return factory


@pytest.fixture
def staging_root(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture
def staging(staging_root: Path) -> ArtifactStaging:
    return ArtifactStaging(staging_root)


@pytest.fixture
def sample_docx() -> bytes:
    # only the zip magic matters to the fake converter
    return b"PK\x03\x04" + b"fake docx body" * 8

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .conversion.supervisor import DEFAULT_COMMAND

_TRUE = {"1", "true", "yes", "on"}


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUE


@dataclass(frozen=True)
class ServiceConfig:
    converter_bin: str = "libreoffice"
    convert_to: str = "pdf"
    output_extension: str = ".pdf"
    staging_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    job_timeout_sec: float = 60.0
    kill_grace_sec: float = 5.0
    queue_cooldown_sec: float = 1.0
    output_buffer_bytes: int = 64 * 1024
    download_timeout_sec: float = 60.0
    callback_timeout_sec: float = 30.0
    webhook_secret: str | None = None
    webhook_secret_header: str = "X-Webhook-Secret"
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def converter_command(self) -> tuple[str, ...]:
        return (self.converter_bin, *DEFAULT_COMMAND[1:])

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            converter_bin=os.getenv("CONVERTER_BIN", "libreoffice"),
            convert_to=os.getenv("CONVERT_TO", "pdf"),
            output_extension=os.getenv("OUTPUT_EXTENSION", ".pdf"),
            staging_dir=Path(os.getenv("STAGING_DIR", tempfile.gettempdir())).resolve(),
            job_timeout_sec=float(os.getenv("JOB_TIMEOUT_SEC", "60")),
            kill_grace_sec=float(os.getenv("KILL_GRACE_SEC", "5")),
            queue_cooldown_sec=float(os.getenv("QUEUE_COOLDOWN_SEC", "1")),
            output_buffer_bytes=int(os.getenv("OUTPUT_BUFFER_BYTES", str(64 * 1024))),
            download_timeout_sec=float(os.getenv("DOWNLOAD_TIMEOUT_SEC", "60")),
            callback_timeout_sec=float(os.getenv("CALLBACK_TIMEOUT_SEC", "30")),
            # an empty secret still means "send no header"
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            webhook_secret_header=os.getenv("WEBHOOK_SECRET_HEADER", "X-Webhook-Secret"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_flag("LOG_JSON", "true"),
        )

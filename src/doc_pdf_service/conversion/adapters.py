import requests
import structlog

from .errors import DownloadError
from .interfaces import InputFetcher

log = structlog.get_logger(__name__)


class HttpFetcher(InputFetcher):
    def __init__(self, timeout: float = 60.0, session: requests.Session | None = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, input_ref: str) -> bytes:
        log.info("input.downloading", url=input_ref)
        try:
            resp = self._session.get(input_ref, timeout=self._timeout)
        except requests.RequestException as e:
            raise DownloadError(f"failed to download input: {e}") from e
        if not resp.ok:
            raise DownloadError(f"failed to download input: {resp.status_code} {resp.reason}")
        data = resp.content
        if not data:
            raise DownloadError("failed to download input: empty response body")
        log.info("input.downloaded", url=input_ref, size_bytes=len(data))
        return data

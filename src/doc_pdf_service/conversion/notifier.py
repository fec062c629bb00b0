import asyncio

import requests
import structlog

from .models import Completed, ConversionJob, Outcome

log = structlog.get_logger(__name__)

DEFAULT_SECRET_HEADER = "X-Webhook-Secret"


def callback_payload(job: ConversionJob, outcome: Outcome) -> dict[str, object]:
    payload: dict[str, object] = {"jobId": job.id}
    if job.order_id:
        payload["orderId"] = job.order_id
    if isinstance(outcome, Completed):
        payload["status"] = "completed"
        payload["artifactBase64"] = outcome.artifact_base64
    else:
        payload["status"] = "failed"
        payload["error"] = outcome.error
    return payload


class CallbackNotifier:
    """Best-effort delivery of a job's outcome to a caller-supplied URL.

    One POST, no retries. Failures are logged and reported as False; they never
    raise and never touch the job's recorded outcome.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        secret_header: str = DEFAULT_SECRET_HEADER,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._secret = secret
        self._secret_header = secret_header
        self._timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[self._secret_header] = self._secret
        return headers

    async def deliver(self, job: ConversionJob, outcome: Outcome, callback_url: str) -> bool:
        payload = callback_payload(job, outcome)
        return await asyncio.to_thread(self._post, job.id, callback_url, payload)

    def _post(self, job_id: str, callback_url: str, payload: dict[str, object]) -> bool:
        try:
            resp = self._session.post(
                callback_url, json=payload, headers=self._headers(), timeout=self._timeout
            )
        except requests.RequestException as e:
            log.error("callback.delivery_failed", job_id=job_id, url=callback_url, error=str(e))
            return False
        if not resp.ok:
            log.error(
                "callback.rejected",
                job_id=job_id,
                url=callback_url,
                status_code=resp.status_code,
                body=resp.text[:500],
            )
            return False
        log.info("callback.delivered", job_id=job_id, url=callback_url, status=payload["status"])
        return True

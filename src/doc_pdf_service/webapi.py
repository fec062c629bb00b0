import os
from datetime import datetime, timezone

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from doc_pdf_service.config import ServiceConfig
from doc_pdf_service.conversion import ConversionService, sync_response
from doc_pdf_service.logging import setup_logging

SERVICE_NAME = "word-pdf-service"

app = FastAPI(
    title="DOCX to PDF Conversion Service",
    version=os.getenv("DOC_SERVICE_VERSION", "0.1.0"),
    description=(
        "Converts DOCX documents fetched by URL into PDF with a headless "
        "converter, one job at a time, returning the result inline or via callback."
    ),
)

CONFIG = ServiceConfig.from_env()
SERVICE: ConversionService | None = None


class ConvertSyncRequest(BaseModel):
    docxUrl: str | None = None
    deadlineMs: int | None = None


class ConvertRequest(ConvertSyncRequest):
    orderId: str | None = None
    callbackUrl: str | None = None


def _service() -> ConversionService:
    global SERVICE
    assert SERVICE is not None
    return SERVICE


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "error": message})


def _invalid_deadline(deadline_ms: int | None) -> bool:
    return deadline_ms is not None and deadline_ms <= 0


def _liveness() -> dict[str, str]:
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


@app.on_event("startup")
async def _startup() -> None:
    setup_logging(CONFIG.log_level, json=CONFIG.log_json)
    global SERVICE
    SERVICE = ConversionService.from_config(CONFIG)
    await SERVICE.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        await SERVICE.stop()


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return _liveness()


@app.get("/keepalive")
def keepalive() -> dict[str, str]:
    """Pinged by hosting platforms that stop idle instances."""
    return _liveness()


@app.post("/api/convert")
async def convert(req: ConvertRequest) -> JSONResponse:
    """Start a conversion and report the result to callbackUrl when it finishes."""
    if not req.docxUrl or not req.callbackUrl:
        return _bad_request("Missing required fields: docxUrl, callbackUrl")
    if _invalid_deadline(req.deadlineMs):
        return _bad_request("deadlineMs must be a positive integer")

    job = await _service().submit(
        req.docxUrl,
        req.callbackUrl,
        deadline_ms=req.deadlineMs,
        order_id=req.orderId,
    )
    return JSONResponse(content={"success": True, "jobId": job.id, "message": "Conversion job started"})


@app.post("/api/convert-sync")
async def convert_sync(req: ConvertSyncRequest) -> JSONResponse:
    """Convert and wait; the PDF comes back base64-encoded in the response body."""
    if not req.docxUrl:
        return _bad_request("Missing required field: docxUrl")
    if _invalid_deadline(req.deadlineMs):
        return _bad_request("deadlineMs must be a positive integer")

    outcome = await _service().convert(req.docxUrl, deadline_ms=req.deadlineMs)
    body = sync_response(outcome)
    code = status.HTTP_200_OK if body["success"] else status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=code, content=body)


@app.get("/api/status/{job_id}")
def job_status(job_id: str) -> dict[str, object]:
    return {"success": True, "jobId": job_id, **_service().status(job_id)}


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:10000). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "10000"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("doc_pdf_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()

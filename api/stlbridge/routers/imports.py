from __future__ import annotations
import asyncio
import json
import os
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from stlbridge.config import HEARTBEAT_INTERVAL, MAX_UPLOAD_BYTES
from stlbridge.deps.services import get_import_service, get_registry
from stlbridge.errors import ValidationError
from stlbridge.models.schemas import ErrorResponse, ImportResponse, ImportStlRequest, JobStatusResponse
from stlbridge.obs.logging_setup import get_logger
from stlbridge.services.import_service import ImportService
from stlbridge.services.job_tracker import ImportJobStatus, JobRegistry, progress_for_status
from stlbridge.services.realtime import TERMINAL_EVENTS
from stlbridge.utils.sse import create_sse_close, create_sse_heartbeat, create_sse_message

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["imports"])

ACCEPTED_CONTENT_TYPES = frozenset({"model/stl", "application/octet-stream"})

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse}
}

def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(ErrorResponse(error=message).model_dump(), status_code=status_code)

def _not_found() -> JSONResponse:
    return _error("Import job not found", 404)

@router.post("/import-stl", response_model=ImportResponse, response_model_exclude_none=True,
             responses={400: ERROR_RESPONSES[400]})
async def import_stl(
    payload: ImportStlRequest,
    service: ImportService = Depends(get_import_service)
):
    """Start a server-side import of a remote STL file."""
    if not payload.stl_url:
        return _error("Missing stlUrl parameter", 400)

    try:
        job = await service.start_url_import(
            payload.stl_url,
            file_name=payload.file_name,
            source=payload.source,
            metadata=payload.metadata
        )
    except ValidationError as e:
        logger.warning("Rejected import URL", url=payload.stl_url, error=str(e))
        return _error(str(e), 400)

    return {
        "success": True,
        "importId": job.id,
        "message": "Import started successfully",
        "job": job.to_dict()
    }

@router.post("/upload", response_model=ImportResponse, response_model_exclude_none=True,
             responses={400: ERROR_RESPONSES[400], 413: {"model": ErrorResponse}})
async def upload_stl(
    file: Optional[UploadFile] = File(None),
    source: Optional[str] = Form(None),
    file_name: Optional[str] = Form(None, alias="fileName"),
    metadata: Optional[str] = Form(None),
    service: ImportService = Depends(get_import_service)
):
    """Accept a multipart STL upload and process it like a fetched model."""
    if file is None:
        return _error("No file uploaded", 400)

    original_name = file.filename or ""
    if not (
        original_name.lower().endswith(".stl")
        or (file.content_type or "").lower() in ACCEPTED_CONTENT_TYPES
    ):
        return _error("Only STL files are allowed", 400)

    try:
        parsed_metadata = json.loads(metadata) if metadata else {}
    except json.JSONDecodeError:
        return _error("metadata must be a JSON object", 400)
    if not isinstance(parsed_metadata, dict):
        return _error("metadata must be a JSON object", 400)

    data = await file.read(MAX_UPLOAD_BYTES + 1)
    await file.close()
    if len(data) > MAX_UPLOAD_BYTES:
        return _error(f"File exceeds {MAX_UPLOAD_BYTES} bytes", 413)
    if not data:
        return _error("Uploaded file is empty", 400)

    job = await service.start_upload_import(
        data,
        file_name=file_name or original_name or None,
        source=source,
        metadata=parsed_metadata
    )
    return {
        "success": True,
        "importId": job.id,
        "message": "File uploaded successfully",
        "job": job.to_dict()
    }

@router.get("/import-status/{import_id}", response_model=JobStatusResponse, response_model_exclude_none=True,
            responses={404: ERROR_RESPONSES[404]})
async def get_import_status(import_id: str, registry: JobRegistry = Depends(get_registry)):
    job = registry.get(import_id)
    if job is None:
        return _not_found()
    return {"success": True, "job": job.to_dict(), "progress": progress_for_status(job.status)}

@router.get("/import-status/{import_id}/stream")
async def stream_import_status(
    import_id: str,
    request: Request,
    registry: JobRegistry = Depends(get_registry)
):
    """Stream the job's room as server-sent events until a terminal event."""
    if registry.get(import_id) is None:
        return _not_found()

    subscriber = registry.channel.connect()
    registry.join(subscriber, import_id)
    logger.info("SSE stream opened", job_id=import_id, subscriber_id=subscriber.subscriber_id)

    async def event_stream():
        try:
            while True:
                try:
                    frame = await asyncio.wait_for(subscriber.receive(), timeout=HEARTBEAT_INTERVAL)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield create_sse_heartbeat()
                    continue
                subscriber.task_done()
                yield create_sse_message(frame.data, event_type=frame.event)
                if frame.event in TERMINAL_EVENTS:
                    yield create_sse_close()
                    break
        finally:
            registry.channel.disconnect(subscriber)
            logger.info("SSE stream closed", job_id=import_id, subscriber_id=subscriber.subscriber_id)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )

@router.post("/import-status/{import_id}/cancel")
async def cancel_import(import_id: str, service: ImportService = Depends(get_import_service)):
    job = service.registry.get(import_id)
    if job is None:
        return _not_found()
    if job.status == ImportJobStatus.COMPLETED:
        return JSONResponse(
            {"success": False, "error": "Import already completed", "job": job.to_dict()},
            status_code=409
        )

    cancelled = await service.cancel(import_id)
    return {"success": True, "cancelled": cancelled, "job": job.to_dict()}

@router.get("/models/{import_id}", responses=ERROR_RESPONSES)
async def get_model(import_id: str, registry: JobRegistry = Depends(get_registry)):
    """Serve the stored STL artifact of a completed import."""
    job = registry.get(import_id)
    if job is None:
        return _not_found()
    if job.status != ImportJobStatus.COMPLETED:
        return _error("Import not completed", 400)
    if not job.file_path or not os.path.exists(job.file_path):
        return _error("Model file not found", 404)

    return FileResponse(job.file_path, media_type="model/stl", filename=job.file_name)

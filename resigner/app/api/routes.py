import logging
import uuid
from typing import Annotated, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from resigner.app.core.errors import (
    JobNotFoundError,
    JobNotReadyError,
    UploadError,
)
from resigner.app.schemas.jobs import JobStatusView, SubmissionReceipt
from resigner.app.services.signing_service import SigningService

logger = logging.getLogger("resigner.api")

router = APIRouter(prefix="/jobs", tags=["Signing Jobs"])

APK_MEDIA_TYPE = "application/vnd.android.package-archive"

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Audit trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


def get_service(request: Request) -> SigningService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise RuntimeError("signing service not initialized")
    return service


def _not_found(exc: JobNotFoundError, correlation_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=str(exc),
        headers={"X-Correlation-ID": correlation_id},
    )


# =============================================================================
# POST /jobs
# =============================================================================

@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionReceipt,
    summary="Submit an APK for validation, repair and signing",
    responses={
        400: {"description": "No artifact supplied"},
        413: {"description": "Payload too large"},
        422: {"description": "Invalid package identifier"},
    },
)
async def submit_job(
    service: Annotated[SigningService, Depends(get_service)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
    apk: Annotated[
        Optional[UploadFile],
        File(description="APK archive to sign"),
    ] = None,
    package_identifier: Annotated[
        Optional[str],
        Form(description="Package used if the manifest must be rebuilt"),
    ] = None,
) -> SubmissionReceipt:
    """
    Accept an upload and return a job id immediately.

    The pipeline runs in the background; poll GET /jobs/{job_id}.
    """
    if apk is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file uploaded.",
            headers={"X-Correlation-ID": correlation_id},
        )

    max_bytes = service.settings.max_apk_bytes

    try:
        data = await apk.read(max_bytes + 1)

        if len(data) > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=(
                    f"File exceeds the {service.settings.max_apk_size_mb}MB limit."
                ),
                headers={"X-Correlation-ID": correlation_id},
            )

        job_id = await service.submit(
            data,
            package_identifier=package_identifier or None,
        )

    except UploadError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
            headers={"X-Correlation-ID": correlation_id},
        ) from exc

    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
            headers={"X-Correlation-ID": correlation_id},
        ) from exc

    finally:
        await apk.close()

    logger.info(
        "upload_accepted",
        extra={"job_id": job_id, "trace_id": correlation_id},
    )
    return SubmissionReceipt(job_id=job_id)


# =============================================================================
# GET /jobs/{job_id}
# =============================================================================

@router.get(
    "/{job_id}",
    response_model=JobStatusView,
    summary="Poll the state of a signing job",
)
def get_job(
    job_id: str,
    service: Annotated[SigningService, Depends(get_service)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> JobStatusView:
    try:
        return service.poll(job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc, correlation_id) from exc


# =============================================================================
# GET /jobs/{job_id}/download
# =============================================================================

@router.get(
    "/{job_id}/download",
    response_class=Response,
    summary="Download the signed APK and release the job",
    responses={
        200: {"content": {APK_MEDIA_TYPE: {}}},
        404: {"description": "Unknown job"},
        409: {"description": "Job has no signed artifact"},
    },
)
def download_job(
    job_id: str,
    service: Annotated[SigningService, Depends(get_service)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> Response:
    try:
        job = service.tracker.get(job_id)
        content = service.retrieve(job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc, correlation_id) from exc
    except JobNotReadyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
            headers={"X-Correlation-ID": correlation_id},
        ) from exc

    logger.info(
        "artifact_downloaded",
        extra={"job_id": job_id, "trace_id": correlation_id},
    )

    return Response(
        content=content,
        media_type=APK_MEDIA_TYPE,
        headers={
            "Content-Disposition": 'attachment; filename="signed.apk"',
            "X-Correlation-ID": correlation_id,
            "X-Artifact-Digest": job.output_digest or "",
        },
        background=BackgroundTask(service.release, job_id),
    )


# =============================================================================
# GET /jobs/{job_id}/events
# =============================================================================

@router.get(
    "/{job_id}/events",
    summary="Stream job progress events (single consumer)",
)
async def stream_job_events(
    job_id: str,
    service: Annotated[SigningService, Depends(get_service)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> StreamingResponse:
    try:
        emitter = service.events(job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc, correlation_id) from exc

    async def event_stream():
        async for event in emitter.stream():
            yield event.to_sse_payload()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Correlation-ID": correlation_id,
        },
    )


# =============================================================================
# DELETE /jobs/{job_id}
# =============================================================================

@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Release a finished job and its working files",
)
def delete_job(
    job_id: str,
    service: Annotated[SigningService, Depends(get_service)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> Response:
    try:
        service.release(job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc, correlation_id) from exc
    except JobNotReadyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
            headers={"X-Correlation-ID": correlation_id},
        ) from exc

    return Response(
        status_code=status.HTTP_204_NO_CONTENT,
        headers={"X-Correlation-ID": correlation_id},
    )

"""FastAPI endpoints for the Invoice Importer API.

This module defines the routes for uploading credit-card statements, following the progress
of an import, listing a user's imports, and health checks. It wires the job runner and the
import life cycle together; all parsing and reconciliation happens in the background.
"""

from fastapi import APIRouter, Depends, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from invoice_importer.api.dependencies import get_current_user, get_db_session, get_job_runner
from invoice_importer.core.errors import ImportNotFoundError, ImportQueueFullError, ImportValidationError
from invoice_importer.core.models import ImportJobResponse, ImportProgressResponse, ImportStatus
from invoice_importer.core.utils import get_logger
from invoice_importer.services import lifecycle
from invoice_importer.workers.job_runner import ImportJobRunner

router = APIRouter()
logger = get_logger("invoice-importer.api")


@router.post(
    "/invoice-imports",
    status_code=202,
    response_model=ImportJobResponse,
    summary="Upload a credit-card statement and start an import job",
    description=(
        "Upload a statement file for one of the caller's credit cards. "
        "The server stores the file, records a PENDING import and processes it in the background. "
        "Returns the import, whose id can be used to follow its progress.\n\n"
        "**Request:**\n"
        "- Content-Type: multipart/form-data\n"
        "- Form field: `file` (statement, PDF for automatic processing)\n"
        "- Form field: `credit_card_id`\n"
        "- Header: `X-User-Id`\n\n"
        "**Response:**\n"
        "- 202 Accepted: the PENDING import.\n"
        "- 400 Bad Request: unknown credit card or card owned by another user.\n"
        "- 503 Service Unavailable: the import queue is full."
    ),
    response_description="Import accepted.",
    responses={
        400: {
            "description": "Invalid credit card.",
            "content": {"application/json": {"example": {"detail": "Credit card does not belong to user."}}},
        },
        503: {"description": "Import queue is full."},
    },
)
async def import_invoice(
    file: UploadFile,
    credit_card_id: int = Form(...),
    user_id: str = Depends(get_current_user),
    runner: ImportJobRunner = Depends(get_job_runner),
) -> ImportJobResponse:
    """Upload a statement and start an import job."""
    logger.info(f"Received upload request: filename={file.filename}, credit_card_id={credit_card_id}")
    content = await file.read()
    try:
        return runner.submit_import(file.filename or "", content, credit_card_id, user_id)
    except ImportValidationError as exc:
        logger.warning(f"Rejected upload {file.filename}: {exc}")
        raise HTTPException(400, str(exc)) from exc
    except ImportQueueFullError as exc:
        raise HTTPException(503, str(exc)) from exc


@router.get(
    "/invoice-imports/{import_id}/progress",
    response_model=ImportProgressResponse,
    summary="Get import progress",
    description=(
        "Check the progress of an import by id.\n\n"
        "**Response:**\n"
        "- 200 OK: status, status message, error, parsed metadata and whether manual review is needed.\n"
        "- 404 Not Found: the import does not exist or belongs to another user."
    ),
    response_description="Import progress.",
    responses={
        404: {
            "description": "Import not found.",
            "content": {"application/json": {"example": {"detail": "Import not found or access denied."}}},
        },
    },
)
async def get_import_progress(
    import_id: int,
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_db_session),
) -> ImportProgressResponse:
    """Get the progress of an import."""
    try:
        return lifecycle.get_progress(session, import_id, user_id)
    except ImportNotFoundError as exc:
        raise HTTPException(404, str(exc)) from exc


@router.get(
    "/invoice-imports",
    response_model=list[ImportJobResponse],
    summary="List the caller's imports",
    description="List the caller's imports, newest first. Use `status` to keep only imports in that status.",
)
async def list_imports(
    status: ImportStatus | None = None,
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_db_session),
) -> list[ImportJobResponse]:
    """List imports, optionally filtered by status."""
    return lifecycle.list_imports(session, user_id, status)


@router.get("/invoice-imports/failed", response_model=list[ImportJobResponse], summary="List failed imports")
async def list_failed_imports(
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_db_session),
) -> list[ImportJobResponse]:
    """List imports that failed."""
    return lifecycle.list_imports(session, user_id, ImportStatus.FAILED)


@router.get(
    "/invoice-imports/manual-review", response_model=list[ImportJobResponse], summary="List imports awaiting review"
)
async def list_manual_review_imports(
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_db_session),
) -> list[ImportJobResponse]:
    """List imports waiting for manual review."""
    return lifecycle.list_imports(session, user_id, ImportStatus.MANUAL_REVIEW)


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}

"""Import life cycle: the only place where an import job's state changes.

PENDING -> PROCESSING -> COMPLETED | FAILED | MANUAL_REVIEW. A job that never got picked
up may also go straight from PENDING to FAILED. Terminal jobs do not change status again.
"""

from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy.orm import Session

from invoice_importer.core.db import Invoice, InvoiceImport
from invoice_importer.core.errors import ImportNotFoundError, InvalidTransitionError, MetadataSerializationError
from invoice_importer.core.models import (
    ImportJobResponse,
    ImportProgressResponse,
    ImportSource,
    ImportStatus,
    ParsedInvoiceData,
)
from invoice_importer.core.repositories import ImportRepository
from invoice_importer.core.utils import get_logger, utcnow

logger = get_logger("invoice-importer.lifecycle")

MAX_ERROR_MESSAGE_LEN = 1000

ALLOWED_TRANSITIONS: dict[ImportStatus, frozenset[ImportStatus]] = {
    ImportStatus.PENDING: frozenset({ImportStatus.PROCESSING, ImportStatus.FAILED}),
    ImportStatus.PROCESSING: frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.MANUAL_REVIEW}),
    ImportStatus.COMPLETED: frozenset(),
    ImportStatus.FAILED: frozenset(),
    ImportStatus.MANUAL_REVIEW: frozenset(),
}

STATUS_MESSAGES: dict[ImportStatus, str] = {
    ImportStatus.PENDING: "Waiting for processing",
    ImportStatus.PROCESSING: "Processing file",
    ImportStatus.COMPLETED: "Import completed successfully",
    ImportStatus.FAILED: "Import failed",
    ImportStatus.MANUAL_REVIEW: "Requires manual review",
}


def _transition(record: InvoiceImport, target: ImportStatus) -> None:
    current = ImportStatus(record.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        msg = f"Import {record.id} cannot move from {current} to {target}"
        raise InvalidTransitionError(msg)
    record.status = target.value
    logger.info(f"Import {record.id}: {current} -> {target}")


def create_import(
    user_id: str, credit_card_id: int, source: ImportSource, original_file_name: str, file_path: str
) -> InvoiceImport:
    """Build a new PENDING import record."""
    return InvoiceImport(
        user_id=user_id,
        credit_card_id=credit_card_id,
        source=source.value,
        original_file_name=original_file_name,
        file_path=file_path,
        status=ImportStatus.PENDING.value,
        imported_at=utcnow(),
    )


def mark_processing(record: InvoiceImport) -> None:
    """A worker picked the job up."""
    _transition(record, ImportStatus.PROCESSING)
    record.started_at = utcnow()


def claim_for_processing(session: Session, import_id: int) -> bool:
    """Atomically move a PENDING job to PROCESSING; False if it is gone or was claimed already."""
    claimed = ImportRepository(session).update_status_if(
        import_id, ImportStatus.PENDING, ImportStatus.PROCESSING, started_at=utcnow()
    )
    if claimed:
        logger.info(f"Import {import_id}: {ImportStatus.PENDING} -> {ImportStatus.PROCESSING}")
    return claimed


def is_stale(record: InvoiceImport, cutoff: datetime) -> bool:
    """True when a PROCESSING job started before ``cutoff`` or has no start time."""
    started_at = record.started_at
    if started_at is None:
        return True
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=UTC)
    return started_at < cutoff


def record_parsed_data(record: InvoiceImport, parsed: ParsedInvoiceData) -> None:
    """Store the parser output and its denormalized scalars on the job."""
    try:
        record.parsed_data = parsed.model_dump_json()
    except (ValueError, TypeError) as exc:
        msg = f"Error serializing parsed data: {exc}"
        raise MetadataSerializationError(msg) from exc
    record.total_amount = parsed.total_amount
    record.due_date = parsed.due_date
    record.bank_name = parsed.bank_name
    record.card_last_four_digits = parsed.card_number


def mark_completed(record: InvoiceImport, invoice: Invoice) -> None:
    """The job produced or updated ``invoice``."""
    _transition(record, ImportStatus.COMPLETED)
    record.invoice = invoice
    record.processed_at = utcnow()


def mark_manual_review(record: InvoiceImport) -> None:
    """Confidence was too low to touch an invoice automatically."""
    _transition(record, ImportStatus.MANUAL_REVIEW)
    record.processed_at = utcnow()


def mark_failed(record: InvoiceImport, error_message: str) -> None:
    """The job could not be processed; ``error_message`` must say why."""
    message = (error_message or "").strip()
    if not message:
        msg = "Error message must not be blank."
        raise ValueError(msg)
    _transition(record, ImportStatus.FAILED)
    record.error_message = message[:MAX_ERROR_MESSAGE_LEN]
    record.processed_at = utcnow()


def load_parsed_data(record: InvoiceImport) -> ParsedInvoiceData | None:
    """Deserialize the stored parser output, or None if absent or unreadable."""
    if not record.parsed_data:
        return None
    try:
        return ParsedInvoiceData.model_validate_json(record.parsed_data)
    except ValidationError:
        logger.warning(f"Error deserializing parsed data for import: {record.id}")
        return None


def to_job_response(record: InvoiceImport, message: str | None = None) -> ImportJobResponse:
    """Build the job view returned on upload and in listings."""
    return ImportJobResponse(
        id=record.id,
        message=message,
        status=ImportStatus(record.status),
        source=ImportSource(record.source),
        original_file_name=record.original_file_name,
        error_message=record.error_message,
        submitted_at=record.imported_at,
        processed_at=record.processed_at,
        total_amount=record.total_amount,
        bank_name=record.bank_name,
        card_last_four_digits=record.card_last_four_digits,
        invoice_id=record.invoice_id,
    )


def to_progress_response(record: InvoiceImport) -> ImportProgressResponse:
    """Build the progress view of a job."""
    status = ImportStatus(record.status)
    return ImportProgressResponse(
        id=record.id,
        status=status,
        status_message=STATUS_MESSAGES[status],
        submitted_at=record.imported_at,
        processed_at=record.processed_at,
        error_message=record.error_message,
        parsed_metadata=load_parsed_data(record),
        total_amount=record.total_amount,
        bank_name=record.bank_name,
        card_last_four_digits=record.card_last_four_digits,
        needs_manual_review=status == ImportStatus.MANUAL_REVIEW,
    )


def get_progress(session: Session, import_id: int, user_id: str) -> ImportProgressResponse:
    """Return the progress of a job owned by ``user_id``."""
    record = ImportRepository(session).get_for_user(import_id, user_id)
    if record is None:
        msg = "Import not found or access denied."
        raise ImportNotFoundError(msg)
    return to_progress_response(record)


def list_imports(session: Session, user_id: str, status: ImportStatus | None = None) -> list[ImportJobResponse]:
    """Return the user's jobs, newest first, optionally only those in ``status``."""
    records = ImportRepository(session).list_for_user(user_id, status)
    return [to_job_response(record) for record in records]

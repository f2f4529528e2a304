"""Tests for the background import orchestration."""

import concurrent.futures
import gc
from collections.abc import Callable
from datetime import date, timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from conftest import CARD_ID, OTHER_CARD_ID, OWNER, HoldingExecutor, StubParser, make_parsed
from invoice_importer.core.db import Invoice, InvoiceImport
from invoice_importer.core.errors import ImportQueueFullError, ImportValidationError, ParsingIOError
from invoice_importer.core.models import ImportSource, ImportStatus
from invoice_importer.core.repositories import ImportRepository
from invoice_importer.core.settings import Settings
from invoice_importer.core.utils import utcnow
from invoice_importer.services import lifecycle
from invoice_importer.services.file_service import FileService
from invoice_importer.workers.job_runner import (
    INTERRUPTED_MESSAGE,
    SUBMITTED_MESSAGE,
    ImportJobRunner,
    InvoiceLocks,
    determine_import_source,
    failure_message,
)

PDF_BYTES = b"%PDF-1.4 statement"


def load_job(session_factory: sessionmaker, import_id: int) -> InvoiceImport:
    """Read a job in a fresh session."""
    with session_factory() as session:
        return ImportRepository(session).get(import_id)


def invoice_count(session_factory: sessionmaker) -> int:
    """Number of invoices in the database."""
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(Invoice))


def job_count(session_factory: sessionmaker) -> int:
    """Number of import jobs in the database."""
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(InvoiceImport))


def test_determine_import_source() -> None:
    """Uploads are classified by extension."""
    cases = {
        "fatura.PDF": ImportSource.PDF,
        "foto.jpeg": ImportSource.IMAGE,
        "scan.png": ImportSource.IMAGE,
        "notes.txt": ImportSource.MANUAL,
        "": ImportSource.MANUAL,
        None: ImportSource.MANUAL,
    }
    for name, expected in cases.items():
        if determine_import_source(name) != expected:
            msg = f"determine_import_source({name!r}) != {expected}"
            raise AssertionError(msg)


def test_failure_message_prefixes() -> None:
    """The failure category is visible in the stored message."""
    cases = [
        (ParsingIOError("bad pdf"), "File parsing failed: bad pdf"),
        (ImportValidationError("nope"), "Processing failed: nope"),
        (RuntimeError("boom"), "Unexpected error: boom"),
        (RuntimeError(), "Unexpected error: RuntimeError"),
    ]
    for exc, expected in cases:
        if failure_message(exc) != expected:
            msg = f"failure_message({exc!r}) != {expected!r}"
            raise AssertionError(msg)


@pytest.mark.parametrize(
    ("card_id", "error"),
    [(999, "Credit card not found."), (OTHER_CARD_ID, "Credit card does not belong to user.")],
)
def test_invalid_card_creates_no_job(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, card_id: int, error: str
) -> None:
    """Validation errors go back to the caller and leave nothing behind."""
    runner = make_runner()
    with pytest.raises(ImportValidationError, match=error):
        runner.submit_import("fatura.pdf", PDF_BYTES, card_id, OWNER)
    if job_count(session_factory) != 0:
        msg = "Expected no import job to be recorded"
        raise AssertionError(msg)


def test_successful_import(make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker) -> None:
    """The upload returns PENDING right away and ends COMPLETED with its items in the invoice."""
    parser = StubParser(make_parsed())
    response = make_runner(parser=parser).submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    if response.status != ImportStatus.PENDING or response.message != SUBMITTED_MESSAGE:
        msg = f"Expected a PENDING submission, got {response}"
        raise AssertionError(msg)
    if parser.calls != [PDF_BYTES]:
        msg = "Expected the stored file to be handed to the parser"
        raise AssertionError(msg)

    job = load_job(session_factory, response.id)
    if job.status != ImportStatus.COMPLETED or job.invoice_id is None or job.processed_at is None:
        msg = f"Expected COMPLETED with an invoice, got {job.status} {job.invoice_id}"
        raise AssertionError(msg)
    if lifecycle.load_parsed_data(job) != make_parsed():
        msg = "Expected the parsed metadata to be stored on the job"
        raise AssertionError(msg)
    with session_factory() as session:
        invoice = session.get(Invoice, job.invoice_id)
        if invoice.month != "2026-03" or invoice.due_date != date(2026, 4, 10) or len(invoice.items) != 3:
            msg = f"Unexpected invoice {invoice.month} {invoice.due_date} with {len(invoice.items)} items"
            raise AssertionError(msg)


def test_reimporting_the_same_statement_adds_nothing(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker
) -> None:
    """Both jobs complete against the same invoice and no item is duplicated."""
    runner = make_runner()
    first = runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    second = runner.submit_import("fatura-copy.pdf", PDF_BYTES, CARD_ID, OWNER)
    first_job, second_job = load_job(session_factory, first.id), load_job(session_factory, second.id)
    if second_job.status != ImportStatus.COMPLETED or first_job.invoice_id != second_job.invoice_id:
        msg = f"Expected both jobs to reference one invoice, got {first_job.invoice_id} {second_job.invoice_id}"
        raise AssertionError(msg)
    with session_factory() as session:
        invoice = session.get(Invoice, first_job.invoice_id)
        if len(invoice.items) != 3:
            msg = f"Expected 3 items, got {len(invoice.items)}"
            raise AssertionError(msg)
    if invoice_count(session_factory) != 1:
        msg = "Expected exactly one invoice"
        raise AssertionError(msg)


def test_low_confidence_goes_to_manual_review(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker
) -> None:
    """Below the threshold no invoice is touched."""
    runner = make_runner(parser=StubParser(make_parsed(confidence=0.65)))
    response = runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    job = load_job(session_factory, response.id)
    if job.status != ImportStatus.MANUAL_REVIEW or job.invoice_id is not None or job.parsed_data is None:
        msg = f"Expected MANUAL_REVIEW with metadata and no invoice, got {job.status} {job.invoice_id}"
        raise AssertionError(msg)
    if invoice_count(session_factory) != 0:
        msg = "Expected no invoice to be created"
        raise AssertionError(msg)


def test_threshold_is_inclusive(make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker) -> None:
    """A confidence equal to the threshold is trusted."""
    response = make_runner(parser=StubParser(make_parsed(confidence=0.7))).submit_import(
        "fatura.pdf", PDF_BYTES, CARD_ID, OWNER
    )
    if load_job(session_factory, response.id).status != ImportStatus.COMPLETED:
        msg = "Expected COMPLETED at the threshold"
        raise AssertionError(msg)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (RuntimeError("boom"), "Unexpected error: boom"),
        (ParsingIOError("Could not read PDF: truncated"), "File parsing failed: Could not read PDF: truncated"),
    ],
)
def test_parser_errors_fail_the_job(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, error: Exception, expected: str
) -> None:
    """Any error while processing ends the job FAILED with a categorized message."""
    response = make_runner(parser=StubParser(error=error)).submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    job = load_job(session_factory, response.id)
    if job.status != ImportStatus.FAILED or job.error_message != expected:
        msg = f"Expected FAILED with {expected!r}, got {job.status} {job.error_message!r}"
        raise AssertionError(msg)
    if invoice_count(session_factory) != 0:
        msg = "Expected no invoice to be created"
        raise AssertionError(msg)


@pytest.mark.parametrize(
    ("file_name", "expected"),
    [
        ("foto.png", "Processing failed: Image parsing not yet implemented."),
        ("notes.txt", "Processing failed: Manual imports are not processed automatically."),
    ],
)
def test_sources_without_a_parser_fail(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, file_name: str, expected: str
) -> None:
    """Only PDFs are processed automatically."""
    parser = StubParser(make_parsed())
    response = make_runner(parser=parser).submit_import(file_name, b"data", CARD_ID, OWNER)
    job = load_job(session_factory, response.id)
    if job.status != ImportStatus.FAILED or job.error_message != expected:
        msg = f"Expected FAILED with {expected!r}, got {job.status} {job.error_message!r}"
        raise AssertionError(msg)
    if parser.calls:
        msg = "Did not expect the parser to run"
        raise AssertionError(msg)


def test_missing_stored_file_fails_the_job(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker
) -> None:
    """A stored file that disappeared is a file parsing failure."""
    holding = HoldingExecutor()
    runner = make_runner(executor=holding)
    response = runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    Path(load_job(session_factory, response.id).file_path).unlink()
    runner.process_import(response.id)
    job = load_job(session_factory, response.id)
    if job.status != ImportStatus.FAILED or not job.error_message.startswith("File parsing failed: "):
        msg = f"Expected a file parsing failure, got {job.status} {job.error_message!r}"
        raise AssertionError(msg)


def test_parse_timeout_fails_the_job(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, settings: Settings
) -> None:
    """A parser that runs too long is abandoned."""
    quick = settings.model_copy(update={"parse_timeout_seconds": 0.05})
    runner = make_runner(parser=StubParser(make_parsed(), delay=0.5), runner_settings=quick)
    response = runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    job = load_job(session_factory, response.id)
    if job.status != ImportStatus.FAILED or job.error_message != "File parsing failed: Parsing took longer than 0.05s":
        msg = f"Expected a timeout failure, got {job.status} {job.error_message!r}"
        raise AssertionError(msg)


def test_only_pending_jobs_are_processed(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker
) -> None:
    """Running a job twice is harmless."""
    parser = StubParser(make_parsed())
    runner = make_runner(parser=parser)
    response = runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    runner.process_import(response.id)
    runner.process_import(response.id + 1000)
    if len(parser.calls) != 1 or load_job(session_factory, response.id).status != ImportStatus.COMPLETED:
        msg = f"Expected a single run, got {len(parser.calls)} parser calls"
        raise AssertionError(msg)


def test_full_queue_rejects_submissions(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, settings: Settings
) -> None:
    """When every slot is taken the upload is refused without recording a job."""
    tiny = settings.model_copy(update={"worker_max_workers": 1, "worker_queue_capacity": 0})
    holding = HoldingExecutor()
    runner = make_runner(executor=holding, runner_settings=tiny)
    runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    with pytest.raises(ImportQueueFullError):
        runner.submit_import("other.pdf", PDF_BYTES, CARD_ID, OWNER)
    if job_count(session_factory) != 1 or len(holding.backlog) != 1:
        msg = f"Expected one queued job, got {job_count(session_factory)} jobs and {len(holding.backlog)} tasks"
        raise AssertionError(msg)


def test_validation_failure_frees_its_slot(make_runner: Callable[..., ImportJobRunner], settings: Settings) -> None:
    """A rejected upload does not consume queue capacity."""
    tiny = settings.model_copy(update={"worker_max_workers": 1, "worker_queue_capacity": 0})
    runner = make_runner(executor=HoldingExecutor(), runner_settings=tiny)
    with pytest.raises(ImportValidationError):
        runner.submit_import("fatura.pdf", PDF_BYTES, OTHER_CARD_ID, OWNER)
    runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)


@pytest.mark.parametrize(
    ("overrides", "month", "due_date"),
    [
        ({}, "2026-03", date(2026, 4, 10)),
        ({"invoice_month": None}, "2026-04", date(2026, 4, 10)),
        ({"invoice_month": None, "due_date": None}, "2026-04", date(2026, 4, 14)),
    ],
)
def test_resolve_invoice_period(
    make_runner: Callable[..., ImportJobRunner], overrides: dict, month: str, due_date: date
) -> None:
    """The month falls back to the due date, which falls back to today plus the default term."""
    resolved = make_runner().resolve_invoice_period(make_parsed(**overrides))
    if resolved != (month, due_date):
        msg = f"Expected {(month, due_date)}, got {resolved}"
        raise AssertionError(msg)


def test_resume_interrupted(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, file_service: FileService
) -> None:
    """On startup, stale PROCESSING jobs fail, recent ones are left alone and PENDING jobs are picked up again."""
    stuck_path = file_service.save_upload("stuck.pdf", PDF_BYTES)
    busy_path = file_service.save_upload("busy.pdf", PDF_BYTES)
    waiting_path = file_service.save_upload("wait.pdf", PDF_BYTES)
    with session_factory() as session:
        repo = ImportRepository(session)
        stuck = repo.add(lifecycle.create_import(OWNER, CARD_ID, ImportSource.PDF, "stuck.pdf", stuck_path))
        lifecycle.mark_processing(stuck)
        stuck.started_at = utcnow() - timedelta(hours=1)
        busy = repo.add(lifecycle.create_import(OWNER, CARD_ID, ImportSource.PDF, "busy.pdf", busy_path))
        lifecycle.mark_processing(busy)
        waiting = repo.add(lifecycle.create_import(OWNER, CARD_ID, ImportSource.PDF, "wait.pdf", waiting_path))
        session.commit()
        stuck_id, busy_id, waiting_id = stuck.id, busy.id, waiting.id

    make_runner().resume_interrupted()

    stuck_job, waiting_job = load_job(session_factory, stuck_id), load_job(session_factory, waiting_id)
    if stuck_job.status != ImportStatus.FAILED or stuck_job.error_message != INTERRUPTED_MESSAGE:
        msg = f"Expected the interrupted job to fail, got {stuck_job.status} {stuck_job.error_message!r}"
        raise AssertionError(msg)
    if load_job(session_factory, busy_id).status != ImportStatus.PROCESSING:
        msg = "Expected a recently started job to keep processing"
        raise AssertionError(msg)
    if waiting_job.status != ImportStatus.COMPLETED:
        msg = f"Expected the pending job to complete, got {waiting_job.status}"
        raise AssertionError(msg)


def test_processing_job_without_start_time_is_stale(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker, settings: Settings
) -> None:
    """Jobs with no recorded start are treated as interrupted; a zero cutoff fails everything in flight."""
    with session_factory() as session:
        repo = ImportRepository(session)
        legacy = repo.add(lifecycle.create_import(OWNER, CARD_ID, ImportSource.PDF, "old.pdf", "missing.pdf"))
        legacy.status = ImportStatus.PROCESSING.value
        fresh = repo.add(lifecycle.create_import(OWNER, CARD_ID, ImportSource.PDF, "new.pdf", "missing.pdf"))
        lifecycle.mark_processing(fresh)
        fresh.started_at = utcnow() - timedelta(seconds=5)
        session.commit()
        legacy_id, fresh_id = legacy.id, fresh.id

    make_runner(runner_settings=settings.model_copy(update={"stale_processing_seconds": 0.0})).resume_interrupted()

    for import_id in (legacy_id, fresh_id):
        if load_job(session_factory, import_id).status != ImportStatus.FAILED:
            msg = f"Expected import {import_id} to be failed as interrupted"
            raise AssertionError(msg)


def test_claim_for_processing_succeeds_once(session_factory: sessionmaker, file_service: FileService) -> None:
    """Two workers racing for one PENDING job: only the first claim wins."""
    path = file_service.save_upload("fatura.pdf", PDF_BYTES)
    with session_factory() as session:
        record = ImportRepository(session).add(
            lifecycle.create_import(OWNER, CARD_ID, ImportSource.PDF, "fatura.pdf", path)
        )
        session.commit()
        import_id = record.id

    with session_factory() as first, session_factory() as second:
        won = lifecycle.claim_for_processing(first, import_id)
        first.commit()
        lost = lifecycle.claim_for_processing(second, import_id)
        second.commit()
    if not won or lost:
        msg = f"Expected exactly one successful claim, got {won} and {lost}"
        raise AssertionError(msg)
    job = load_job(session_factory, import_id)
    if job.status != ImportStatus.PROCESSING or job.started_at is None:
        msg = f"Expected a PROCESSING job with a start time, got {job.status} {job.started_at}"
        raise AssertionError(msg)
    with session_factory() as session:
        if lifecycle.claim_for_processing(session, import_id + 1000):
            msg = "Expected no claim for a missing job"
            raise AssertionError(msg)


def test_job_claimed_elsewhere_is_not_processed(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker
) -> None:
    """A worker that loses the claim leaves the job to its owner."""
    parser = StubParser(make_parsed())
    runner = make_runner(parser=parser, executor=HoldingExecutor())
    response = runner.submit_import("fatura.pdf", PDF_BYTES, CARD_ID, OWNER)
    with session_factory() as session:
        lifecycle.claim_for_processing(session, response.id)
        session.commit()

    runner.process_import(response.id)

    if parser.calls or load_job(session_factory, response.id).status != ImportStatus.PROCESSING:
        msg = f"Expected the job to stay with its owner, got {len(parser.calls)} parser calls"
        raise AssertionError(msg)


def test_invoice_locks_are_released_when_unused() -> None:
    """Lock entries only live while a worker holds them."""
    locks = InvoiceLocks()
    with locks.hold(CARD_ID, "2026-03"), locks.hold(OTHER_CARD_ID, "2026-03"):
        if len(locks) != 2:
            msg = f"Expected 2 live locks, got {len(locks)}"
            raise AssertionError(msg)
    gc.collect()
    if len(locks) != 0:
        msg = f"Expected no live locks after release, got {len(locks)}"
        raise AssertionError(msg)


def test_concurrent_imports_share_one_invoice(
    make_runner: Callable[..., ImportJobRunner], session_factory: sessionmaker
) -> None:
    """Parallel imports for one card and month never create two invoices or duplicate items."""
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=4)
    runner = make_runner(executor=pool)
    responses = [runner.submit_import(f"fatura-{n}.pdf", PDF_BYTES, CARD_ID, OWNER) for n in range(4)]
    runner.shutdown(wait=True)

    jobs = [load_job(session_factory, response.id) for response in responses]
    if any(job.status != ImportStatus.COMPLETED for job in jobs):
        msg = f"Expected every job to complete, got {[(job.status, job.error_message) for job in jobs]}"
        raise AssertionError(msg)
    if len({job.invoice_id for job in jobs}) != 1 or invoice_count(session_factory) != 1:
        msg = "Expected all jobs to reference a single invoice"
        raise AssertionError(msg)
    with session_factory() as session:
        invoice = session.get(Invoice, jobs[0].invoice_id)
        if len(invoice.items) != 3:
            msg = f"Expected 3 items, got {len(invoice.items)}"
            raise AssertionError(msg)

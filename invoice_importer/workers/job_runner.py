"""Background orchestration of statement imports.

Submission validates the target card, stores the file and records a PENDING job, then
hands the job id to a bounded worker pool. A worker parses the statement, stores what it
found, and either parks the job for manual review or merges the items into the card's
monthly invoice. Whatever goes wrong, the job ends COMPLETED, FAILED or MANUAL_REVIEW.
"""

import concurrent.futures
import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, timedelta
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from invoice_importer.core.db import InvoiceImport
from invoice_importer.core.errors import (
    ImportQueueFullError,
    InvoiceImportError,
    ParsingIOError,
    ParsingTimeoutError,
    UnsupportedSourceError,
)
from invoice_importer.core.models import ImportJobResponse, ImportSource, ImportStatus, ParsedInvoiceData
from invoice_importer.core.repositories import CreditCardLookup, ImportRepository, InvoiceStore
from invoice_importer.core.settings import Settings, get_settings
from invoice_importer.core.utils import get_logger, utcnow
from invoice_importer.dedup.reconciler import Reconciler
from invoice_importer.parsing.statement_parser import StatementParser
from invoice_importer.services import lifecycle
from invoice_importer.services.file_service import FileService

logger = get_logger("invoice-importer.worker")

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif"})
SUBMITTED_MESSAGE = "Import started. Processing in background."
INTERRUPTED_MESSAGE = "Processing interrupted before completion"
UNSUPPORTED_SOURCE_MESSAGES = {
    ImportSource.IMAGE: "Image parsing not yet implemented.",
    ImportSource.EMAIL: "Email parsing not yet implemented.",
    ImportSource.MANUAL: "Manual imports are not processed automatically.",
}


def determine_import_source(file_name: str | None) -> ImportSource:
    """Classify an upload by its file extension."""
    extension = Path(file_name or "").suffix.lower()
    if extension == ".pdf":
        return ImportSource.PDF
    if extension in IMAGE_EXTENSIONS:
        return ImportSource.IMAGE
    return ImportSource.MANUAL


def failure_message(exc: BaseException) -> str:
    """Render a non-empty, user-facing message for a failed job."""
    detail = str(exc).strip() or type(exc).__name__
    if isinstance(exc, ParsingIOError):
        return f"File parsing failed: {detail}"
    if isinstance(exc, InvoiceImportError):
        return f"Processing failed: {detail}"
    return f"Unexpected error: {detail}"


class InvoiceLocks:
    """In-process locks keyed by (credit card, month).

    Entries are weakly referenced and disappear once no worker holds or waits on them.
    """

    def __init__(self) -> None:
        """Initialize an empty lock table."""
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[tuple[int, str], threading.Lock] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        """Number of (card, month) keys currently in use."""
        return len(self._locks)

    @contextmanager
    def hold(self, credit_card_id: int, month: str) -> Iterator[None]:
        """Serialize invoice updates for one card and month."""
        key = (credit_card_id, month)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
        with lock:
            yield


class ImportJobRunner:
    """Submits statement imports and processes them on a bounded worker pool."""

    def __init__(
        self,
        session_factory: sessionmaker,
        file_service: FileService,
        parser: StatementParser | None = None,
        reconciler: Reconciler | None = None,
        settings: Settings | None = None,
        executor: concurrent.futures.Executor | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        """Initialize the runner; a thread pool sized from settings is created unless ``executor`` is given."""
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.file_service = file_service
        self.today = today
        self.parser = parser or StatementParser(today=today)
        self.reconciler = reconciler or Reconciler(today=today)
        self.executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.worker_max_workers, thread_name_prefix="invoice-import"
        )
        self._parse_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.worker_max_workers, thread_name_prefix="invoice-parse"
        )
        self._slots = threading.BoundedSemaphore(self.settings.worker_max_workers + self.settings.worker_queue_capacity)
        self._locks = InvoiceLocks()

    def submit_import(
        self, original_file_name: str, content: bytes, credit_card_id: int, user_id: str
    ) -> ImportJobResponse:
        """Validate, store and record an upload, then schedule it; returns the PENDING job."""
        logger.info(f"Starting invoice import for user: {user_id}, file: {original_file_name}")
        if not self._slots.acquire(blocking=False):
            msg = "Import queue is full, try again later."
            raise ImportQueueFullError(msg)
        try:
            with self.session_factory() as session:
                CreditCardLookup(session).get(credit_card_id, user_id)
                source = determine_import_source(original_file_name)
                file_path = self.file_service.save_upload(original_file_name, content)
                record = ImportRepository(session).add(
                    lifecycle.create_import(user_id, credit_card_id, source, original_file_name, file_path)
                )
                session.commit()
                response = lifecycle.to_job_response(record, SUBMITTED_MESSAGE)
        except Exception:
            self._slots.release()
            raise
        self._schedule(response.id)
        return response

    def _schedule(self, import_id: int) -> None:
        """Queue an import on the worker pool; the caller already holds a slot."""
        try:
            future = self.executor.submit(self.process_import, import_id)
        except RuntimeError as exc:
            self._slots.release()
            logger.exception(f"Could not schedule import {import_id}")
            self._fail(import_id, failure_message(exc))
            return
        future.add_done_callback(lambda _: self._slots.release())
        logger.info(f"Background job scheduled: import_id={import_id}")

    def process_import(self, import_id: int) -> None:
        """Run one import to a terminal or manual-review state. Only PENDING jobs are processed."""
        logger.info(f"Processing import: {import_id}")
        with self.session_factory() as session:
            try:
                repo = ImportRepository(session)
                if not lifecycle.claim_for_processing(session, import_id):
                    session.rollback()
                    record = repo.get(import_id)
                    if record is None:
                        logger.error(f"Import not found: {import_id}")
                    else:
                        logger.info(f"Import {import_id} is already {record.status}, skipping")
                    return
                session.commit()
                self._process(session, repo.get(import_id))
            except Exception as exc:
                logger.exception(f"Error processing import {import_id}")
                session.rollback()
                self._fail(import_id, failure_message(exc))

    def _process(self, session: Session, record: InvoiceImport) -> None:
        parsed = self._parse(record)
        logger.info(
            f"Parsed data for import {record.id}: {len(parsed.items)} items, total: {parsed.total_amount}, "
            f"due date: {parsed.due_date}, confidence: {parsed.confidence}"
        )
        lifecycle.record_parsed_data(record, parsed)

        if parsed.confidence < self.settings.manual_review_threshold:
            lifecycle.mark_manual_review(record)
            session.commit()
            logger.info(f"Import {record.id} marked for manual review due to low confidence: {parsed.confidence}")
            return

        month, due_date = self.resolve_invoice_period(parsed)
        with self._locks.hold(record.credit_card_id, month):
            store = InvoiceStore(session)
            invoice = store.find_by_card_and_month(record.credit_card_id, month)
            if invoice is None:
                invoice = store.create(record.credit_card_id, month, due_date)
                logger.info(f"Created new invoice {invoice.id} for card {record.credit_card_id} and month {month}")
            else:
                logger.info(f"Found existing invoice {invoice.id} for card {record.credit_card_id} and month {month}")
            result = self.reconciler.add_items(invoice, parsed.items)
            store.save(invoice)
            lifecycle.mark_completed(record, invoice)
            session.commit()
        logger.info(
            f"Import {record.id} completed, invoice {invoice.id}: added {result.added}, skipped {result.skipped}"
        )

    def _parse(self, record: InvoiceImport) -> ParsedInvoiceData:
        source = ImportSource(record.source)
        if source is not ImportSource.PDF:
            raise UnsupportedSourceError(UNSUPPORTED_SOURCE_MESSAGES[source])
        try:
            content = self.file_service.get_file(record.file_path)
        except Exception as exc:
            msg = f"Could not read stored file {record.file_path}: {exc}"
            raise ParsingIOError(msg) from exc
        future = self._parse_executor.submit(self.parser.parse_pdf, content)
        try:
            return future.result(timeout=self.settings.parse_timeout_seconds)
        except concurrent.futures.TimeoutError as exc:
            msg = f"Parsing took longer than {self.settings.parse_timeout_seconds:g}s"
            raise ParsingTimeoutError(msg) from exc

    def resolve_invoice_period(self, parsed: ParsedInvoiceData) -> tuple[str, date]:
        """Return the target invoice month (``YYYY-MM``) and the due date for a new invoice."""
        due_date = parsed.due_date or self.today() + timedelta(days=self.settings.default_due_date_days)
        month = parsed.invoice_month or f"{due_date:%Y-%m}"
        return month, due_date

    def _fail(self, import_id: int, message: str) -> None:
        try:
            with self.session_factory() as session:
                record = ImportRepository(session).get(import_id)
                if record is None:
                    logger.error(f"Import not found while recording failure: {import_id}")
                    return
                lifecycle.mark_failed(record, message)
                session.commit()
        except Exception:
            logger.exception(f"Error handling import failure: {import_id}")

    def resume_interrupted(self) -> None:
        """Fail stale PROCESSING jobs and reschedule the PENDING ones.

        A PROCESSING job counts as interrupted once it started more than ``stale_processing_seconds``
        ago, so jobs still running in another process are left alone.
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_processing_seconds)
        with self.session_factory() as session:
            repo = ImportRepository(session)
            for record in repo.list_by_status(ImportStatus.PROCESSING):
                if not lifecycle.is_stale(record, cutoff):
                    logger.info(f"Import {record.id} started recently, leaving it to its worker")
                    continue
                logger.warning(f"Import {record.id} was interrupted while processing")
                lifecycle.mark_failed(record, INTERRUPTED_MESSAGE)
            session.commit()
            pending_ids = [record.id for record in repo.list_by_status(ImportStatus.PENDING)]
        for import_id in pending_ids:
            if not self._slots.acquire(blocking=False):
                logger.warning(f"Import queue is full, {import_id} stays pending")
                continue
            self._schedule(import_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and, by default, wait for running imports."""
        self.executor.shutdown(wait=wait)
        self._parse_executor.shutdown(wait=wait)

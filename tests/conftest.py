"""Shared fixtures: a temporary database, seeded credit cards, and a runner that processes inline."""

import concurrent.futures
import time
from collections.abc import Callable, Iterator
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

from invoice_importer.core.db import CreditCard, create_session_factory, get_engine, init_db
from invoice_importer.core.models import ParsedInvoiceData, ParsedInvoiceItem
from invoice_importer.core.settings import Settings
from invoice_importer.services.file_service import FileService, LocalFileBackend
from invoice_importer.workers.job_runner import ImportJobRunner

TODAY = date(2026, 3, 15)
OWNER = "user-1"
OTHER_USER = "user-2"
CARD_ID = 1
OTHER_CARD_ID = 2


def fixed_today() -> date:
    """Clock used by every component under test."""
    return TODAY


class InlineExecutor(concurrent.futures.Executor):
    """Executor that runs each task immediately on the caller's thread."""

    def submit(self, fn: Callable, /, *args: object, **kwargs: object) -> concurrent.futures.Future:
        """Run ``fn`` now and return its completed future."""
        future: concurrent.futures.Future = concurrent.futures.Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future


class HoldingExecutor(concurrent.futures.Executor):
    """Executor that accepts tasks and never runs them."""

    def __init__(self) -> None:
        """Initialize with an empty backlog."""
        self.backlog: list[tuple[Callable, tuple]] = []

    def submit(self, fn: Callable, /, *args: object, **kwargs: object) -> concurrent.futures.Future:
        """Remember the task and return a future that never completes."""
        _ = kwargs
        self.backlog.append((fn, args))
        return concurrent.futures.Future()


class StubParser:
    """Parser double returning a canned result or raising a canned error."""

    def __init__(self, result: ParsedInvoiceData | None = None, error: Exception | None = None, delay: float = 0.0):
        """Initialize the stub."""
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[bytes] = []

    def parse_pdf(self, content: bytes) -> ParsedInvoiceData:
        """Return the canned result."""
        self.calls.append(content)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def make_parsed(confidence: float = 0.9, **overrides: object) -> ParsedInvoiceData:
    """Build a parser result for a March 2026 statement with three items."""
    data = {
        "card_number": "1234",
        "due_date": date(2026, 4, 10),
        "total_amount": Decimal("467.66"),
        "bank_name": "SANTANDER",
        "invoice_month": "2026-03",
        "confidence": confidence,
        "items": [
            ParsedInvoiceItem(description="UBER TRIP", amount=Decimal("25.90"), purchase_date=date(2026, 3, 6)),
            ParsedInvoiceItem(description="IOF DESPESA NO EXTERIOR", amount=Decimal("13.54"), purchase_date=TODAY),
            ParsedInvoiceItem(
                description="LIBERTY DUTY FREE",
                amount=Decimal("123.45"),
                purchase_date=TODAY,
                installments=2,
                total_installments=4,
            ),
        ],
    }
    data.update(overrides)
    return ParsedInvoiceData(**data)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at temporary storage."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        upload_directory=str(tmp_path / "uploads"),
        log_directory=str(tmp_path / "logs"),
        worker_max_workers=2,
        worker_queue_capacity=10,
        parse_timeout_seconds=5.0,
    )


@pytest.fixture
def session_factory(settings: Settings) -> sessionmaker:
    """Session factory over a fresh database with two credit cards of different owners."""
    engine = get_engine(settings.database_url)
    init_db(engine)
    factory = create_session_factory(engine)
    with factory() as session:
        session.add_all(
            [
                CreditCard(id=CARD_ID, owner_id=OWNER, name="Santander Free", last_four_digits="1234"),
                CreditCard(id=OTHER_CARD_ID, owner_id=OTHER_USER, name="Nubank"),
            ]
        )
        session.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def file_service(settings: Settings) -> FileService:
    """File service writing into the temporary upload directory."""
    return FileService(LocalFileBackend(settings.upload_directory))


@pytest.fixture
def make_runner(
    settings: Settings, session_factory: sessionmaker, file_service: FileService
) -> Iterator[Callable[..., ImportJobRunner]]:
    """Factory for runners processing inline with a stub parser."""
    runners: list[ImportJobRunner] = []

    def factory(
        parser: object | None = None,
        executor: concurrent.futures.Executor | None = None,
        runner_settings: Settings | None = None,
    ) -> ImportJobRunner:
        runner = ImportJobRunner(
            session_factory,
            file_service,
            parser=parser or StubParser(make_parsed()),
            settings=runner_settings or settings,
            executor=executor or InlineExecutor(),
            today=fixed_today,
        )
        runners.append(runner)
        return runner

    yield factory
    for runner in runners:
        runner.shutdown(wait=True)

"""Session-bound data access helpers used by the import pipeline."""

from datetime import date

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from invoice_importer.core.db import CreditCard, Invoice, InvoiceImport
from invoice_importer.core.errors import ImportValidationError
from invoice_importer.core.models import ImportStatus
from invoice_importer.core.utils import get_logger

logger = get_logger("invoice-importer.db")


class CreditCardLookup:
    """Resolves a credit card on behalf of a user."""

    def __init__(self, session: Session) -> None:
        """Initialize the lookup with a SQLAlchemy session."""
        self.session = session

    def get(self, card_id: int, user_id: str) -> CreditCard:
        """Return the card if it exists and belongs to ``user_id``."""
        card = self.session.get(CreditCard, card_id)
        if card is None:
            msg = "Credit card not found."
            raise ImportValidationError(msg)
        if card.owner_id != user_id:
            msg = "Credit card does not belong to user."
            raise ImportValidationError(msg)
        return card


class InvoiceStore:
    """Finds, creates and saves monthly invoices."""

    def __init__(self, session: Session) -> None:
        """Initialize the store with a SQLAlchemy session."""
        self.session = session

    def find_by_card_and_month(self, card_id: int, month: str) -> Invoice | None:
        """Return the invoice of ``card_id`` for ``month`` (``YYYY-MM``), if any."""
        stmt = select(Invoice).where(Invoice.credit_card_id == card_id, Invoice.month == month)
        return self.session.scalars(stmt).first()

    def create(self, card_id: int, month: str, due_date: date) -> Invoice:
        """Create and flush an empty invoice so it gets an id."""
        invoice = Invoice(credit_card_id=card_id, month=month, due_date=due_date)
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def save(self, invoice: Invoice) -> Invoice:
        """Flush pending changes of ``invoice``; the caller commits."""
        self.session.add(invoice)
        self.session.flush()
        return invoice


class ImportRepository:
    """Queries and persists import jobs."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a SQLAlchemy session."""
        self.session = session

    def get(self, import_id: int) -> InvoiceImport | None:
        """Return an import by id regardless of owner."""
        return self.session.get(InvoiceImport, import_id)

    def get_for_user(self, import_id: int, user_id: str) -> InvoiceImport | None:
        """Return an import only if it belongs to ``user_id``."""
        stmt = select(InvoiceImport).where(InvoiceImport.id == import_id, InvoiceImport.user_id == user_id)
        return self.session.scalars(stmt).first()

    def list_for_user(self, user_id: str, status: ImportStatus | None = None) -> list[InvoiceImport]:
        """Return a user's imports, newest first, optionally filtered by status."""
        stmt = select(InvoiceImport).where(InvoiceImport.user_id == user_id)
        if status is not None:
            stmt = stmt.where(InvoiceImport.status == ImportStatus(status).value)
        stmt = stmt.order_by(InvoiceImport.imported_at.desc(), InvoiceImport.id.desc())
        return list(self.session.scalars(stmt))

    def list_by_status(self, status: ImportStatus) -> list[InvoiceImport]:
        """Return every import in ``status``, oldest first."""
        stmt = select(InvoiceImport).where(InvoiceImport.status == status.value).order_by(InvoiceImport.id)
        return list(self.session.scalars(stmt))

    def update_status_if(self, import_id: int, current: ImportStatus, target: ImportStatus, **values) -> bool:
        """Move an import from ``current`` to ``target`` in one conditional UPDATE.

        Returns False when the row is gone or no longer in ``current``, e.g. because another
        worker changed it first. Loaded instances are not refreshed; the caller commits.
        """
        stmt = (
            update(InvoiceImport)
            .where(InvoiceImport.id == import_id, InvoiceImport.status == current.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def add(self, record: InvoiceImport) -> InvoiceImport:
        """Add and flush a new import so it gets an id."""
        self.session.add(record)
        self.session.flush()
        logger.debug(f"Created import record {record.id} for user {record.user_id}")
        return record

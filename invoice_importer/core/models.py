"""Pydantic models for the Invoice Importer.

This module defines the statuses and sources of an import, the parser's output schema
(``ParsedInvoiceData`` and its candidate items, which is also the schema of the metadata
blob stored on each job), and the response models exposed by the API.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class ImportStatus(StrEnum):
    """Life-cycle status of an import job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class ImportSource(StrEnum):
    """Where the uploaded statement came from."""

    PDF = "PDF"
    IMAGE = "IMAGE"
    EMAIL = "EMAIL"
    MANUAL = "MANUAL"


class ParsedInvoiceItem(BaseModel):
    """A candidate line item extracted from a statement, not yet persisted."""

    description: str
    amount: Decimal
    purchase_date: date | None = None
    category: str | None = None
    installments: int | None = 1
    total_installments: int | None = 1
    confidence: float = 0.9


class ParsedInvoiceData(BaseModel):
    """Everything the parser extracted from one statement."""

    credit_card_name: str | None = None
    card_number: str | None = None
    due_date: date | None = None
    total_amount: Decimal | None = None
    items: list[ParsedInvoiceItem] = Field(default_factory=list)
    bank_name: str | None = None
    invoice_month: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ItemAdditionResult(BaseModel):
    """Counts produced by one reconciliation batch."""

    added: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)

    @property
    def total_processed(self) -> int:
        """Number of candidates looked at."""
        return self.added + self.skipped

    @property
    def success_rate(self) -> float:
        """Share of candidates that were added, in percent."""
        if self.total_processed == 0:
            return 0.0
        return self.added / self.total_processed * 100


class ImportJobResponse(BaseModel):
    """Pydantic model describing an import job after submission or in listings."""

    id: int
    message: str | None = None
    status: ImportStatus
    source: ImportSource
    original_file_name: str
    error_message: str | None = None
    submitted_at: datetime
    processed_at: datetime | None = None
    total_amount: Decimal | None = None
    bank_name: str | None = None
    card_last_four_digits: str | None = None
    invoice_id: int | None = None


class ImportProgressResponse(BaseModel):
    """Pydantic model representing the progress of an import job."""

    id: int
    status: ImportStatus
    status_message: str
    submitted_at: datetime
    processed_at: datetime | None = None
    error_message: str | None = None
    parsed_metadata: ParsedInvoiceData | None = None
    total_amount: Decimal | None = None
    bank_name: str | None = None
    card_last_four_digits: str | None = None
    needs_manual_review: bool = False

"""StatementParser: turns raw credit-card statement text into candidate items and metadata.

Extraction is best effort. Metadata fields are matched independently and any of them may
be missing; lines that match no pattern are dropped. The resulting confidence score tells
the caller whether the outcome can be trusted without a human looking at it.
"""

import io
import re
from collections.abc import Callable
from datetime import date
from decimal import Decimal

import pdfplumber

from invoice_importer.core.errors import ParsingIOError
from invoice_importer.core.models import ParsedInvoiceData, ParsedInvoiceItem
from invoice_importer.core.utils import get_logger, truncate
from invoice_importer.parsing.patterns import (
    ITEM_CONFIDENCE,
    FeeMatch,
    GenericMatch,
    InstallmentMatch,
    InternationalMatch,
    LineMatch,
    NoMatch,
    classify_line,
    parse_amount,
)

logger = get_logger("invoice-importer.parser")

MAX_TEXT_LOG_LEN = 500
PDF_MAGIC = b"%PDF"
PDF_HEADER_WINDOW = 1024

CARD_NUMBER_PATTERN = re.compile(r"\*{4}\s*(\d{4})")
DUE_DATE_PATTERN = re.compile(r"(?:vencimento|due date|vence em)\s*:?\s*(\d{2})/(\d{2})/(\d{4})", re.IGNORECASE)
TOTAL_PATTERN = re.compile(r"(?:total|valor total|amount)\s*:?\s*R\$\s*([0-9.,]+)", re.IGNORECASE)
BANK_PATTERN = re.compile(r"\b(?:banco|bank)[ \t]*:?[ \t]*([A-Za-z][A-Za-z \t]*)", re.IGNORECASE)
INVOICE_MONTH_PATTERN = re.compile(r"(?<!\d)(\d{2})/(\d{4})(?!\d)")
CARD_NAME_PATTERNS = (
    re.compile(r"cart[ãa]o[ \t]*:?[ \t]*([A-Za-z][A-Za-z \t]*)", re.IGNORECASE),
    re.compile(r"\bcard[ \t]*:?[ \t]*([A-Za-z][A-Za-z \t]*)", re.IGNORECASE),
    re.compile(r"([A-Za-z][A-Za-z \t]*?)[ \t]*cart[ãa]o", re.IGNORECASE),
)

SHORT_TEXT_LEN = 100
LONG_TEXT_LEN = 500
MIN_CARD_NAME_LEN = 2
MONTHS_IN_YEAR = 12


def calculate_confidence(text: str, total_amount: Decimal | None, due_date: date | None, item_count: int) -> float:
    """Score extraction quality in [0, 1] from the evidence that was found."""
    confidence = 0.0
    if len(text) > SHORT_TEXT_LEN:
        confidence += 0.2
    if len(text) > LONG_TEXT_LEN:
        confidence += 0.1
    if total_amount is not None:
        confidence += 0.3
    if due_date is not None:
        confidence += 0.2
    if item_count > 0:
        confidence += 0.2
    if item_count > 1:
        confidence += 0.1
    return round(min(max(confidence, 0.0), 1.0), 2)


def match_to_item(match: LineMatch, today: date) -> ParsedInvoiceItem | None:
    """Convert a line match into a candidate item; undated kinds are dated ``today``."""
    if isinstance(match, FeeMatch):
        return ParsedInvoiceItem(
            description=match.description, amount=match.amount, purchase_date=today, confidence=ITEM_CONFIDENCE
        )
    if isinstance(match, InstallmentMatch):
        return ParsedInvoiceItem(
            description=match.description,
            amount=match.amount,
            purchase_date=match.purchase_date or today,
            installments=match.installment,
            total_installments=match.total_installments,
            confidence=ITEM_CONFIDENCE,
        )
    if isinstance(match, InternationalMatch | GenericMatch):
        return ParsedInvoiceItem(
            description=match.description,
            amount=match.amount,
            purchase_date=match.purchase_date,
            confidence=ITEM_CONFIDENCE,
        )
    return None


class StatementParser:
    """Parser for credit-card statements in PDF or plain-text form."""

    def __init__(self, today: Callable[[], date] = date.today) -> None:
        """Initialize the parser with the clock used to date undated lines."""
        self.today = today

    def parse_pdf(self, content: bytes) -> ParsedInvoiceData:
        """Extract the text layer of a PDF and parse it."""
        return self.extract_invoice_data(self.extract_pdf_text(content))

    def extract_pdf_text(self, content: bytes) -> str:
        """Return the concatenated text of every page, raising ParsingIOError on unreadable files."""
        if PDF_MAGIC not in content[:PDF_HEADER_WINDOW]:
            msg = "File is not a PDF document"
            raise ParsingIOError(msg)
        pages_text = []
        try:
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                for page in pdf.pages:
                    text = page.extract_text()
                    if text:
                        pages_text.append(text)
        except Exception as exc:
            msg = f"Could not read PDF: {exc}"
            raise ParsingIOError(msg) from exc
        if not pages_text:
            logger.warning("No text layer found in PDF")
        text = "\n".join(pages_text)
        logger.debug(f"Extracted text from PDF: {truncate(text, MAX_TEXT_LOG_LEN)}")
        return text

    def extract_invoice_data(self, text: str) -> ParsedInvoiceData:
        """Parse statement text into metadata, candidate items and a confidence score."""
        due_date = self.extract_due_date(text)
        total_amount = self.extract_total_amount(text)
        items = self.extract_items(text)
        return ParsedInvoiceData(
            credit_card_name=self.extract_credit_card_name(text),
            card_number=self.extract_card_number(text),
            due_date=due_date,
            total_amount=total_amount,
            items=items,
            bank_name=self.extract_bank_name(text),
            invoice_month=self.extract_invoice_month(text),
            confidence=calculate_confidence(text, total_amount, due_date, len(items)),
        )

    def extract_credit_card_name(self, text: str) -> str | None:
        """Return the card product name, if printed."""
        for pattern in CARD_NAME_PATTERNS:
            match = pattern.search(text)
            if match:
                name = match.group(1).strip()
                if len(name) > MIN_CARD_NAME_LEN:
                    return name
        return None

    def extract_card_number(self, text: str) -> str | None:
        """Return the last four digits of the card number."""
        match = CARD_NUMBER_PATTERN.search(text)
        return match.group(1) if match else None

    def extract_due_date(self, text: str) -> date | None:
        """Return the statement due date."""
        match = DUE_DATE_PATTERN.search(text)
        if not match:
            return None
        day, month, year = (int(g) for g in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            logger.warning(f"Error parsing due date: {match.group(0)}")
            return None

    def extract_total_amount(self, text: str) -> Decimal | None:
        """Return the statement total."""
        match = TOTAL_PATTERN.search(text)
        if not match:
            return None
        try:
            return parse_amount(match.group(1))
        except ValueError:
            logger.warning(f"Error parsing total amount: {match.group(0)}")
            return None

    def extract_bank_name(self, text: str) -> str | None:
        """Return the issuing bank's name."""
        match = BANK_PATTERN.search(text)
        if not match:
            return None
        return " ".join(match.group(1).split()) or None

    def extract_invoice_month(self, text: str) -> str | None:
        """Return the first valid ``MM/YYYY`` reference as ``YYYY-MM``."""
        for match in INVOICE_MONTH_PATTERN.finditer(text):
            month, year = int(match.group(1)), int(match.group(2))
            if 1 <= month <= MONTHS_IN_YEAR:
                return f"{year:04d}-{month:02d}"
        return None

    def extract_items(self, text: str) -> list[ParsedInvoiceItem]:
        """Classify every line and keep the ones that are transactions."""
        today = self.today()
        items: list[ParsedInvoiceItem] = []
        ignored: list[str] = []
        lines = text.splitlines()
        logger.info(f"Text has {len(lines)} lines")
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            match = classify_line(line, today)
            if isinstance(match, NoMatch):
                logger.debug(f"Skipping line ({match.reason}): '{line}'")
                if match.reason != "stop word":
                    ignored.append(f"{match.reason.upper()}: {line}")
                continue
            item = match_to_item(match, today)
            logger.debug(f"Matched {type(match).__name__}: '{line}' -> {item.amount}")
            items.append(item)
        logger.info(f"Extracted {len(items)} items, ignored {len(ignored)} lines")
        for entry in ignored:
            logger.warning(f"Ignored line {entry}")
        return items

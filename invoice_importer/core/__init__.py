"""Core package: provides models, database helpers, settings, errors and shared utilities."""

from .db import Base, Invoice, InvoiceImport, InvoiceItem  # noqa: F401
from .models import ImportSource, ImportStatus, ParsedInvoiceData, ParsedInvoiceItem  # noqa: F401
from .settings import Settings  # noqa: F401
from .utils import get_logger  # noqa: F401

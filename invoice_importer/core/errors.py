"""Exception hierarchy for the import pipeline.

Submission-time errors (``ImportValidationError``, ``ImportQueueFullError``) are
returned to the caller and never recorded as jobs. Document-level errors raised
while a job is processed end that job in ``FAILED``. ``ItemProcessingError`` is
confined to a single candidate item and never fails a job.
"""


class InvoiceImportError(Exception):
    """Base class for all import pipeline errors."""


class ImportValidationError(InvoiceImportError):
    """The upload request is invalid (unknown card, card owned by someone else)."""


class ImportNotFoundError(InvoiceImportError):
    """The import does not exist or is not visible to the requesting user."""


class ImportQueueFullError(InvoiceImportError):
    """The worker queue has no room for another import."""


class UnsupportedSourceError(InvoiceImportError):
    """The import source has no automatic parser."""


class ParsingIOError(InvoiceImportError):
    """The stored document could not be read or is corrupt."""


class ParsingTimeoutError(ParsingIOError):
    """Parsing did not finish within the configured time budget."""


class MetadataSerializationError(InvoiceImportError):
    """Parsed metadata could not be serialized onto the job record."""


class ItemProcessingError(InvoiceImportError):
    """A single candidate item could not be normalized or appended."""


class InvalidTransitionError(InvoiceImportError):
    """A lifecycle transition is not allowed from the job's current status."""

"""Invoice Importer: credit-card statement import, parsing and deduplication service."""

"""Parsing package: statement text extraction and ordered line patterns."""

from .patterns import LINE_RULES, LineMatch, classify_line, parse_amount  # noqa: F401
from .statement_parser import StatementParser, calculate_confidence  # noqa: F401

"""FastAPI dependencies for DI (settings, DB session, job runner, current user).

This module provides dependency injection helpers so the routes stay free of wiring and
tests can swap any piece through ``app.dependency_overrides``.
"""

from collections.abc import Iterator
from functools import lru_cache

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from invoice_importer.core.db import get_session_factory
from invoice_importer.core.settings import get_settings
from invoice_importer.services.file_service import build_file_service
from invoice_importer.workers.job_runner import ImportJobRunner


@lru_cache
def get_job_runner() -> ImportJobRunner:
    """Provide the process-wide ImportJobRunner."""
    settings = get_settings()
    return ImportJobRunner(get_session_factory(), build_file_service(settings), settings=settings)


def get_db_session() -> Iterator[Session]:
    """Provide a SQLAlchemy session that is closed after the request."""
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Return the caller's user id from the ``X-User-Id`` header."""
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id

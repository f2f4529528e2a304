"""API package: provides FastAPI dependencies and route definitions for the application."""

from .dependencies import get_current_user, get_db_session, get_job_runner  # noqa: F401
from .routes import router  # noqa: F401

"""Main entrypoint and application factory for the Invoice Importer API.

This module initializes the FastAPI application, configures logging, creates the database
tables, resumes imports interrupted by a previous shutdown, and exposes the Scalar API
reference endpoint for interactive OpenAPI documentation. It also includes the main
entrypoint for running the app with Uvicorn.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from scalar_fastapi import get_scalar_api_reference
from sqlalchemy.exc import SQLAlchemyError

from invoice_importer.api.dependencies import get_job_runner
from invoice_importer.api.routes import router
from invoice_importer.core.db import get_engine, init_db
from invoice_importer.core.settings import get_settings
from invoice_importer.core.utils import ensure_dir, get_logger


# --- Logging Setup ---
def setup_logging() -> None:
    """Configure logging to file and console, and ensure the log directory exists."""
    log_dir = Path(get_settings().log_directory)
    ensure_dir(log_dir)
    logger = get_logger("invoice-importer")
    logger.setLevel(logging.INFO)
    # Add file handler for persistent logs (not colorized)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(log_dir / "import_processing.log")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(file_handler)
    logger.propagate = False
    # Component loggers ("invoice-importer.<component>") also write to the file.
    for name in ("api", "worker", "parser", "reconciler", "lifecycle", "db", "storage"):
        child = get_logger(f"invoice-importer.{name}")
        child.setLevel(logging.INFO)
        for handler in logger.handlers:
            if isinstance(handler, logging.FileHandler) and handler not in child.handlers:
                child.addHandler(handler)


setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler: create the tables, resume interrupted imports, drain the workers on exit."""
    _ = app  # Silence unused argument warning
    try:
        init_db(get_engine())
    except SQLAlchemyError as exc:
        get_logger("invoice-importer").exception(f"Failed to create tables: {exc}")
        raise
    runner = get_job_runner()
    runner.resume_interrupted()
    yield
    runner.shutdown(wait=True)


app = FastAPI(
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    title="Invoice Importer API",
    description="""
    The Invoice Importer API imports credit-card statements into monthly invoices without duplicating items.

    **Endpoints:**
    - `POST /invoice-imports`: Upload a statement for a credit card and start an import job.
    - `GET /invoice-imports/{{import_id}}/progress`: Check the progress of an import.
    - `GET /invoice-imports`: List imports, optionally filtered by `status`.
    - `GET /invoice-imports/failed`, `GET /invoice-imports/manual-review`: Shortcuts for common filters.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
    version="1.0.0",
)
app.include_router(router)


@app.get("/scalar", include_in_schema=False)
async def scalar_docs() -> HTMLResponse:
    """Return Scalar API reference."""
    return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)

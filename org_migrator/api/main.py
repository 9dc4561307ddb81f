"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import ErrorKind, MigrationError, ValidationError
from .routes import orgs, projects, sessions, templates

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENCY: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.STRUCTURAL: 422,
    ErrorKind.DATA: 422,
    ErrorKind.AUTH: 401,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.CONNECTIVITY: 502,
}

app = FastAPI(
    title="Org Migrator API",
    description="API for template-driven org-to-org data migrations",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
app.include_router(projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
app.include_router(orgs.router, prefix="/api/orgs", tags=["orgs"])


@app.exception_handler(MigrationError)
async def migration_error_handler(request: Request, exc: MigrationError):
    """Map the error taxonomy onto HTTP status codes."""
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    body = exc.to_dict()
    if isinstance(exc, ValidationError) and exc.result is not None:
        body["validation"] = exc.result.to_dict()
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

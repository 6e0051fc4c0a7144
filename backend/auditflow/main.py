import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from auditflow.models.db import Base, engine
# model modules register their tables on Base.metadata when imported
from auditflow.models import audit, event, finding, organization  # noqa: F401
from auditflow.routes import audit_routes, finding_routes
from auditflow.utils.logging_setup import configure_logging
from auditflow.workflow.errors import WorkflowError

configure_logging()
logger = logging.getLogger("auditflow.main")

CREATE_TABLES = os.getenv("AUDITFLOW_CREATE_TABLES", "true").lower() in {"1", "true", "yes"}

if CREATE_TABLES:
    # We use SQLAlchemy ORM. Base.metadata.create_all()
    # materializes any missing tables at application startup.
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="Compliance Audit Workflow", version="0.1")
app.include_router(audit_routes.router, prefix="/audits", tags=["Audits"])
app.include_router(finding_routes.router, prefix="/findings", tags=["Findings"])


@app.exception_handler(WorkflowError)
def workflow_error_handler(request: Request, exc: WorkflowError):
    # surfaced verbatim: the client needs the specific reason an action is unavailable
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
def health():
    return {
        "message": "Compliance audit workflow service is running.",
        "docs": "/docs",
        "status": "ok",
    }

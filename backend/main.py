from contextlib import asynccontextmanager
from datetime import datetime
import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, text

from database import create_db, engine
import models  # noqa: F401 (registers tables before create_db)
from errors import WorkflowError
from models import Patient, User, Visit, VisitEvent
from routers.audit import router as audit_router
from routers.auth import router as auth_router
from routers.visits import router as visits_router

logger = logging.getLogger("opdflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db()
    yield


app = FastAPI(title="OPD Flow", version="0.1.0", lifespan=lifespan)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    if exc.status_code >= 500:
        logger.error("Workflow store failure for %s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled server error for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.middleware("http")
async def no_cache_api_responses(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith(("/visits", "/auth", "/audit-log", "/api/v1/")):
        response.headers["Cache-Control"] = "no-store, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
    return response


app.include_router(visits_router)
app.include_router(auth_router)
app.include_router(audit_router)
app.include_router(visits_router, prefix="/api/v1")
app.include_router(auth_router, prefix="/api/v1")
app.include_router(audit_router, prefix="/api/v1")


@app.get("/health")
def health():
    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
        return {
            "status": "ok",
            "database": "connected",
            "timestamp": datetime.utcnow().isoformat(),
        }
    except SQLAlchemyError:
        logger.exception("Health check failed")
        return JSONResponse(status_code=503, content={"status": "error"})


@app.get("/demo/reset")
def demo_reset():
    if os.getenv("OPDFLOW_ENABLE_DEMO_RESET", "0") != "1":
        raise HTTPException(status_code=404, detail="Not found")

    logger.warning("[DEMO] Reset triggered")
    create_db()
    with Session(engine) as session:
        session.exec(VisitEvent.__table__.delete())  # type: ignore[arg-type]
        session.exec(Visit.__table__.delete())  # type: ignore[arg-type]
        session.exec(Patient.__table__.delete())  # type: ignore[arg-type]
        session.exec(User.__table__.delete())  # type: ignore[arg-type]
        session.commit()

    from seed import run_seed
    run_seed(seed_patients=True)

    return {"status": "demo reset complete"}

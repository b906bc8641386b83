"""
FastAPI service for natural-language queries over registered datasources.
Run with: uvicorn sparkset.main:app --reload --port 8000
"""
import logging
import os
import uuid
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from datastore.db_utils import dispose_engines
from sparkset.routes.actions import router as actions_router
from sparkset.routes.ai_providers import router as ai_providers_router
from sparkset.routes.deps import envelope_response
from sparkset.routes.query import router as query_router
from sparkset.services.errors import SparksetError
from sparkset.services.query_errors import (
    build_internal_query_error_response,
    build_query_validation_error_response,
)
from sparkset.services.runtime import clear_context, log_event, set_request_id, shutdown_shared_executor

app = FastAPI(title="Sparkset Query API", version="1.0.0")
logger = logging.getLogger("sparkset")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("shutdown")
def shutdown_workers():
    shutdown_shared_executor(wait=False)
    dispose_engines()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        details.append(f"{path}: {err.get('msg', 'invalid value')}" if path else str(err.get("msg")))
    log_event(logger, logging.INFO, "request_invalid", path=request.url.path, details=details)
    return envelope_response(build_query_validation_error_response(details))


@app.exception_handler(SparksetError)
async def sparkset_error_handler(request: Request, exc: SparksetError):
    return envelope_response(build_internal_query_error_response(exc))


app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query_router)
app.include_router(actions_router)
app.include_router(ai_providers_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}

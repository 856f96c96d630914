"""
FastAPI application entry-point.

Run:  uvicorn src.api.main:app --port $API_PORT
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.routers import ask, catalog
from src.core.errors import CopilotError, ErrorKind
from src.core.logging import get_logger
from src.db.connection import reset_engine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    reset_engine()
    logger.info("DB engine disposed")


app = FastAPI(
    title="Engagement Analytics Copilot",
    version="0.1.0",
    description="Conversational copilot over the marketing engagement funnel",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ask.router, prefix="/ask", tags=["Copilot"])
app.include_router(catalog.router, tags=["Catalog"])


_STATUS_BY_KIND = {
    ErrorKind.UNSAFE_QUERY: 400,
    ErrorKind.RESOLUTION_MISS: 400,
    ErrorKind.TIMEOUT: 504,
}


@app.exception_handler(CopilotError)
async def copilot_error_handler(_request: Request, exc: CopilotError) -> JSONResponse:
    """Typed copilot failures that escape a route become structured 4xx/5xx bodies."""
    status = _STATUS_BY_KIND.get(exc.kind, 502)
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.get("/health")
def health():
    return {"status": "ok"}

"""
Main FastAPI application for the ViewTrust rewards core
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from viewtrust.config import settings
from viewtrust.api import (
    system,
    attention,
    trust,
    wallet,
    settlements
)
from viewtrust.db.database import Base, engine
from viewtrust.errors import CoreError, InvalidInputError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting ViewTrust rewards core...")
    if settings.DB_AUTO_CREATE:
        from viewtrust.db import models  # noqa: F401 - registers tables
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")

    yield

    # Shutdown
    logger.info("Shutting down ViewTrust rewards core...")


app = FastAPI(
    title="ViewTrust Rewards Core",
    description="Attention validation, device trust and the two-currency ledger",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = {
        ".".join(str(part) for part in error["loc"] if part != "body"): error["msg"]
        for error in exc.errors()
    }
    error = InvalidInputError("Invalid input", fields)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Include routers
app.include_router(system.router)
app.include_router(attention.router)
app.include_router(trust.router)
app.include_router(wallet.router)
app.include_router(settlements.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "ViewTrust Rewards Core",
        "version": "1.0.0",
        "status": "running"
    }

"""
Geo Asset Pipeline - FastAPI Backend
Upload mediation, processing job pipeline and gated storage access.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import assets, health, jobs, storage, uploads
from services.storage import StorageGateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Geo Asset Pipeline API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except (SQLAlchemyError, OSError) as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if getattr(app.state, "storage_gateway", None) is None and settings.R2_ENDPOINT:
        app.state.storage_gateway = StorageGateway.from_settings(settings)
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Geo Asset Pipeline API",
    description="Upload, process and serve geospatial and 3D assets",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and invalid enum values are client errors (400)."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(uploads.router, tags=["Uploads"])
app.include_router(storage.router, tags=["Storage"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
app.include_router(assets.router, prefix="/assets", tags=["Assets"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Geo Asset Pipeline API",
        "version": "0.1.0",
        "status": "running"
    }

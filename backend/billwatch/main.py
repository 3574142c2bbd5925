"""
FastAPI application entry point.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from billwatch.config import settings
from billwatch.api.router import api_router
from billwatch.database import engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Recurring bill detection and lifecycle tracking",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.get("/")
def read_root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/v1/health")
def health_check():
    """Health check endpoint, including whether split advice goes to the AI provider."""
    return {
        "status": "ok",
        "app_name": settings.app_name,
        "ai_split_enabled": settings.ai_split_enabled,
        "ai_provider": settings.ai_provider if settings.ai_split_enabled else None,
        "database": engine.url.get_backend_name(),
    }

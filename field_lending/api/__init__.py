"""
Fieldbook API Application Factory
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from .deps import get_lending_system
from .loans import router as loans_router
from .agents import router as agents_router
from .holidays import router as holidays_router
from .jobs import router as jobs_router
from .admin import router as admin_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the delinquency job scheduler alongside the server when enabled"""
    if not get_config().delinquency_job_enabled:
        yield
        return

    system = app.dependency_overrides.get(get_lending_system, get_lending_system)()
    system.job_scheduler.start()
    try:
        yield
    finally:
        system.job_scheduler.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Fieldbook Loan Collection API",
        description="Repayment scheduling and reconciliation for field-agent lending",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Malformed request bodies are validation failures like any other
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {
                "code": "validation_error",
                "message": "Invalid request",
                "details": {"errors": [
                    {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                    for error in exc.errors()
                ]}
            }}
        )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(agents_router, prefix="/agents", tags=["Agents"])
    app.include_router(holidays_router, prefix="/holidays", tags=["Holidays"])
    app.include_router(jobs_router, prefix="/jobs", tags=["Jobs"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "fieldbook_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Fieldbook Loan Collection API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "agents": "/agents",
                "holidays": "/holidays",
                "jobs": "/jobs",
                "admin": "/admin",
            }
        }

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "field_lending.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )

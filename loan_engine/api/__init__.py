"""
Loan Engine API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..exceptions import LoanEngineError
from ..logging_config import get_logger, log_action
from .deps import LoanSystem, get_loan_system, set_loan_system
from .loans import router as loans_router
from .payroll import router as payroll_router


STATUS_BY_CATEGORY = {
    "validation": 422,
    "state": 409,
    "concurrency": 409,
    "not_found": 404,
}

logger = get_logger("loan_engine.api")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Employee Loan Engine API",
        description="Employee loan lifecycle and amortization engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanEngineError)
    async def handle_loan_engine_error(request: Request, exc: LoanEngineError):
        log_action(
            logger, "warning", f"{exc.code}: {exc.message}",
            action=f"{request.method} {request.url.path}",
            resource=f"loan:{exc.loan_id}" if exc.loan_id else None,
            extra={'category': exc.category}
        )
        return JSONResponse(
            status_code=STATUS_BY_CATEGORY.get(exc.category, 400),
            content={
                "error": exc.code,
                "category": exc.category,
                "detail": exc.message,
                "loan_id": exc.loan_id
            }
        )

    @app.exception_handler(PermissionError)
    async def handle_permission_error(request: Request, exc: PermissionError):
        return JSONResponse(
            status_code=403,
            content={"error": "PermissionDenied", "category": "authorization", "detail": str(exc)}
        )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payroll_router, prefix="/payroll", tags=["Payroll"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Employee Loan Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "payroll": "/payroll",
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8091, workers: int = 1, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_engine.api:app",
        host=host,
        port=port,
        workers=workers,
        reload=debug,
        log_level="info"
    )


app = create_app()

__all__ = ["app", "create_app", "run_server", "LoanSystem", "get_loan_system", "set_loan_system"]

"""
Microlend API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .customers import router as customers_router
from .loans import router as loans_router
from .repayments import router as repayments_router
from .reports import router as reports_router
from .staff import router as staff_router
from .. import __version__
from ..errors import (
    MicrolendError,
    ValidationError,
    DuplicatePaymentError,
    InvalidStateTransition,
    OverpaymentError,
    LoanNotPayable,
    ConcurrencyConflict,
    PermissionDenied,
    NotFoundError
)
from ..logging_config import get_logger, log_action


# Most specific first; DuplicatePaymentError is a ValidationError
ERROR_STATUS = (
    (DuplicatePaymentError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (PermissionDenied, 403),
    (InvalidStateTransition, 409),
    (LoanNotPayable, 409),
    (ConcurrencyConflict, 409),
    (OverpaymentError, 422),
)

logger = get_logger("microlend.api")


def status_for(error: MicrolendError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Microlend API",
        description="Microfinance loan management: customers, loans, repayments and reports",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MicrolendError)
    async def handle_microlend_error(request: Request, exc: MicrolendError):
        status_code = status_for(exc)
        log_action(
            logger, "warning", str(exc),
            action=f"{request.method} {request.url.path}",
            extra={"error": type(exc).__name__, "status_code": status_code}
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": str(exc),
                "error": type(exc).__name__,
                "field": getattr(exc, "field", None)
            }
        )

    # Include routers
    app.include_router(staff_router, prefix="/staff", tags=["Staff"])
    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microlend_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Microlend API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "staff": "/staff",
                "customers": "/customers",
                "loans": "/loans",
                "repayments": "/repayments",
                "reports": "/reports",
            }
        }

    return app

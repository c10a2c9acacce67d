"""
Account Service API Application Factory
"""

import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import (
    AccountServiceError, AccountNotFound, CustomerNotFound, AccountNumberTaken,
    DuplicateCustomer, InvalidTransition, CustomerHasOpenAccounts,
    ConcurrentUpdateConflict, InvalidAccountState, InvalidCustomerData,
    InsufficientFunds, StorageUnavailable
)
from .customers import router as customers_router
from .accounts import router as accounts_router


logger = logging.getLogger("accounts.api")

API_PREFIX = "/api/v1"

ERROR_STATUS = {
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    CustomerNotFound: status.HTTP_404_NOT_FOUND,
    AccountNumberTaken: status.HTTP_409_CONFLICT,
    DuplicateCustomer: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    CustomerHasOpenAccounts: status.HTTP_409_CONFLICT,
    ConcurrentUpdateConflict: status.HTTP_409_CONFLICT,
    InvalidAccountState: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidCustomerData: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InsufficientFunds: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: AccountServiceError) -> int:
    """HTTP status for a service error, by the most specific mapped class"""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def account_service_error_handler(request: Request, exc: AccountServiceError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": str(exc)},
        headers=headers
    )


def create_app(api_prefix: str = API_PREFIX) -> FastAPI:
    """Create and configure the FastAPI application; resources live under api_prefix"""
    app = FastAPI(
        title="Account Service API",
        description="Bank account aggregate with balance-consistency guarantees",
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

    app.add_exception_handler(AccountServiceError, account_service_error_handler)

    # Include routers
    app.include_router(customers_router, prefix=f"{api_prefix}/customers", tags=["Customers"])
    app.include_router(accounts_router, prefix=f"{api_prefix}/accounts", tags=["Accounts"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "account_service_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "account_service.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )

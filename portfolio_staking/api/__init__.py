"""
Portfolio Staking API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import StakingError
from ..logging_config import get_logger
from ..system import StakingSystem
from .admin import router as admin_router
from .portfolio import router as portfolio_router
from .transactions import router as transactions_router
from .wallets import router as wallets_router


logger = get_logger("staking.api")


def error_body(exc: StakingError) -> dict:
    return {
        "status": "fail" if exc.status_code < 500 else "error",
        "error": exc.kind,
        "message": exc.message
    }


def create_app(system: Optional[StakingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Portfolio Staking API",
        description="Staking portfolios with daily interest accrual and reviewed settlement",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or StakingSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StakingError)
    async def handle_staking_error(request: Request, exc: StakingError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))

    # Include routers
    app.include_router(portfolio_router, prefix="/portfolio", tags=["Portfolio"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(wallets_router, prefix="/wallets", tags=["Wallets"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "portfolio_staking_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Portfolio Staking API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "portfolio": "/portfolio",
                "transactions": "/transactions",
                "wallets": "/wallets",
                "admin": "/admin"
            }
        }

    return app

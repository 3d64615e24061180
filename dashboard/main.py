"""
Admin API application.

Operator surface over the engine: positions, executions,
reconciliation, scheduler and signal monitors.
"""
import logging
from contextlib import asynccontextmanager
from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.exceptions import (
    ConfigurationError,
    ExchangeUnavailable,
    ExecutionError,
    LedgerError,
    MonitorNotFound,
    PositionNotFound,
    SchedulerError,
    SchedulerJobNotFound,
    SignalError,
    TradingException,
)
from dashboard.routers import accounts, executions, health, positions, reconciliation, scheduler, signals
from dashboard.schemas import ErrorResponse
from orchestrator.core import TradingEngine


logger = logging.getLogger(__name__)


# Most specific class in the exception's MRO wins
STATUS_BY_ERROR: Dict[Type[TradingException], int] = {
    PositionNotFound: 404,
    MonitorNotFound: 404,
    SchedulerJobNotFound: 404,
    ConfigurationError: 422,
    ExchangeUnavailable: 503,
    LedgerError: 409,
    ExecutionError: 409,
    SignalError: 409,
    SchedulerError: 409,
}


def status_for(exc: TradingException) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 500


def _error_body(message: str, code: str, context=None) -> dict:
    return ErrorResponse(message=message, error_code=code, context=context or {}).model_dump(mode="json")


async def trading_exception_handler(request: Request, exc: TradingException) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.code}")
    context = exc.to_dict()["context"]
    return JSONResponse(status_code=status_code, content=_error_body(exc.message, exc.code, context))


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content=_error_body(str(exc), "INVALID_REQUEST"))


def create_app(
    engine: TradingEngine,
    start_engine: bool = False,
    run_scheduler: bool = True,
) -> FastAPI:
    """
    Build the admin API around an engine.

    Args:
        engine: the assembled engine
        start_engine: start/stop the engine with the application
        run_scheduler: start the periodic jobs when starting the engine
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_engine:
            await engine.start(scheduler=run_scheduler)
        try:
            yield
        finally:
            if start_engine:
                await engine.stop()

    app = FastAPI(
        title="Trading Engine Admin API",
        description="Position ledger, risk exits, signal confirmation and reconciliation.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # CORS (Allow local frontend development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TradingException, trading_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    # Include Routers
    app.include_router(health.router)
    app.include_router(positions.router)
    app.include_router(executions.router)
    app.include_router(reconciliation.router)
    app.include_router(scheduler.router)
    app.include_router(signals.router)
    app.include_router(accounts.router)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Trading Engine Admin API is running"}

    return app

"""
FastAPI dependencies for the admin API.

The engine is attached to app.state by create_app(); routers
pull their service from it.
"""
from fastapi import Request

from orchestrator.core import TradingEngine
from positions.admin import PositionAdmin
from reconciliation import ReconciliationService
from scheduler import JobRegistry
from signal_confirmation import ConfirmationManager


# =============================================================
# HELPER: Engine dependency
# =============================================================

def get_engine(request: Request) -> TradingEngine:
    return request.app.state.engine


# =============================================================
# HELPER: Service instances
# =============================================================

def get_admin(request: Request) -> PositionAdmin:
    return get_engine(request).admin


def get_reconciliation(request: Request) -> ReconciliationService:
    return get_engine(request).reconciliation


def get_scheduler(request: Request) -> JobRegistry:
    return get_engine(request).scheduler


def get_confirmations(request: Request) -> ConfirmationManager:
    return get_engine(request).confirmations

from fastapi import APIRouter, Depends

from dashboard.dependencies import get_engine
from dashboard.schemas import DataResponse
from database.engine import DatabaseConnectionError
from orchestrator.core import TradingEngine

router = APIRouter(prefix="/health", tags=["System Health"])


@router.get("", response_model=DataResponse)
async def get_system_health(engine: TradingEngine = Depends(get_engine)):
    """
    Engine status plus a database round trip.
    """
    data = engine.get_status()
    try:
        data["database"] = await engine.db.verify_connection()
    except DatabaseConnectionError as e:
        data["database"] = False
        return DataResponse(success=False, message=str(e), data=data)
    return DataResponse(success=True, data=data)

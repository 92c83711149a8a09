# Health check endpoints for system monitoring

from datetime import datetime, timezone
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
import logging

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/live")
async def liveness_check():
    """
    Basic liveness check - returns 200 if the service is running
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "storefront-api"
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check - database reachable, plus which providers are configured
    """
    state = request.app.state
    database = await state.db_manager.health_check()
    body = {
        "status": "ready" if database["status"] == "healthy" else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": database,
            "stripe": {"configured": bool(state.stripe_gateway.api_key)},
            "shippo": {"configured": state.shippo_client.configured},
            "pending_side_effects": state.dispatcher.pending,
        },
    }
    if database["status"] != "healthy":
        logger.warning("Readiness check failed: database unhealthy")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body

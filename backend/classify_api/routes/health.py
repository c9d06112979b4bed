"""
Classify API Backend — Health Check Route
=========================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Runs SELECT 1 against the database and asks the inference gateway
       for its status (probe + queue counters).

    Status levels:
    - healthy:   database and model both available
    - degraded:  database up, Ollama down or model missing (auth/history work)
    - unhealthy: database unreachable
"""

import logging
import time

from fastapi import APIRouter, Request
from sqlalchemy import text

from classify_api import __version__
from classify_api.database import engine
from classify_api.schemas.classification import HealthResponse, QueueStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


async def check_database() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Health check: database unreachable: %s", str(e))
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(request: Request) -> HealthResponse:
    db_ok = await check_database()
    overall = "healthy" if db_ok else "unhealthy"

    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        ollama = "unavailable"
        queue = QueueStatus(
            active_requests=0,
            queued_requests=0,
            max_concurrent=0,
            max_queue_size=0,
            utilization_percent=0.0,
        )
    else:
        status = await gateway.get_status()
        if status.healthy:
            ollama = "available"
        elif status.reachable:
            ollama = "model_missing"
        else:
            ollama = "unavailable"
        queue = QueueStatus(
            active_requests=status.in_flight,
            queued_requests=status.queued,
            max_concurrent=status.max_concurrent,
            max_queue_size=status.max_queue_size,
            utilization_percent=status.utilization_percent,
        )

    if ollama != "available" and overall == "healthy":
        overall = "degraded"

    return HealthResponse(
        status=overall,
        version=__version__,
        database="connected" if db_ok else "disconnected",
        ollama=ollama,
        queue=queue,
        uptime_seconds=round(time.time() - _start_time, 2),
    )

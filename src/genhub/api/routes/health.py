"""Liveness endpoint.

- GET /health - 200 when the record store answers, 503 otherwise
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


async def probe_database(session_factory) -> Optional[Exception]:
    """Run SELECT 1; return the raised error, None when the database is reachable."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return e
    return None


@router.get("/health")
async def health_check(request: Request, response: Response):
    error = await probe_database(request.app.state.session_factory)
    if error is None:
        logger.debug("health_check.success")
        return {"status": "healthy"}

    logger.error("health_check.failed", error=str(error), error_type=type(error).__name__)
    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "unhealthy", "error": {"type": type(error).__name__, "message": str(error)}}

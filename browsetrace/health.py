"""
Health check endpoint.

The check never touches the store: if the process can answer, it is live.
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from .logging import get_logger

logger = get_logger()

router = APIRouter()


@router.get("/healthz", response_class=PlainTextResponse)
async def healthz() -> str:
    """Liveness probe; always 200 with body ``ok``."""
    logger.debug("health_check_liveness")
    return "ok"

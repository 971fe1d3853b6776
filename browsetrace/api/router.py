import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
import structlog

from ..config import Settings
from ..errors import DecodeError, ValidationError, WriteError
from ..event_models import decode_batch
from ..metrics import Metrics
from ..store import EventStore

log = structlog.get_logger()

router = APIRouter()


def get_store(request: Request) -> EventStore:
    return request.app.state.store


def get_metrics(request: Request) -> Metrics:
    return request.app.state.metrics


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.post("/events", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def submit_events(
    request: Request,
    store: EventStore = Depends(get_store),
    metrics: Metrics = Depends(get_metrics),
    settings: Settings = Depends(get_app_settings),
):
    try:
        body = await asyncio.wait_for(request.body(), timeout=settings.READ_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        log.warning("events.read_timeout", timeout_s=settings.READ_TIMEOUT_SECONDS)
        raise HTTPException(status.HTTP_408_REQUEST_TIMEOUT, detail="Request body timeout")

    try:
        batch = decode_batch(body)
    except DecodeError as exc:
        log.warning("events.decode_failed", error=str(exc), size=len(body))
        metrics.record_batch("rejected")
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Invalid JSON format")

    if not batch.events:
        metrics.record_batch("empty")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    event_types = [e.event_type for e in batch.events]
    try:
        await run_in_threadpool(store.insert_batch, batch)
    except (ValidationError, WriteError) as exc:
        # Details stay in the operator log; the caller gets a generic failure.
        log.error(
            "events.store_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            reason=getattr(exc, "reason", None),
            stage=getattr(exc, "stage", None),
            batch_size=len(batch.events),
        )
        metrics.record_batch("failed", event_types)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to store events")

    metrics.record_batch("stored", event_types)
    log.info("events.stored", count=len(batch.events))
    return Response(status_code=status.HTTP_204_NO_CONTENT)

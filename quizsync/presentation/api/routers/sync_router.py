from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
import asyncio
import logging

from quizsync.application.sync.errors import QueueError
from quizsync.application.sync.sync_engine import SyncEngine
from quizsync.presentation.dependencies import get_sync_engine
from quizsync.presentation.schemas.sync_schemas import (
    QueueAccepted,
    QueueOperationRequest,
    StrategyOut,
    SyncLogEntry,
    SyncLogStatus,
    SyncResult,
    SyncStatus,
    TriggerRequest,
)

router = APIRouter(prefix="/sync", tags=["Sync"])
logger = logging.getLogger(__name__)

# A pass does several remote round-trips per table; leave room for all of them.
SYNC_REQUEST_TIMEOUT_SECONDS = 120.0
STATUS_REQUEST_TIMEOUT_SECONDS = 10.0


@router.post("/trigger", response_model=SyncResult, status_code=status.HTTP_200_OK)
async def trigger_sync(
    request: Optional[TriggerRequest] = None,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """
    Runs one sync pass and returns its summary.
    Returns ``success=false, error="offline"`` when the remote cannot be reached.
    """
    trigger = (request or TriggerRequest()).trigger
    logger.info(f"Sync trigger received: {trigger.value}")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(engine.run_sync, trigger),
            timeout=SYNC_REQUEST_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error(f"Sync pass ({trigger.value}) exceeded {SYNC_REQUEST_TIMEOUT_SECONDS}s")
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Sync is taking longer than expected. Check /sync/status for progress.",
        )


@router.get("/status", response_model=SyncStatus)
async def sync_status(engine: SyncEngine = Depends(get_sync_engine)):
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(engine.get_sync_status),
            timeout=STATUS_REQUEST_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("Reading sync status timed out")
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Local store is busy, try again shortly",
        )


@router.post("/queue", response_model=QueueAccepted, status_code=status.HTTP_202_ACCEPTED)
async def queue_operation(
    request: QueueOperationRequest,
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        operation = await asyncio.to_thread(
            engine.queue_sync_operation,
            request.type,
            request.table_name,
            request.record_id,
            request.data,
        )
    except QueueError as e:
        logger.error(f"Failed to queue {request.type.value} for {request.table_name}:{request.record_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync queue is unavailable",
        )
    return QueueAccepted(id=operation.id, tier=operation.tier)


@router.get("/log", response_model=List[SyncLogEntry])
async def sync_log(
    limit: int = Query(100, ge=1, le=1000),
    status_filter: Optional[SyncLogStatus] = Query(None, alias="status"),
    table_name: Optional[str] = None,
    engine: SyncEngine = Depends(get_sync_engine),
):
    return await asyncio.to_thread(
        engine.get_sync_log,
        limit,
        status_filter.value if status_filter else None,
        table_name,
    )


@router.get("/strategies", response_model=List[StrategyOut])
def list_strategies(engine: SyncEngine = Depends(get_sync_engine)):
    return [
        StrategyOut(
            table_name=strategy.table_name,
            rule=strategy.rule.value,
            preserve_user_data=strategy.preserve_user_data,
        )
        for strategy in engine.resolver.strategies().values()
    ]

import logging

from fastapi import HTTPException, Request, status

from quizsync.application.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def get_sync_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        logger.warning("Sync engine requested before the runtime was started")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not available",
        )
    return engine

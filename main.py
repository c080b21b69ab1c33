import sys
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from quizsync.config import SyncSettings
from quizsync.application.sync.runtime import sync_runtime
from quizsync.application.sync.scheduler import PeriodicSyncScheduler
from quizsync.presentation.api.routers.sync_router import router as sync_router
from quizsync.presentation.schemas.sync_schemas import SyncTrigger

settings = SyncSettings.from_env()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    with sync_runtime(settings) as engine:
        app.state.sync_engine = engine
        startup = await asyncio.to_thread(engine.run_sync, SyncTrigger.STARTUP)
        if not startup.success:
            logger.warning(f"Startup sync did not complete: {startup.error or 'see sync log'}")

        scheduler = PeriodicSyncScheduler(engine, interval_seconds=settings.periodic_interval_seconds)
        scheduler.start()
        try:
            yield
        finally:
            scheduler.stop(timeout=settings.remote_timeout_seconds)
            result = await asyncio.to_thread(engine.shutdown)
            logger.info(
                f"app_close sync: success={result.success}, pushed={result.pushed_records}, "
                f"queued={result.queued_operations}"
            )
            app.state.sync_engine = None


# Initialize FastAPI app
app = FastAPI(title="Quiz Sync API", lifespan=lifespan)

# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal server error occurred."}
    )

# Include routers
app.include_router(sync_router)


# Optional root endpoint
@app.get("/")
def root():
    return {"message": "Quiz Sync API is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)

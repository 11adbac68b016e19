import asyncio
import logging
from typing import Optional, TYPE_CHECKING

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from uvicorn import Config, Server

# Import Routers
from .routers import metrics, webhooks
from .dependencies import get_session_factory
from ..config import settings
from ..exceptions import ConflictError, StoreError, ValidationError
from ..service_manager.base_service import BaseService

if TYPE_CHECKING:
    from ..backfill.service import BackfillSchedulerService

logger = logging.getLogger("dora-core.api-gateway")

# Module-level reference set by main.py after BackfillSchedulerService is built.
# Used by the /health endpoint to report the last backfill run per source.
_backfill_ref: Optional["BackfillSchedulerService"] = None


def register_backfill_scheduler(svc: "BackfillSchedulerService") -> None:
    """Called from main.py to give the health endpoint access to the scheduler."""
    global _backfill_ref
    _backfill_ref = svc


app = FastAPI(title="DORA Core API", version="1.0.0")

# Include Routers
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Event store unavailable"})


@app.get("/health")
async def health(session_factory=Depends(get_session_factory)):
    database_status = "ok"
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Health check: database unreachable: {e}")
        database_status = "unreachable"

    components = {"database": database_status}
    if _backfill_ref is not None:
        last = _backfill_ref.last_result
        components["backfill"] = {
            "running": _backfill_ref.running,
            "sources": {} if last is None else {
                name: {
                    "high_water_mark": last.marks[name].isoformat() if name in last.marks else None,
                    "refreshed": report.refreshed,
                    "error": report.error,
                }
                for name, report in last.reports.items()
            },
        }

    return {
        "status": "ok" if database_status == "ok" else "degraded",
        "components": components,
    }


class APIGatewayService(BaseService):
    """
    API Gateway Service.
    Responsibility: Expose the webhook receivers and metric queries over HTTP.
    """

    def __init__(self):
        super().__init__("APIGatewayService")
        self._server: Optional[Server] = None
        self._serve_task: Optional[asyncio.Task] = None

    async def start(self):
        logger.info(f"APIGatewayService ensuring startup on {settings.API_HOST}:{settings.API_PORT}")
        config = Config(app=app, host=settings.API_HOST, port=settings.API_PORT, log_level="info")
        self._server = Server(config)
        self._serve_task = asyncio.create_task(self._server.serve())
        self._running = True

    async def stop(self):
        self._running = False
        if self._server:
            self._server.should_exit = True
        if self._serve_task:
            await self._serve_task
        logger.info("APIGatewayService stopped.")

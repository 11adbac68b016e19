import asyncio
import logging
from datetime import timedelta
from typing import List

from dora_core.api_gateway.service import APIGatewayService, register_backfill_scheduler
from dora_core.backfill.service import BackfillSchedulerService
from dora_core.backfill.watermark import WatermarkStore
from dora_core.config import settings
from dora_core.database.session import async_session_maker, engine
from dora_core.logger import setup_logging
from dora_core.reconciler.service import Reconciler
from dora_core.service_manager.service_manager import ServiceManager
from dora_core.sources.base import ExternalSource
from dora_core.sources.github import GitHubActionsSource
from dora_core.sources.pagerduty import PagerDutySource
from dora_core.utils import print_banner

logger = logging.getLogger("dora-core")


def build_sources() -> List[ExternalSource]:
    """Instantiate a pull client for every upstream that has credentials configured."""
    sources: List[ExternalSource] = []
    if settings.GITHUB_REPOSITORY:
        sources.append(GitHubActionsSource(
            repository=settings.GITHUB_REPOSITORY,
            token=settings.GITHUB_TOKEN,
            api_url=settings.GITHUB_API_URL,
            workflow=settings.GITHUB_DEPLOY_WORKFLOW,
            timeout=settings.SOURCE_TIMEOUT_SECONDS,
        ))
    else:
        logger.warning("GITHUB_REPOSITORY not set. Deployment backfill disabled.")

    if settings.PAGERDUTY_API_TOKEN:
        sources.append(PagerDutySource(
            token=settings.PAGERDUTY_API_TOKEN,
            api_url=settings.PAGERDUTY_API_URL,
            timeout=settings.SOURCE_TIMEOUT_SECONDS,
        ))
    else:
        logger.warning("PAGERDUTY_API_TOKEN not set. Incident backfill disabled.")
    return sources


async def main():
    """
    Main entry point for DORA-Core.
    Wires the reconciler into both ingest paths and starts all services.
    """
    print_banner("DORA-Core")
    logger.info("Starting DORA-Core...")

    service_manager = ServiceManager()

    # ----------------------------------------------------------------
    # Build services with dependency injection
    # (order matters: dependencies constructed before dependents)
    # ----------------------------------------------------------------

    service_manager.register(APIGatewayService())

    if settings.BACKFILL_ENABLED:
        # The webhook path builds its Reconciler per request from the same
        # session factory; the scheduler shares one instance across runs.
        backfill_svc = BackfillSchedulerService(
            reconciler=Reconciler(async_session_maker),
            watermarks=WatermarkStore(async_session_maker),
            sources=build_sources(),
            interval=settings.BACKFILL_INTERVAL_SECONDS,
            overlap=timedelta(seconds=settings.BACKFILL_OVERLAP_SECONDS),
            initial_lookback=timedelta(days=settings.BACKFILL_INITIAL_LOOKBACK_DAYS),
            timeout=settings.SOURCE_TIMEOUT_SECONDS,
            refresh_limit=settings.BACKFILL_REFRESH_LIMIT,
        )
        service_manager.register(backfill_svc)
        # Expose the scheduler to the /health endpoint
        register_backfill_scheduler(backfill_svc)
    else:
        logger.info("Backfill disabled by configuration (BACKFILL_ENABLED=false).")

    await service_manager.start_all()

    try:
        # Keep the main loop running
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        logger.info("DORA-Core shutting down...")
        await service_manager.stop_all()
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("DORA-Core stopped by user.")

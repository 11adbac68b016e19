import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import StoreError
from ..store.repository import EventStore
from .window import validate_window

logger = logging.getLogger("dora-core.metrics")


class MetricEngine:
    """
    Metric Engine.
    Read-only computation of Change Failure Rate and Mean Time to Recovery over
    an inclusive time window. Never writes; identical store contents and window
    always yield identical results.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EventStore | None = None,
        mttr_baseline_seconds: int = 3600,
    ):
        self._session_factory = session_factory
        self._store = store or EventStore()
        self._mttr_baseline_seconds = mttr_baseline_seconds

    async def calculate_cfr(self, start: datetime, end: datetime) -> float:
        """
        Incidents started in the window divided by deployments completed in it.
        Zero deployments yields 0.0.
        """
        window = validate_window(start, end)
        try:
            async with self._session_factory() as session:
                deployments = await self._store.count_deployments(session, window.start, window.end)
                if deployments == 0:
                    return 0.0
                incidents = await self._store.count_incidents(session, window.start, window.end)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read CFR inputs: {e}") from e
        return incidents / deployments

    async def calculate_mttr(self, start: datetime, end: datetime) -> float:
        """
        Mean (end_time - start_time) of resolved incidents started in the
        window, as a percentage of the baseline unit (one hour by default).
        Open incidents are excluded; no resolved incidents yields 0.0.
        """
        window = validate_window(start, end)
        try:
            async with self._session_factory() as session:
                spans = await self._store.resolved_incident_spans(session, window.start, window.end)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read MTTR inputs: {e}") from e

        if not spans:
            return 0.0
        total_seconds = sum((resolved - started).total_seconds() for started, resolved in spans)
        mean_seconds = total_seconds / len(spans)
        return mean_seconds / self._mttr_baseline_seconds * 100

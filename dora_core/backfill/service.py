import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional, Sequence

from ..exceptions import ConflictError, ExternalSourceError, StoreError, ValidationError
from ..reconciler.service import Reconciler
from ..service_manager.base_service import BaseService
from ..sources.base import ExternalSource, SourceEvent, external_key_of
from ..utils import as_utc
from .watermark import WatermarkStore

logger = logging.getLogger("dora-core.backfill")


@dataclass
class SourceRunReport:
    source: str
    since: Optional[datetime] = None
    fetched: int = 0
    refreshed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    advanced: bool = False
    error: Optional[str] = None


@dataclass
class BackfillRunResult:
    marks: Dict[str, datetime]
    reports: Dict[str, SourceRunReport] = field(default_factory=dict)


async def run_backfill(
    sources: Sequence[ExternalSource],
    marks: Dict[str, datetime],
    reconciler: Reconciler,
    now: datetime,
    overlap: timedelta,
    initial_lookback: timedelta,
    timeout: float,
    refresh_limit: Optional[int] = 100,
) -> BackfillRunResult:
    """
    One backfill pass over every source.

    Takes the per-source high-water marks and returns the new ones. Each source
    is asked for records created since its mark (minus the overlap), and every
    record the store still holds open (in-progress deployment, unresolved
    incident) is re-read by key, since sources filter by creation time and
    would otherwise never report a late completion of an older record.

    A source's mark moves to `now` (the time this pass began fetching) only
    when its whole batch was reconciled without a fatal error; otherwise it is
    returned unchanged so the next pass retries the same range. Sources never
    affect each other's outcome.
    """
    now = as_utc(now)
    new_marks = dict(marks)
    reports: Dict[str, SourceRunReport] = {}

    for source in sources:
        mark = marks.get(source.name)
        since = (mark - overlap) if mark is not None else (now - initial_lookback)
        report = await _backfill_source(source, since, reconciler, timeout, refresh_limit)
        reports[source.name] = report
        if report.advanced:
            new_marks[source.name] = max(mark, now) if mark is not None else now

    return BackfillRunResult(marks=new_marks, reports=reports)


async def _collect(
    source: ExternalSource,
    since: datetime,
    reconciler: Reconciler,
    timeout: float,
    refresh_limit: Optional[int],
    report: SourceRunReport,
) -> List[SourceEvent]:
    events = list(await asyncio.wait_for(source.fetch_since(since), timeout=timeout))
    report.fetched = len(events)

    seen = {external_key_of(event) for event in events}
    stale = [key for key in await reconciler.open_keys(source.kind, refresh_limit) if key not in seen]
    if stale:
        refreshed = await asyncio.wait_for(source.fetch_by_keys(stale), timeout=timeout)
        report.refreshed = len(refreshed)
        events.extend(refreshed)
    return events


async def _backfill_source(
    source: ExternalSource,
    since: datetime,
    reconciler: Reconciler,
    timeout: float,
    refresh_limit: Optional[int] = 100,
) -> SourceRunReport:
    report = SourceRunReport(source=source.name, since=since)
    try:
        events = await _collect(source, since, reconciler, timeout, refresh_limit, report)
    except asyncio.TimeoutError:
        report.error = f"fetch timed out after {timeout}s"
        logger.warning(f"Backfill of '{source.name}' aborted: {report.error}")
        return report
    except (ExternalSourceError, StoreError) as e:
        report.error = str(e)
        logger.warning(f"Backfill of '{source.name}' aborted: {e}")
        return report
    except Exception as e:
        report.error = f"unexpected fetch failure: {e!r}"
        logger.error(f"Backfill of '{source.name}' aborted: {report.error}", exc_info=True)
        return report

    for event in events:
        key = external_key_of(event)
        try:
            outcome = await reconciler.reconcile(source.kind, key, event.observed_fields())
        except (ConflictError, ValidationError) as e:
            report.skipped += 1
            logger.warning(f"Backfill of '{source.name}': skipping {key}: {e}")
            continue
        except StoreError as e:
            report.error = str(e)
            logger.error(f"Backfill of '{source.name}' aborted at {key}: {e}")
            return report
        except Exception as e:
            report.error = f"unexpected reconcile failure: {e!r}"
            logger.error(f"Backfill of '{source.name}' aborted at {key}: {report.error}", exc_info=True)
            return report
        setattr(report, outcome.value, getattr(report, outcome.value) + 1)

    report.advanced = True
    logger.info(
        f"Backfill of '{source.name}' since {since.isoformat()}: fetched={report.fetched} "
        f"refreshed={report.refreshed} created={report.created} updated={report.updated} "
        f"unchanged={report.unchanged} skipped={report.skipped}"
    )
    return report


class BackfillSchedulerService(BaseService):
    """
    Backfill Scheduler Service.
    Responsibility: periodically pull recent records from every external source
    and feed them through the Reconciler, closing gaps left by missed webhooks.
    Ticks fire on a fixed interval; a tick that fires while the previous run is
    still in progress is skipped, not queued.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        watermarks: WatermarkStore,
        sources: List[ExternalSource],
        interval: float = 300,
        overlap: timedelta = timedelta(minutes=10),
        initial_lookback: timedelta = timedelta(days=30),
        timeout: float = 30.0,
        refresh_limit: Optional[int] = 100,
    ):
        super().__init__("BackfillSchedulerService")
        self._reconciler = reconciler
        self._watermarks = watermarks
        self._sources = sources
        self._interval = interval
        self._overlap = overlap
        self._initial_lookback = initial_lookback
        self._timeout = timeout
        self._refresh_limit = refresh_limit
        self._run_lock = asyncio.Lock()
        self._tick_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self.last_result: Optional[BackfillRunResult] = None

    @property
    def sources(self) -> List[ExternalSource]:
        return self._sources

    async def start(self):
        self._running = True
        logger.info(
            f"BackfillSchedulerService started. Interval: {self._interval}s, "
            f"sources: {[s.name for s in self._sources] or 'none'}"
        )
        # Kick off immediately then loop
        self._tick_task = asyncio.create_task(self._tick_loop())

    async def stop(self):
        self._running = False
        for task in (self._tick_task, self._run_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        for source in self._sources:
            await source.aclose()
        logger.info("BackfillSchedulerService stopped.")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _tick_loop(self):
        while self._running:
            self.tick()
            await asyncio.sleep(self._interval)

    def tick(self) -> bool:
        """Start a run in the background unless one is already in progress."""
        if self._run_lock.locked() or (self._run_task is not None and not self._run_task.done()):
            logger.warning("Backfill tick skipped: previous run still in progress")
            return False
        self._run_task = asyncio.create_task(self.trigger())
        return True

    async def trigger(self) -> Optional[BackfillRunResult]:
        """Run one backfill pass now. Returns None if a run was already in progress."""
        if self._run_lock.locked():
            logger.warning("Backfill run skipped: previous run still in progress")
            return None

        async with self._run_lock:
            try:
                marks = await self._watermarks.load()
                result = await run_backfill(
                    self._sources,
                    marks,
                    self._reconciler,
                    now=datetime.now(UTC),
                    overlap=self._overlap,
                    initial_lookback=self._initial_lookback,
                    timeout=self._timeout,
                    refresh_limit=self._refresh_limit,
                )
                await self._watermarks.save(result.marks)
            except StoreError as e:
                logger.error(f"Backfill run aborted, high-water marks unchanged: {e}")
                return None
            except Exception as e:
                logger.error(f"Error during backfill run: {e}", exc_info=True)
                return None

        self.last_result = result
        return result
